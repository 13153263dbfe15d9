"""De-duplicating work queue with delayed requeue."""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple


class WorkQueue:
    """Hand out keys to workers, at most once at a time per key.

    A key added while it is queued is collapsed into the queued entry.  A key
    added while a worker is processing it is parked and queued again when the
    worker calls :meth:`done`, so two workers never reconcile the same object
    concurrently.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._delayed: List[Tuple[float, int, str]] = []
        self._deadlines: Dict[str, float] = {}
        self._sequence = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutdown

    def add(self, key: str) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: str) -> None:
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        """Queue ``key`` once ``delay`` seconds have passed.

        A key that is already waiting keeps the earlier of the two deadlines.
        """

        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            due = self._clock() + delay
            current = self._deadlines.get(key)
            if current is not None and current <= due:
                return
            self._deadlines[key] = due
            heapq.heappush(self._delayed, (due, next(self._sequence), key))
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until a key is ready; ``None`` on timeout or shutdown."""

        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutdown:
                    return None
                if deadline is not None and self._clock() >= deadline:
                    return None
                self._cond.wait(self._next_wait(deadline))

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            due, _, key = heapq.heappop(self._delayed)
            # Entries superseded by an earlier deadline are dropped.
            if self._deadlines.get(key) != due:
                continue
            del self._deadlines[key]
            self._add_locked(key)

    def _next_wait(self, deadline: Optional[float]) -> Optional[float]:
        now = self._clock()
        candidates = []
        if deadline is not None:
            candidates.append(max(deadline - now, 0.0))
        if self._delayed:
            candidates.append(max(self._delayed[0][0] - now, 0.0))
        if not candidates:
            return None
        return min(candidates)
