"""Entry point for the standalone IPAM agent."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from threading import Event

from butler_ipam.controller import AllocationLifecycleController, Backoff
from butler_ipam.store import ObjectStore

from .config import load_config
from .dispatcher import EventDispatcher, Worker
from .events import PoolUpsert
from .queue import WorkQueue
from .watchers import FileManifestWatcher

LOG = logging.getLogger(__name__)


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the IPAM agent")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("/etc/butler-ipam/agent.yaml"),
        help="Path to the agent configuration file",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    config = load_config(args.config)

    store = ObjectStore()
    controller = AllocationLifecycleController(
        store,
        config.provider,
        finalizer=config.controller.finalizer,
        backoff=Backoff(config.controller.backoff_base, config.controller.backoff_max),
    )
    queue = WorkQueue()
    dispatcher = EventDispatcher(store, queue)

    for pool in config.pools:
        dispatcher.handle(PoolUpsert(pool))

    stop_event = Event()

    workers = [
        Worker(queue, controller, stop_event, name=f"ipam-worker-{index}")
        for index in range(config.controller.workers)
    ]
    for worker in workers:
        worker.start()

    watchers = []
    for watcher_cfg in config.watchers:
        if watcher_cfg.type == "file":
            watcher = FileManifestWatcher(
                dispatcher=dispatcher,
                path=watcher_cfg.path,
                interval=watcher_cfg.interval,
                stop_event=stop_event,
            )
        else:
            raise ValueError(f"unsupported watcher type '{watcher_cfg.type}'")
        # Perform an initial poll so we react immediately
        try:
            watcher.poll()
        except Exception:  # pragma: no cover - logged inside watcher
            LOG.exception("initial poll failed for watcher %s", watcher_cfg.path)
        watcher.start()
        watchers.append(watcher)

    if not watchers:
        LOG.warning("no watchers configured; only configured pools will be served")

    def _shutdown(signum, frame):  # pragma: no cover - signal handler
        LOG.info("received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        while not stop_event.wait(config.controller.resync_interval):
            dispatcher.resync()
    except KeyboardInterrupt:  # pragma: no cover - fallback if signal not set
        stop_event.set()

    queue.shutdown()
    for thread in [*watchers, *workers]:
        thread.join()

    LOG.info("IPAM agent stopped")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
