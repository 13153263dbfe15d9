"""Watcher implementations used by the IPAM agent."""

from .file import FileManifestWatcher  # noqa: F401

__all__ = ["FileManifestWatcher"]
