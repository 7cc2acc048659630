# Copyright (c) 2025 Henru Wang
# All rights reserved.

"""File system watcher producing change hints for the incremental updater.

This module implements file system monitoring:
- Watchdog library for cross-platform file watching
- Timestamp-only tracking (no immediate analysis)
- Ignore rules and language detection shared with the SourceScanner
- Invalidation callbacks on file modify/delete/move

Design Decisions:
- Events are hints, not truth: the engine re-reads and re-fingerprints every
  reported path, so a missed or spurious event only costs a hash
- No debouncing: timestamp updates are cheap, last write wins
- Events are recorded under a lock because watchdog delivers them on its
  own thread while the engine drains them from another

Known Limitations:
- Symlinks: Symbolic links are followed by watchdog; paths that resolve
  outside the root are ignored
- Error handling: No automatic restart on watcher failure
"""

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

from watchdog.events import FileMovedEvent, FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from codegraph_engine.scanner import SourceScanner

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)

# Callback signature: (relative_path: str) -> None
InvalidationCallback = Callable[[str], None]


class FileWatcher:
    """Repository watcher recording which files changed since the last drain.

    Thread Safety:
    - Event timestamps are guarded by a lock (watchdog thread writes,
      engine thread drains)

    Usage:
        watcher = FileWatcher(scanner)
        watcher.start()
        ...
        changed = watcher.drain_changes()
        watcher.stop()
    """

    def __init__(self, scanner: SourceScanner):
        """Initialize FileWatcher.

        Args:
            scanner: SourceScanner of the repository (root, ignore rules and
                supported extensions).
        """
        self.scanner = scanner
        self.project_root = scanner.root

        self._lock = threading.Lock()
        self._event_timestamps: Dict[str, float] = {}
        self._invalidation_callbacks: List[InvalidationCallback] = []

        self._observer: Optional["BaseObserver"] = None
        self._event_handler = _FileEventHandler(self)

        logger.info(f"FileWatcher initialized for {self.project_root}")

    def accepts(self, file_path: str) -> Optional[str]:
        """Relative path of a watched file, None if the file is not tracked."""
        if self.scanner.classify(file_path) is None:
            return None
        return self.scanner.relative_path(file_path)

    def register_invalidation_callback(self, callback: InvalidationCallback) -> None:
        """Register a callback invoked on file modify/delete/move.

        Thread Safety:
            Callbacks are invoked synchronously from the watcher thread and
            should return quickly.
        """
        if callback not in self._invalidation_callbacks:
            self._invalidation_callbacks.append(callback)
            logger.debug(f"Registered invalidation callback: {callback}")

    def unregister_invalidation_callback(self, callback: InvalidationCallback) -> None:
        if callback in self._invalidation_callbacks:
            self._invalidation_callbacks.remove(callback)
            logger.debug(f"Unregistered invalidation callback: {callback}")

    def _notify_invalidation_callbacks(self, rel_path: str) -> None:
        for callback in list(self._invalidation_callbacks):
            try:
                callback(rel_path)
            except Exception as e:
                # One callback failure shouldn't prevent other callbacks from being notified
                logger.error(f"Invalidation callback failed for {rel_path}: {e}")

    def record_event(self, rel_path: str) -> None:
        """Record that a file changed (created, modified, deleted or moved)."""
        with self._lock:
            self._event_timestamps[rel_path] = time.time()
        logger.debug(f"Updated timestamp for {rel_path}")

    def get_timestamp(self, rel_path: str) -> Optional[float]:
        with self._lock:
            return self._event_timestamps.get(rel_path)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._event_timestamps)

    def drain_changes(self) -> List[str]:
        """Return and forget every path changed since the last drain, sorted."""
        with self._lock:
            paths = sorted(self._event_timestamps)
            self._event_timestamps.clear()
        return paths

    def start(self) -> None:
        """Start watching the repository.

        Raises:
            RuntimeError: If watcher is already running
        """
        if self._observer is not None and self._observer.is_alive():
            raise RuntimeError("FileWatcher is already running")

        self._observer = Observer()
        self._observer.schedule(  # type: ignore  # watchdog types vary by version
            self._event_handler, str(self.project_root), recursive=True
        )
        self._observer.start()  # type: ignore  # watchdog types vary by version

        logger.info(f"FileWatcher started, monitoring {self.project_root}")

    def stop(self) -> None:
        """Stop watching; blocks until the observer thread terminates (with timeout)."""
        if self._observer is not None and self._observer.is_alive():
            self._observer.stop()  # type: ignore  # watchdog types vary by version
            self._observer.join(timeout=5.0)
            logger.info("FileWatcher stopped")

    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()


class _FileEventHandler(FileSystemEventHandler):
    """Internal event handler for watchdog.

    Delegates to FileWatcher for filtering and timestamp tracking.
    """

    def __init__(self, watcher: FileWatcher):
        super().__init__()
        self.watcher = watcher

    def _handle_path(self, file_path: str, trigger_invalidation: bool, event_type: str) -> None:
        rel_path = self.watcher.accepts(file_path)
        if rel_path is None:
            return
        self.watcher.record_event(rel_path)
        if trigger_invalidation:
            self.watcher._notify_invalidation_callbacks(rel_path)
        logger.debug(f"Event: {event_type} - {rel_path}")

    def _handle_event(self, event: FileSystemEvent, trigger_invalidation: bool = False) -> None:
        if event.is_directory:
            return
        self._handle_path(str(event.src_path), trigger_invalidation, event.event_type)

    def on_created(self, event: FileSystemEvent) -> None:
        self._handle_event(event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._handle_event(event, trigger_invalidation=True)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._handle_event(event, trigger_invalidation=True)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle file move/rename events.

        Treated as Delete (old path) + Create (new path).
        """
        if event.is_directory or not isinstance(event, FileMovedEvent):
            return
        self._handle_path(str(event.src_path), True, "moved_from")
        self._handle_path(str(event.dest_path), False, "moved_to")
