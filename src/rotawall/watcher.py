from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from queue import Empty, Queue

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import WatcherSettings
from .file_discovery import normalize_extensions, skip_reason_for_media_file

LOGGER = logging.getLogger(__name__)

RescanCallback = Callable[[], object]


class _MediaChangeHandler(FileSystemEventHandler):
    def __init__(self, queue: Queue[tuple[Path, Path]], root: Path, extensions: Iterable[str]) -> None:
        self._queue = queue
        self._root = root
        self._extensions = normalize_extensions(extensions)

    def on_created(self, event) -> None:  # type: ignore[override]
        if getattr(event, "is_directory", False):
            return
        self._emit(Path(event.src_path))

    def on_deleted(self, event) -> None:  # type: ignore[override]
        if getattr(event, "is_directory", False):
            return
        self._emit(Path(event.src_path))

    def on_modified(self, event) -> None:  # type: ignore[override]
        if getattr(event, "is_directory", False):
            return
        self._emit(Path(event.src_path))

    def on_moved(self, event) -> None:  # type: ignore[override]
        if getattr(event, "is_directory", False):
            return
        self._emit(Path(event.src_path))
        self._emit(Path(event.dest_path))

    def _emit(self, path: Path) -> None:
        if not self._matches(path):
            return
        self._queue.put((self._root, path))

    def _matches(self, path: Path) -> bool:
        if skip_reason_for_media_file(path):
            return False
        return path.suffix.lower().lstrip(".") in self._extensions


class MediaWatcher:
    """Watches the wallpaper directories and rescans a pool once changes settle.

    ``roots`` maps each watched directory to the extensions it holds and the
    callback that rescans its pool. A callback runs after no further change
    has been seen for ``debounce_seconds``.
    """

    def __init__(
        self,
        roots: Mapping[Path, tuple[Iterable[str], RescanCallback]],
        settings: WatcherSettings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._queue: Queue[tuple[Path, Path]] = Queue()
        self._callbacks: dict[Path, RescanCallback] = {}
        self._observer = Observer()
        for root, (extensions, callback) in roots.items():
            if not root.is_dir():
                LOGGER.warning("Not watching %s: directory does not exist", root)
                continue
            handler = _MediaChangeHandler(self._queue, root, extensions)
            self._observer.schedule(handler, str(root), recursive=True)
            self._callbacks[root] = callback
        self._pending: dict[Path, set[Path]] = {}
        self._last_event = 0.0
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def roots(self) -> list[Path]:
        return list(self._callbacks)

    def start(self) -> None:
        if not self._callbacks:
            LOGGER.warning("Filesystem watcher has no valid directories; not starting")
            return
        self._observer.start()
        self._thread = threading.Thread(target=self._loop, name="rotawall-watcher", daemon=True)
        self._thread.start()
        LOGGER.info("Filesystem watcher monitoring: %s", ", ".join(str(root) for root in self._callbacks))

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._thread.join(timeout=5)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.collect(timeout=1.0)
            self.flush_due()

    def collect(self, timeout: float = 0.0) -> int:
        """Move queued events into the pending set; returns how many arrived."""
        received = 0
        try:
            root, path = self._queue.get(timeout=timeout) if timeout > 0 else self._queue.get_nowait()
        except Empty:
            return 0
        while True:
            self._pending.setdefault(root, set()).add(path)
            received += 1
            try:
                root, path = self._queue.get_nowait()
            except Empty:
                break
        self._last_event = self._clock()
        return received

    def flush_due(self) -> list[Path]:
        """Run the rescan callbacks whose changes have settled; returns the roots rescanned."""
        if not self._pending:
            return []
        if self._clock() - self._last_event < self._settings.debounce_seconds:
            return []

        flushed: list[Path] = []
        pending, self._pending = self._pending, {}
        for root, changed in pending.items():
            LOGGER.debug("Detected %d change(s) under %s; rescanning", len(changed), root)
            try:
                self._callbacks[root]()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Rescan of %s failed", root)
            flushed.append(root)
        return flushed


__all__ = ["MediaWatcher"]
