"""Long-running wallpaper rotation.

:class:`RotationDaemon` ties one rotation engine and display adapter per mode
to the rendition cache. A switch never waits for an encode: a cache hit serves
the rendition, a miss serves the original and queues a preload.
"""

from __future__ import annotations

import logging
import random
import signal
import threading
import time
from pathlib import Path

from .config import AppConfig
from .display import DisplayEngine, create_engine, supported_extensions
from .errors import DisplayError, NoCandidatesError
from .file_discovery import extension_filter
from .logging_utils import render_fields_block
from .models import Mode
from .rotation import RotationEngine
from .transcode import Detector, PreloadQueue, RenditionCache, RenditionKey
from .utils import ensure_directory
from .watcher import MediaWatcher

LOGGER = logging.getLogger(__name__)

MODE_POLL_INTERVAL = 2.0


def read_mode_state(path: Path, default: Mode = Mode.VIDEO) -> Mode:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except OSError as exc:
        LOGGER.warning("Failed to read mode state %s: %s", path, exc)
        return default
    try:
        return Mode.parse(text)
    except ValueError:
        LOGGER.warning("Ignoring unknown mode '%s' in %s", text.strip(), path)
        return default


def write_mode_state(path: Path, mode: Mode) -> None:
    try:
        ensure_directory(path.parent)
        path.write_text(mode.value, encoding="utf-8")
    except OSError as exc:
        LOGGER.error("Failed to write mode state %s: %s", path, exc)


def build_engine(config: AppConfig, mode: Mode, rng: random.Random | None = None) -> RotationEngine:
    extensions = supported_extensions(config.engine_type(mode))
    return RotationEngine(
        config.state_path(mode),
        config.weight,
        directory=config.media_dir(mode),
        scanner=extension_filter(extensions),
        rng=rng,
        name=f"{mode.value} pool",
    )


def build_display(config: AppConfig, mode: Mode) -> DisplayEngine:
    return create_engine(config.engine_type(mode), video=config.video_engine, image=config.image_engine)


class RotationDaemon:
    def __init__(
        self,
        config: AppConfig,
        *,
        background: bool = True,
        engines: dict[Mode, RotationEngine] | None = None,
        displays: dict[Mode, DisplayEngine] | None = None,
        detector: Detector | None = None,
        cache: RenditionCache | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config
        self.engines = engines or {mode: build_engine(config, mode, rng) for mode in Mode}
        self.displays = displays or {mode: build_display(config, mode) for mode in Mode}
        self.detector = detector or Detector(config.transcode)
        self.cache = cache
        if self.cache is None and config.transcode.enabled:
            self.cache = RenditionCache(
                config.transcode.cache_dir,
                config.transcode.max_cache_bytes,
                self.detector,
            )
        self.preload: PreloadQueue | None = None
        if background and self.cache is not None and config.transcode.preload_count > 0:
            self.preload = PreloadQueue(self.engines[Mode.VIDEO], self.cache, config.transcode.preload_count)
        self.mode = read_mode_state(config.paths.mode_state)
        self.current: Path | None = None
        self.watcher: MediaWatcher | None = None
        self._stop = threading.Event()
        self._closed = False

    @property
    def engine(self) -> RotationEngine:
        return self.engines[self.mode]

    @property
    def display(self) -> DisplayEngine:
        return self.displays[self.mode]

    def resolve(self, source: Path, mode: Mode) -> Path:
        """Pick the file to hand to the display: a resident rendition or the original."""
        if mode is not Mode.VIDEO or self.cache is None:
            return source
        profile = self.detector.profile()
        if not self.cache.requires_transcode(source, profile):
            return source
        key = RenditionKey.for_profile(source, profile)
        rendition = self.cache.lookup(key)
        if rendition is not None:
            self.cache.pin(key)
            return rendition
        self.cache.unpin_all()
        if self.preload is not None:
            self.preload.submit(source, profile)
        return source

    def switch(self) -> Path:
        """Advance the current mode's rotation and display the result.

        Raises:
            NoCandidatesError: the pool is empty
            DisplayError: the display adapter failed
        """
        mode = self.mode
        source = self.engines[mode].next()
        served = self.resolve(source, mode)
        self.displays[mode].show(served)
        self.current = served
        LOGGER.info(
            render_fields_block(
                "Wallpaper Switched",
                {
                    "Mode": mode.label,
                    "File": source.name,
                    "Served": "rendition" if served != source else "original",
                },
            )
        )
        if mode is Mode.VIDEO and self.preload is not None:
            self.preload.tick()
        return served

    def set_mode(self, mode: Mode) -> None:
        """Switch modes: cancel preloads, stop the other adapter and persist the choice."""
        if mode is self.mode:
            write_mode_state(self.config.paths.mode_state, mode)
            return
        previous = self.mode
        if self.preload is not None:
            self.preload.cancel_all()
        try:
            self.displays[previous].stop()
        except DisplayError as exc:
            LOGGER.warning("Failed to stop %s display: %s", previous.value, exc)
        self.mode = mode
        write_mode_state(self.config.paths.mode_state, mode)
        LOGGER.info("Switched to %s mode", mode.label.lower())

    def start_watcher(self) -> None:
        if not self.config.watcher.enabled:
            return
        roots = {
            self.config.media_dir(mode): (
                supported_extensions(self.config.engine_type(mode)),
                self.engines[mode].rescan,
            )
            for mode in Mode
        }
        self.watcher = MediaWatcher(roots, self.config.watcher)
        self.watcher.start()

    def _handle_signal(self, signum, _frame) -> None:
        LOGGER.info("Received %s; shutting down", signal.Signals(signum).name)
        self._stop.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def _sync_mode(self) -> bool:
        """Adopt a mode change written by another process; True when it changed."""
        persisted = read_mode_state(self.config.paths.mode_state, default=self.mode)
        if persisted is self.mode:
            return False
        self.set_mode(persisted)
        return True

    def _switch_guarded(self) -> None:
        try:
            self.switch()
        except NoCandidatesError as exc:
            LOGGER.warning("%s", exc)
        except DisplayError as exc:
            LOGGER.error("Failed to display wallpaper: %s", exc)

    def run_forever(self) -> None:
        for engine in self.engines.values():
            engine.load()
        self.start_watcher()

        LOGGER.info(
            render_fields_block(
                "Daemon Started",
                {
                    "Mode": self.mode.label,
                    "Engine": self.display.name,
                    "Interval": f"{self.config.interval(self.mode)}s",
                    "Wallpapers": len(self.engine),
                    "Transcode": "enabled" if self.cache is not None else "disabled",
                },
                pad_top=True,
            )
        )

        now = time.monotonic()
        next_switch = now
        next_preload = now + self.config.transcode.preload_interval
        try:
            while not self._stop.is_set():
                now = time.monotonic()
                if self._sync_mode():
                    # The process that changed the mode already displayed a wallpaper
                    next_switch = now + self.config.interval(self.mode)
                if now >= next_switch:
                    self._switch_guarded()
                    next_switch = time.monotonic() + self.config.interval(self.mode)
                if self.preload is not None and self.mode is Mode.VIDEO and now >= next_preload:
                    self.preload.tick()
                    next_preload = now + self.config.transcode.preload_interval
                self._stop.wait(timeout=max(0.0, min(MODE_POLL_INTERVAL, next_switch - time.monotonic())))
        finally:
            self.shutdown()

    def stop(self) -> None:
        self._stop.set()

    def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop.set()
        if self.watcher is not None:
            self.watcher.stop()
        if self.preload is not None:
            self.preload.shutdown(wait=True)
        LOGGER.info("Daemon stopped")


__all__ = ["RotationDaemon", "build_display", "build_engine", "read_mode_state", "write_mode_state"]
