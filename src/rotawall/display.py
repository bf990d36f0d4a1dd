"""Wallpaper display adapters.

Each adapter drives one external program: ``mpvpaper`` for video and
``swww`` for still images. ``show`` raises :class:`DisplayError` when the
program cannot be started or reports a failure.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import time
from pathlib import Path

from .config import ImageEngineSettings, VideoEngineSettings
from .errors import DisplayError

LOGGER = logging.getLogger(__name__)

MPVPAPER_EXTENSIONS = ("mp4", "mkv", "webm", "avi", "mov", "flv", "wmv", "m4v", "gif")
SWWW_EXTENSIONS = ("jpg", "jpeg", "png", "gif", "pnm", "tga", "tiff", "tif", "webp", "bmp", "ff")
DAEMON_STARTUP_DELAY = 0.5
COMMAND_TIMEOUT = 30


class DisplayEngine:
    name = "engine"
    binary = ""

    def show(self, path: Path) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    def is_available(self) -> bool:
        return shutil.which(self.binary) is not None


class MpvPaperEngine(DisplayEngine):
    """Loops a video on every output; the previous instance is killed first."""

    name = "mpvpaper"
    binary = "mpvpaper"

    def __init__(self, options: str = VideoEngineSettings.options) -> None:
        self.options = options

    def command(self, path: Path) -> list[str]:
        return ["mpvpaper", "-o", self.options, "*", str(path)]

    def show(self, path: Path) -> None:
        self.stop()
        try:
            subprocess.Popen(
                self.command(path),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise DisplayError(f"Failed to start mpvpaper: {exc}") from exc
        LOGGER.debug("mpvpaper started for %s", path)

    def stop(self) -> None:
        try:
            # pkill exits 1 when nothing matched
            subprocess.run(["pkill", "mpvpaper"], capture_output=True, timeout=COMMAND_TIMEOUT, check=False)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise DisplayError(f"Failed to stop mpvpaper: {exc}") from exc


class SwwwEngine(DisplayEngine):
    name = "swww"
    binary = "swww"

    def __init__(self, settings: ImageEngineSettings | None = None) -> None:
        self.settings = settings or ImageEngineSettings()

    def command(self, path: Path) -> list[str]:
        settings = self.settings
        return [
            "swww",
            "img",
            str(path),
            "--transition-type",
            settings.transition,
            "--transition-duration",
            str(settings.transition_duration),
            "--transition-fps",
            str(settings.transition_fps),
            "--transition-step",
            str(settings.transition_step),
            "--fill",
            settings.fill,
        ]

    def ensure_daemon(self) -> None:
        try:
            check = subprocess.run(
                ["pgrep", "-x", "swww-daemon"], capture_output=True, timeout=COMMAND_TIMEOUT, check=False
            )
        except (OSError, subprocess.TimeoutExpired):
            check = None
        if check is not None and check.returncode == 0:
            return

        LOGGER.info("Starting swww-daemon")
        try:
            subprocess.Popen(
                ["swww-daemon"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            raise DisplayError(f"Failed to start swww-daemon: {exc}") from exc
        time.sleep(DAEMON_STARTUP_DELAY)

    def show(self, path: Path) -> None:
        self.ensure_daemon()
        try:
            result = subprocess.run(
                self.command(path), capture_output=True, text=True, timeout=COMMAND_TIMEOUT, check=False
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise DisplayError(f"Failed to run swww: {exc}") from exc
        if result.returncode != 0:
            raise DisplayError(f"swww exited with {result.returncode}: {result.stderr.strip()}")

    def stop(self) -> None:
        try:
            subprocess.run(["swww", "kill"], capture_output=True, timeout=COMMAND_TIMEOUT, check=False)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise DisplayError(f"Failed to stop swww: {exc}") from exc


def supported_extensions(engine_type: str) -> tuple[str, ...]:
    if engine_type == "swww":
        return SWWW_EXTENSIONS
    return MPVPAPER_EXTENSIONS


def create_engine(
    engine_type: str,
    *,
    video: VideoEngineSettings | None = None,
    image: ImageEngineSettings | None = None,
) -> DisplayEngine:
    """Build the adapter for ``engine_type``; unknown types fall back to mpvpaper."""
    video = video or VideoEngineSettings()
    if engine_type == "swww":
        return SwwwEngine(image)
    if engine_type != "mpvpaper":
        LOGGER.warning("Unknown engine type '%s'; using mpvpaper", engine_type)
    return MpvPaperEngine(video.options)


__all__ = [
    "DisplayEngine",
    "MPVPAPER_EXTENSIONS",
    "MpvPaperEngine",
    "SWWW_EXTENSIONS",
    "SwwwEngine",
    "create_engine",
    "supported_extensions",
]
