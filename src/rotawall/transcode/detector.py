"""Display, encoder and media capability probing.

Everything here shells out to external tools (``hyprctl``, ``ffmpeg``,
``ffprobe``, ``nvidia-smi``). Failures degrade to conservative defaults with
a warning; only :meth:`Detector.probe` raises, since a file that cannot be
probed cannot be judged for transcoding.
"""

from __future__ import annotations

import json
import logging
import subprocess
import threading
from dataclasses import dataclass
from fractions import Fraction
from pathlib import Path

from ..config import TranscodeSettings
from ..errors import ProbeError

LOGGER = logging.getLogger(__name__)

DEFAULT_RESOLUTION = (1920, 1080)
NO_ENCODER = "none"
PROBE_TIMEOUT = 30

# Checked in order; the first one ffmpeg reports is used
ENCODER_PRIORITY = ("h264_nvenc", "h264_vaapi", "libx264")
ENCODER_ALIASES = {
    "nvenc": "h264_nvenc",
    "vaapi": "h264_vaapi",
    "x264": "libx264",
    "cpu": "libx264",
}


@dataclass(frozen=True)
class HardwareProfile:
    width: int
    height: int
    fps: int
    encoder: str
    crf: int = 23
    preset: str = "fast"

    @property
    def can_encode(self) -> bool:
        return self.encoder != NO_ENCODER

    @property
    def label(self) -> str:
        fps = f"@{self.fps}fps" if self.fps else ""
        return f"{self.width}x{self.height}{fps} ({self.encoder})"


@dataclass(frozen=True)
class MediaInfo:
    width: int
    height: int
    fps: float


@dataclass(frozen=True)
class VramInfo:
    used_mb: int
    total_mb: int

    @property
    def usage_percent(self) -> float:
        if self.total_mb <= 0:
            return 0.0
        return self.used_mb / self.total_mb * 100.0


def needs_transcode(info: MediaInfo, profile: HardwareProfile) -> bool:
    """Whether a source exceeds the display target and is worth re-encoding.

    Sources at or below the target resolution and frame rate are never
    re-encoded; transcoding only ever shrinks.
    """
    if info.width > profile.width or info.height > profile.height:
        return True
    return profile.fps > 0 and info.fps > profile.fps + 0.01


def parse_resolution(value: str) -> tuple[int, int] | None:
    """Parse ``'2560'`` (16:9 assumed) or ``'2560x1440'``; None for ``'auto'``."""
    text = value.strip().lower()
    if text == "auto":
        return None
    if text.isdigit():
        width = int(text)
        return width, round(width * 9 / 16)
    parts = text.split("x")
    if len(parts) == 2 and all(part.isdigit() for part in parts):
        return int(parts[0]), int(parts[1])
    raise ValueError(f"Invalid resolution: {value}")


def _parse_rate(value: str | None) -> float:
    if not value or value in {"0/0", "N/A"}:
        return 0.0
    try:
        return float(Fraction(value))
    except (ValueError, ZeroDivisionError):
        return 0.0


class Detector:
    """Builds the :class:`HardwareProfile` used for encodes, once or on demand."""

    def __init__(self, settings: TranscodeSettings) -> None:
        self.settings = settings
        self._profile: HardwareProfile | None = None
        self._lock = threading.Lock()

    def profile(self, *, refresh: bool = False) -> HardwareProfile:
        with self._lock:
            if self._profile is None or refresh:
                self._profile = self._build_profile()
            return self._profile

    def _build_profile(self) -> HardwareProfile:
        resolution = parse_resolution(self.settings.target_resolution)
        width, height = resolution if resolution is not None else self.detect_screen_resolution()
        encoder = self.resolve_encoder()
        profile = HardwareProfile(
            width=width,
            height=height,
            fps=self.settings.target_fps,
            encoder=encoder,
            crf=self.settings.crf,
            preset=self.settings.preset,
        )
        LOGGER.info("Transcode target: %s", profile.label)
        return profile

    def resolve_encoder(self) -> str:
        configured = self.settings.encoder.strip().lower()
        if configured == "auto":
            return self.detect_encoder()
        return ENCODER_ALIASES.get(configured, configured)

    def detect_screen_resolution(self) -> tuple[int, int]:
        """Return the smallest monitor resolution reported by Hyprland."""
        try:
            result = subprocess.run(
                ["hyprctl", "monitors", "-j"],
                capture_output=True,
                text=True,
                timeout=PROBE_TIMEOUT,
                check=False,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            LOGGER.warning("Unable to detect display resolution (%s); using %dx%d", exc, *DEFAULT_RESOLUTION)
            return DEFAULT_RESOLUTION

        if result.returncode != 0:
            LOGGER.warning("hyprctl failed; using default resolution %dx%d", *DEFAULT_RESOLUTION)
            return DEFAULT_RESOLUTION

        try:
            monitors = json.loads(result.stdout)
            sizes = [(int(monitor["width"]), int(monitor["height"])) for monitor in monitors]
        except (ValueError, TypeError, KeyError) as exc:
            LOGGER.warning("Failed to parse monitor list (%s); using %dx%d", exc, *DEFAULT_RESOLUTION)
            return DEFAULT_RESOLUTION

        if not sizes:
            LOGGER.warning("No monitors reported; using default resolution %dx%d", *DEFAULT_RESOLUTION)
            return DEFAULT_RESOLUTION
        return min(sizes, key=lambda size: size[0] * size[1])

    def detect_encoder(self) -> str:
        try:
            result = subprocess.run(
                ["ffmpeg", "-hide_banner", "-encoders"],
                capture_output=True,
                text=True,
                timeout=PROBE_TIMEOUT,
                check=False,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            LOGGER.error("ffmpeg not available (%s); transcoding disabled", exc)
            return NO_ENCODER

        for encoder in ENCODER_PRIORITY:
            if encoder in result.stdout:
                LOGGER.debug("Detected encoder %s", encoder)
                return encoder
        LOGGER.warning("No H.264 encoder reported by ffmpeg; transcoding disabled")
        return NO_ENCODER

    def probe(self, path: Path) -> MediaInfo:
        """Return the first video stream's size and frame rate. Raises ProbeError."""
        command = [
            "ffprobe",
            "-v",
            "error",
            "-select_streams",
            "v:0",
            "-show_entries",
            "stream=width,height,avg_frame_rate,r_frame_rate",
            "-of",
            "json",
            str(path),
        ]
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=PROBE_TIMEOUT, check=False)
        except (FileNotFoundError, subprocess.TimeoutExpired) as exc:
            raise ProbeError(f"ffprobe failed for {path}: {exc}") from exc
        if result.returncode != 0:
            raise ProbeError(f"ffprobe failed for {path}: {result.stderr.strip()}")

        try:
            streams = json.loads(result.stdout).get("streams") or []
            stream = streams[0]
            width = int(stream["width"])
            height = int(stream["height"])
        except (ValueError, TypeError, KeyError, IndexError, AttributeError) as exc:
            raise ProbeError(f"Unexpected ffprobe output for {path}") from exc

        fps = _parse_rate(stream.get("avg_frame_rate")) or _parse_rate(stream.get("r_frame_rate"))
        return MediaInfo(width=width, height=height, fps=fps)

    def vram(self) -> VramInfo | None:
        """Report NVIDIA memory usage, or None when it cannot be queried."""
        try:
            result = subprocess.run(
                ["nvidia-smi", "--query-gpu=memory.used,memory.total", "--format=csv,noheader,nounits"],
                capture_output=True,
                text=True,
                timeout=PROBE_TIMEOUT,
                check=False,
            )
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return None
        if result.returncode != 0:
            return None
        first_line = result.stdout.strip().splitlines()[:1]
        if not first_line:
            return None
        try:
            used, total = (int(part.strip()) for part in first_line[0].split(","))
        except ValueError:
            return None
        return VramInfo(used_mb=used, total_mb=total)


__all__ = [
    "Detector",
    "HardwareProfile",
    "MediaInfo",
    "NO_ENCODER",
    "VramInfo",
    "needs_transcode",
    "parse_resolution",
]
