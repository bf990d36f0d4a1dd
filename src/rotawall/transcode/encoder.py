from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import threading
from pathlib import Path

from ..errors import EncodeCancelled, EncodeError
from ..utils import ensure_directory
from .detector import HardwareProfile, MediaInfo

LOGGER = logging.getLogger(__name__)

PARTIAL_SUFFIX = ".partial"
POLL_INTERVAL = 0.5
TERMINATE_TIMEOUT = 10.0
VAAPI_DEVICE = "/dev/dri/renderD128"


def partial_path(output: Path) -> Path:
    return output.with_name(output.name + PARTIAL_SUFFIX)


def build_command(source: Path, output: Path, info: MediaInfo, profile: HardwareProfile) -> list[str]:
    """Assemble the ffmpeg invocation for one rendition.

    Scaling keeps the aspect ratio and only ever shrinks; the frame rate is
    capped only when the source exceeds the target. Audio is dropped.
    """
    command = ["ffmpeg", "-hide_banner", "-loglevel", "error", "-y"]
    if profile.encoder == "h264_vaapi":
        command += ["-vaapi_device", VAAPI_DEVICE]
    command += ["-i", str(source)]

    filters: list[str] = []
    if info.width > profile.width or info.height > profile.height:
        filters.append(
            f"scale={profile.width}:{profile.height}:force_original_aspect_ratio=decrease"
            ":force_divisible_by=2:flags=lanczos"
        )
    if profile.fps > 0 and info.fps > profile.fps:
        filters.append(f"fps={profile.fps}")
    if profile.encoder == "h264_vaapi":
        filters.append("format=nv12,hwupload")
    if filters:
        command += ["-vf", ",".join(filters)]

    command += ["-c:v", profile.encoder]
    if profile.encoder == "h264_nvenc":
        command += ["-rc", "vbr", "-cq", str(profile.crf), "-preset", profile.preset]
    elif profile.encoder == "h264_vaapi":
        command += ["-qp", str(profile.crf)]
    else:
        command += ["-crf", str(profile.crf), "-preset", profile.preset]

    command += ["-an", "-movflags", "+faststart", "-f", "mp4", str(output)]
    return command


def _check_cancelled(cancel: threading.Event | None, source: Path) -> None:
    if cancel is not None and cancel.is_set():
        raise EncodeCancelled(f"Encode of {source} cancelled")


def encode(
    source: Path,
    output: Path,
    info: MediaInfo,
    profile: HardwareProfile,
    *,
    cancel: threading.Event | None = None,
    poll_interval: float = POLL_INTERVAL,
) -> Path:
    """Encode ``source`` into ``output``.

    ffmpeg writes to a ``.partial`` sibling that is renamed into place only
    after a successful, uncancelled run, so readers never see a half-written
    rendition. The cancel flag is polled while ffmpeg runs; a cancelled
    process is terminated and its output discarded.

    Raises:
        EncodeCancelled: the cancel flag was set before completion
        EncodeError: ffmpeg is missing or exited with an error
    """
    if not profile.can_encode:
        raise EncodeError("No encoder available")
    if not source.exists():
        raise EncodeError(f"Source file does not exist: {source}")

    _check_cancelled(cancel, source)
    ensure_directory(output.parent)
    scratch = partial_path(output)
    command = build_command(source, scratch, info, profile)
    LOGGER.info("Encoding %s -> %s", source.name, profile.label)
    LOGGER.debug("ffmpeg command: %s", " ".join(command))

    try:
        with tempfile.TemporaryFile() as stderr:
            try:
                process = subprocess.Popen(command, stdout=subprocess.DEVNULL, stderr=stderr)
            except FileNotFoundError as exc:
                raise EncodeError("ffmpeg not found; install ffmpeg to enable transcoding") from exc

            _wait(process, cancel, source, poll_interval)
            if process.returncode != 0:
                stderr.seek(0)
                detail = stderr.read().decode("utf-8", errors="ignore").strip().splitlines()[-3:]
                raise EncodeError(
                    f"ffmpeg exited with {process.returncode} for {source}: {' | '.join(detail) or 'no output'}"
                )

        _check_cancelled(cancel, source)
        os.replace(scratch, output)
    finally:
        if scratch.exists():
            scratch.unlink()

    LOGGER.info("Encoded %s", output.name)
    return output


def _wait(
    process: subprocess.Popen,
    cancel: threading.Event | None,
    source: Path,
    poll_interval: float,
) -> None:
    while True:
        try:
            process.wait(timeout=poll_interval)
            return
        except subprocess.TimeoutExpired:
            pass
        if cancel is not None and cancel.is_set():
            _terminate(process)
            raise EncodeCancelled(f"Encode of {source} cancelled")


def _terminate(process: subprocess.Popen) -> None:
    process.terminate()
    try:
        process.wait(timeout=TERMINATE_TIMEOUT)
    except subprocess.TimeoutExpired:
        LOGGER.warning("ffmpeg did not exit after SIGTERM; killing pid %s", process.pid)
        process.kill()
        process.wait()


__all__ = ["PARTIAL_SUFFIX", "build_command", "encode", "partial_path"]
