"""Media file discovery for the rotation pools.

Walks a wallpaper directory recursively, following symlinked folders, and
yields ``(path, mtime)`` pairs for files whose extension the display engine
can show. macOS resource forks and in-progress downloads are skipped.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Iterator
from pathlib import Path

from .logging_utils import render_fields_block

LOGGER = logging.getLogger(__name__)

PARTIAL_DOWNLOAD_SUFFIXES = frozenset({".part", ".partial", ".crdownload", ".download", ".tmp"})


def normalize_extensions(extensions: Iterable[str]) -> frozenset[str]:
    """Lower-case extensions without the leading dot."""
    return frozenset(ext.lower().lstrip(".") for ext in extensions if ext.strip("."))


def skip_reason_for_media_file(path: Path) -> str | None:
    """Check if a media file should be skipped.

    Returns:
        A string describing why the file should be skipped, or None if it is usable
    """
    name = path.name
    if name.startswith("._") and len(name) > 2:
        return "macOS resource fork (._ prefix)"
    if path.suffix.lower() in PARTIAL_DOWNLOAD_SUFFIXES:
        return "partial download"
    return None


def gather_media_files(directory: Path, extensions: Iterable[str]) -> Iterator[tuple[Path, float]]:
    """Yield ``(path, mtime)`` for every displayable file below ``directory``.

    A missing directory logs a warning and yields nothing. Files that vanish
    between listing and ``stat`` are skipped.
    """
    allowed = normalize_extensions(extensions)
    if not directory.is_dir():
        LOGGER.warning(render_fields_block("Media Directory Missing", {"Path": directory}, pad_top=True))
        return

    for root, _dirs, files in os.walk(directory, followlinks=True):
        for name in sorted(files):
            path = Path(root) / name
            skip_reason = skip_reason_for_media_file(path)
            if skip_reason:
                LOGGER.debug(render_fields_block("Skipping Media File", {"File": path, "Reason": skip_reason}))
                continue
            if path.suffix.lower().lstrip(".") not in allowed:
                continue
            try:
                mtime = path.stat().st_mtime
            except OSError as exc:
                LOGGER.debug("Skipping %s: %s", path, exc)
                continue
            yield path, mtime


def extension_filter(extensions: Iterable[str]):
    """Build a scanner callable bound to ``extensions`` for the rotation engine."""
    allowed = tuple(extensions)

    def scan(directory: Path) -> list[tuple[Path, float]]:
        return list(gather_media_files(directory, allowed))

    return scan


__all__ = [
    "PARTIAL_DOWNLOAD_SUFFIXES",
    "extension_filter",
    "gather_media_files",
    "normalize_extensions",
    "skip_reason_for_media_file",
]
