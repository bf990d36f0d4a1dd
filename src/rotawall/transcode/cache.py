"""Size-bounded cache of encoded renditions.

Entries are keyed by (source, target width/height, target fps, encoder) and
tracked in ``index.json`` inside the cache directory. Inserting re-checks the
byte budget and evicts the least recently used entries first; an entry that
cannot fit is not cached and the original file keeps being served.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..errors import EncodeCancelled, EncodeError, ProbeError
from ..logging_utils import render_fields_block
from ..utils import ensure_directory, format_bytes, read_json, write_json_atomic
from .detector import Detector, HardwareProfile, MediaInfo, needs_transcode
from .encoder import PARTIAL_SUFFIX, encode

LOGGER = logging.getLogger(__name__)

INDEX_NAME = "index.json"
INDEX_VERSION = 1
RENDITION_SUFFIX = ".mp4"
UNTRACKED_GRACE_SECONDS = 15 * 60


@dataclass(frozen=True)
class RenditionKey:
    source: str
    width: int
    height: int
    fps: int
    encoder: str

    @classmethod
    def for_profile(cls, source: Path, profile: HardwareProfile) -> "RenditionKey":
        return cls(str(source), profile.width, profile.height, profile.fps, profile.encoder)

    @property
    def spec(self) -> str:
        return f"{self.width}x{self.height}@{self.fps}fps"

    def digest(self) -> str:
        text = f"{self.source}|{self.spec}|{self.encoder}"
        return hashlib.sha1(text.encode("utf-8")).hexdigest()[:8]


@dataclass
class RenditionEntry:
    key: RenditionKey
    path: Path
    size: int
    last_used: float
    sequence: int
    source_mtime_ns: int | None = None
    source_size: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.key.source,
            "width": self.key.width,
            "height": self.key.height,
            "fps": self.key.fps,
            "encoder": self.key.encoder,
            "path": str(self.path),
            "size": self.size,
            "last_used": self.last_used,
            "sequence": self.sequence,
            "source_mtime_ns": self.source_mtime_ns,
            "source_size": self.source_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RenditionEntry":
        key = RenditionKey(
            source=str(data["source"]),
            width=int(data["width"]),
            height=int(data["height"]),
            fps=int(data["fps"]),
            encoder=str(data["encoder"]),
        )
        return cls(
            key=key,
            path=Path(data["path"]),
            size=int(data.get("size", 0)),
            last_used=float(data.get("last_used", 0.0)),
            sequence=int(data.get("sequence", 0)),
            source_mtime_ns=data.get("source_mtime_ns"),
            source_size=data.get("source_size"),
        )


def _source_fingerprint(source: Path) -> tuple[int, int] | None:
    try:
        stat = source.stat()
    except OSError:
        return None
    return stat.st_mtime_ns, stat.st_size


class RenditionCache:
    def __init__(
        self,
        cache_dir: Path,
        budget_bytes: int,
        detector: Detector,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = cache_dir
        self.budget_bytes = budget_bytes
        self.detector = detector
        self.index_path = cache_dir / INDEX_NAME
        self._clock = clock
        self._entries: dict[RenditionKey, RenditionEntry] = {}
        self._pinned: set[RenditionKey] = set()
        self._media_info: dict[tuple[str, int, int], MediaInfo] = {}
        self._sequence = 0
        self._lock = threading.RLock()
        self._load()

    # -- index -------------------------------------------------------------

    def _load(self) -> None:
        ensure_directory(self.cache_dir)
        records = self._read_index()

        dropped = 0
        for record in records:
            try:
                entry = RenditionEntry.from_dict(record)
            except (KeyError, TypeError, ValueError):
                dropped += 1
                continue
            try:
                entry.size = entry.path.stat().st_size
            except OSError:
                dropped += 1
                continue
            self._entries[entry.key] = entry
            self._sequence = max(self._sequence, entry.sequence + 1)

        if dropped:
            LOGGER.info("Dropped %d stale rendition index entr(ies)", dropped)
        self._sweep_untracked()
        evicted = self._evict_locked(protect=None)
        if dropped or evicted:
            self.save_index()

    def _read_index(self) -> list[Any]:
        if not self.index_path.exists():
            return []
        try:
            payload = read_json(self.index_path)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to load rendition index %s: %s", self.index_path, exc)
            return []
        records = payload.get("entries", []) if isinstance(payload, dict) else []
        return records if isinstance(records, list) else []

    def _sweep_untracked(self) -> None:
        """Delete leftover partial encodes and renditions the index does not list.

        Only files untouched for ``UNTRACKED_GRACE_SECONDS`` are removed; a
        younger file may still be written by an encode in another process.
        """
        tracked = {entry.path.name for entry in self._entries.values()}
        cutoff = time.time() - UNTRACKED_GRACE_SECONDS
        removed = 0
        for candidate in self.cache_dir.iterdir():
            name = candidate.name
            if name.endswith(PARTIAL_SUFFIX):
                kind = "partial encode"
            elif name.endswith(RENDITION_SUFFIX) and name not in tracked:
                kind = "untracked rendition"
            else:
                continue
            try:
                if candidate.stat().st_mtime > cutoff:
                    continue
                candidate.unlink()
            except OSError as exc:
                LOGGER.debug("Skipping %s %s: %s", kind, candidate, exc)
                continue
            removed += 1
            LOGGER.debug("Removed %s %s", kind, candidate.name)
        if removed:
            LOGGER.info("Removed %d leftover file(s) from %s", removed, self.cache_dir)

    def save_index(self) -> None:
        with self._lock:
            payload = {
                "version": INDEX_VERSION,
                "entries": [entry.to_dict() for entry in self._entries.values()],
            }
        try:
            write_json_atomic(self.index_path, payload)
        except OSError as exc:
            LOGGER.error("Failed to write rendition index %s: %s", self.index_path, exc)

    # -- queries -----------------------------------------------------------

    def rendition_path(self, key: RenditionKey) -> Path:
        stem = Path(key.source).stem or "rendition"
        return self.cache_dir / f"{stem}_{key.spec}_{key.encoder}_{key.digest()}{RENDITION_SUFFIX}"

    def get_or_none(self, key: RenditionKey) -> Path | None:
        """Return the cached rendition path without side effects."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.path.exists():
                return None
            return entry.path

    def contains(self, key: RenditionKey) -> bool:
        return self.get_or_none(key) is not None

    def total_size(self) -> int:
        with self._lock:
            return sum(entry.size for entry in self._entries.values())

    def entries(self) -> list[RenditionEntry]:
        """Entries ordered from least to most recently used."""
        with self._lock:
            return sorted(self._entries.values(), key=lambda entry: (entry.last_used, entry.sequence))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def media_info(self, source: Path) -> MediaInfo:
        """Probe ``source``, memoized per (path, mtime, size). Raises ProbeError."""
        fingerprint = _source_fingerprint(source)
        if fingerprint is None:
            raise ProbeError(f"Source file does not exist: {source}")
        memo_key = (str(source), *fingerprint)
        with self._lock:
            cached = self._media_info.get(memo_key)
        if cached is not None:
            return cached
        info = self.detector.probe(source)
        with self._lock:
            self._media_info[memo_key] = info
        return info

    def requires_transcode(self, source: Path, profile: HardwareProfile) -> bool:
        if not profile.can_encode:
            return False
        try:
            info = self.media_info(source)
        except ProbeError as exc:
            LOGGER.warning("Cannot probe %s, serving original: %s", source, exc)
            return False
        return needs_transcode(info, profile)

    def lookup(self, key: RenditionKey) -> Path | None:
        """Return a fresh rendition for ``key`` and record the access.

        An entry whose source changed since it was encoded is superseded:
        dropped from the index and deleted.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not entry.path.exists():
                self._remove_locked(entry, delete_file=False)
                self.save_index()
                return None
            fingerprint = _source_fingerprint(Path(key.source))
            if (entry.source_mtime_ns, entry.source_size) != (None, None) and fingerprint != (
                entry.source_mtime_ns,
                entry.source_size,
            ):
                LOGGER.info("Source changed since encode; discarding rendition %s", entry.path.name)
                self._remove_locked(entry, delete_file=True)
                self.save_index()
                return None
            entry.last_used = self._clock()
        self.save_index()
        return entry.path

    # -- mutation ----------------------------------------------------------

    def touch(self, key: RenditionKey) -> bool:
        """Record an access for ``key``; False when it is not cached."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            entry.last_used = self._clock()
        self.save_index()
        return True

    def supersede_stale(self) -> int:
        """Drop every entry whose source vanished or changed since encoding."""
        stale: list[RenditionEntry] = []
        with self._lock:
            for entry in list(self._entries.values()):
                fingerprint = _source_fingerprint(Path(entry.key.source))
                if fingerprint is None or fingerprint != (entry.source_mtime_ns, entry.source_size):
                    self._remove_locked(entry, delete_file=True)
                    stale.append(entry)
        if stale:
            LOGGER.info("Superseded %d stale rendition(s)", len(stale))
            self.save_index()
        return len(stale)

    def pin(self, key: RenditionKey) -> None:
        """Protect ``key`` from eviction while it is on screen."""
        with self._lock:
            self._pinned = {key}

    def unpin_all(self) -> None:
        with self._lock:
            self._pinned.clear()

    def insert(self, key: RenditionKey, path: Path) -> Path | None:
        """Register an encoded file and enforce the budget.

        Returns the cached path, or None when the rendition alone does not fit
        in the budget; in that case the file is deleted.
        """
        try:
            size = path.stat().st_size
        except OSError as exc:
            LOGGER.warning("Rendition %s vanished before it could be cached: %s", path, exc)
            return None
        fingerprint = _source_fingerprint(Path(key.source))

        with self._lock:
            if self.budget_bytes > 0 and size > self.budget_bytes:
                LOGGER.warning(
                    render_fields_block(
                        "Rendition Exceeds Cache Budget",
                        {"Rendition": path.name, "Size": format_bytes(size), "Budget": format_bytes(self.budget_bytes)},
                    )
                )
                path.unlink(missing_ok=True)
                return None

            previous = self._entries.get(key)
            if previous is not None and previous.path != path:
                self._remove_locked(previous, delete_file=True)

            entry = RenditionEntry(
                key=key,
                path=path,
                size=size,
                last_used=self._clock(),
                sequence=self._sequence,
                source_mtime_ns=fingerprint[0] if fingerprint else None,
                source_size=fingerprint[1] if fingerprint else None,
            )
            self._sequence += 1
            self._entries[key] = entry
            self._evict_locked(protect=key)

            admitted = True
            if self.budget_bytes > 0 and self.total_size() > self.budget_bytes:
                LOGGER.warning("Cache budget still exceeded by pinned renditions; not caching %s", path.name)
                self._remove_locked(entry, delete_file=True)
                admitted = False
        self.save_index()
        return path if admitted else None

    def _remove_locked(self, entry: RenditionEntry, *, delete_file: bool) -> None:
        self._entries.pop(entry.key, None)
        if delete_file:
            try:
                entry.path.unlink(missing_ok=True)
            except OSError as exc:
                LOGGER.warning("Failed to delete rendition %s: %s", entry.path, exc)

    def _evict_locked(self, protect: RenditionKey | None) -> list[RenditionEntry]:
        evicted: list[RenditionEntry] = []
        if self.budget_bytes <= 0:
            return evicted
        while self.total_size() > self.budget_bytes:
            candidates = [
                entry for entry in self._entries.values() if entry.key != protect and entry.key not in self._pinned
            ]
            if not candidates:
                break
            victim = min(candidates, key=lambda entry: (entry.last_used, entry.sequence))
            self._remove_locked(victim, delete_file=True)
            evicted.append(victim)
            LOGGER.debug("Evicted rendition %s (%s)", victim.path.name, format_bytes(victim.size))
        if evicted:
            LOGGER.info(
                "Evicted %d rendition(s); cache now %s of %s",
                len(evicted),
                format_bytes(self.total_size()),
                format_bytes(self.budget_bytes),
            )
        return evicted

    # -- encoding ----------------------------------------------------------

    def produce(
        self,
        key: RenditionKey,
        info: MediaInfo,
        profile: HardwareProfile,
        *,
        cancel: threading.Event | None = None,
    ) -> Path | None:
        """Encode ``key`` and insert it. Raises EncodeError/EncodeCancelled."""
        output = self.rendition_path(key)
        encode(Path(key.source), output, info, profile, cancel=cancel)
        if cancel is not None and cancel.is_set():
            output.unlink(missing_ok=True)
            raise EncodeCancelled(f"Encode of {key.source} cancelled")
        return self.insert(key, output)

    def get_or_encode(self, source: Path, profile: HardwareProfile | None = None) -> Path:
        """Return the path to display for ``source``, encoding synchronously on a miss.

        Sources that do not exceed the target come back unmodified; any probe
        or encode failure also falls back to the original file.
        """
        profile = profile or self.detector.profile()
        if not profile.can_encode:
            return source
        try:
            info = self.media_info(source)
        except ProbeError as exc:
            LOGGER.warning("Cannot probe %s, serving original: %s", source, exc)
            return source
        if not needs_transcode(info, profile):
            return source

        key = RenditionKey.for_profile(source, profile)
        cached = self.lookup(key)
        if cached is not None:
            return cached

        try:
            produced = self.produce(key, info, profile)
        except EncodeError as exc:
            LOGGER.error("Transcode failed for %s, serving original: %s", source, exc)
            return source
        return produced or source


__all__ = ["INDEX_NAME", "RenditionCache", "RenditionEntry", "RenditionKey"]
