"""Stateful rotation over one pool of media files.

The engine composes :class:`WeightStore`, :class:`WeightUpdater` and
:class:`Selector`. ``next()`` calls are serialized by a lock; readers such as
the preload queue only use :meth:`RotationEngine.peek_candidates`, which takes
the same lock briefly and never mutates state.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from ..config import WeightSettings
from ..errors import NoCandidatesError
from ..logging_utils import render_fields_block
from ..models import CooldownInfo, PoolStats, RescanResult
from .selector import Selector, pool_stats
from .store import WeightStore, reconcile
from .updater import WeightUpdater

LOGGER = logging.getLogger(__name__)

Scanner = Callable[[Path], Iterable[tuple[Path, float]]]


class RotationEngine:
    def __init__(
        self,
        store_path: Path,
        settings: WeightSettings,
        *,
        directory: Path | None = None,
        scanner: Scanner | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
        name: str = "rotation",
    ) -> None:
        self.settings = settings
        self.directory = directory
        self.name = name
        self._scanner = scanner
        self._clock = clock
        rng = rng or random.Random()
        self.store = WeightStore(store_path)
        self.selector = Selector(settings.tolerance, settings.perturbation_ratio, rng=rng)
        self.updater = WeightUpdater(settings, rng=rng)
        self._lock = threading.Lock()
        self._loaded = False
        self.persistence_error: str | None = None

    @property
    def persistence_stale(self) -> bool:
        """True when the last snapshot write failed and disk state lags memory."""
        return self.persistence_error is not None

    def __len__(self) -> int:
        return len(self.store)

    def load(self) -> None:
        """Load the snapshot, then reconcile it against the directory when a scanner is set."""
        with self._lock:
            self._load_locked()

    def _load_locked(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        restored = self.store.load()
        if restored:
            LOGGER.debug("Restored %d item(s) for %s from %s", len(self.store), self.name, self.store.path)
        if self._scanner is not None and self.directory is not None:
            self._rescan_locked(self.directory)

    def next(self) -> Path:
        """Select the next item, redistribute weight, persist, and return its path."""
        with self._lock:
            self._load_locked()
            items = list(self.store)
            if not items:
                raise NoCandidatesError(f"No candidates available for {self.name}")

            selected = self.selector.pick([item.weight for item in items])
            self.updater.apply(items, selected)
            items[selected].last_selected_at = self._clock()
            self.store.generation += 1

            if self.updater.reshuffle_due(self.store.generation):
                self.updater.reshuffle(items)
            self.updater.renormalize(items)

            self._persist_locked()
            chosen = items[selected]
            LOGGER.debug(
                "Selected %s for %s (weight %.2f, generation %d)",
                chosen.key,
                self.name,
                chosen.weight,
                self.store.generation,
            )
            return Path(chosen.key)

    def rescan(self, directory: Path | None = None) -> RescanResult:
        with self._lock:
            self._ensure_snapshot_locked()
            return self._rescan_locked(directory or self.directory)

    def _ensure_snapshot_locked(self) -> None:
        if not self._loaded:
            self._loaded = True
            self.store.load()

    def _rescan_locked(self, directory: Path | None) -> RescanResult:
        if self._scanner is None or directory is None:
            raise ValueError(f"Rotation engine {self.name} has no scanner or directory configured")
        if not directory.is_dir():
            LOGGER.warning(
                "Media directory %s for %s is missing; keeping %d known item(s)", directory, self.name, len(self.store)
            )
            return RescanResult(kept=len(self.store))
        scanned = [(str(path), float(mtime)) for path, mtime in self._scanner(directory)]
        return self._apply_scan_locked(scanned)

    def apply_scan(self, scanned: Iterable[tuple[Path | str, float]]) -> RescanResult:
        """Merge an externally produced scan into the pool and persist it."""
        with self._lock:
            self._ensure_snapshot_locked()
            return self._apply_scan_locked([(str(path), float(mtime)) for path, mtime in scanned])

    def _apply_scan_locked(self, scanned: list[tuple[str, float]]) -> RescanResult:
        if not scanned and len(self.store):
            # An empty scan of a populated pool is treated as an unavailable source
            LOGGER.warning("No media files found for %s; keeping %d known item(s)", self.name, len(self.store))
            return RescanResult(kept=len(self.store))
        merged, result = reconcile(self.store.items, scanned, self.settings.base)
        self.store.replace_items(merged)
        if not merged:
            LOGGER.warning("No media files found for %s", self.name)
        if result.changed:
            LOGGER.info(
                render_fields_block(
                    "Pool Rescanned",
                    {
                        "Pool": self.name,
                        "Added": len(result.added),
                        "Removed": len(result.removed),
                        "Kept": result.kept,
                    },
                )
            )
        self._persist_locked()
        return result

    def peek_candidates(self, k: int) -> list[Path]:
        """Return up to ``k`` paths with the highest raw weights without consuming a round."""
        if k <= 0:
            return []
        with self._lock:
            ranked = sorted(self.store, key=lambda item: item.weight, reverse=True)
            return [Path(item.key) for item in ranked[:k]]

    def stats(self) -> PoolStats:
        with self._lock:
            return pool_stats(list(self.store))

    def cooldowns(self) -> list[CooldownInfo]:
        """Describe every item's distance from the top weight, highest weight first."""
        with self._lock:
            items = sorted(self.store, key=lambda item: item.weight, reverse=True)
            if not items:
                return []
            top = items[0].weight
            return [
                CooldownInfo(
                    key=item.key,
                    weight=item.weight,
                    gap_to_top=top - item.weight,
                    cooling=(top - item.weight) > self.settings.tolerance,
                    skip_streak=item.skip_streak,
                    last_selected_at=item.last_selected_at,
                )
                for item in items
            ]

    def _persist_locked(self) -> None:
        try:
            self.store.save()
        except OSError as exc:
            self.persistence_error = str(exc)
            LOGGER.error("Failed to write weight snapshot %s: %s", self.store.path, exc)
            return
        if self.persistence_error is not None:
            LOGGER.info("Weight snapshot %s written again after earlier failure", self.store.path)
        self.persistence_error = None


__all__ = ["RotationEngine", "Scanner"]
