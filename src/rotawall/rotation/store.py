"""Per-item weight state, its JSON snapshot, and merge-on-rescan.

The store is a plain ordered mapping of item key to :class:`RotationItem`
plus a ``generation`` round counter. Reconciling the stored pool against a
fresh directory scan is a pure function (:func:`reconcile`) so the merge
rules can be exercised without touching the filesystem.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import replace
from pathlib import Path
from typing import Any

from ..models import RescanResult, RotationItem
from ..utils import read_json, write_json_atomic

LOGGER = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

# Initial weights span base - AGE_SPREAD / 2 (oldest) to base + AGE_SPREAD / 2 (newest)
AGE_SPREAD = 40.0


def age_weights(scanned: Sequence[tuple[str, float]], base: float = 100.0) -> dict[str, float]:
    """Assign initial weights from modification times.

    The newest file gets ``base + 20`` and the oldest ``base - 20``, linearly
    in between. When every file shares one mtime (including a single file)
    all of them get the top weight.
    """
    if not scanned:
        return {}
    top = base + AGE_SPREAD / 2
    bottom = base - AGE_SPREAD / 2
    mtimes = [mtime for _, mtime in scanned]
    newest = max(mtimes)
    oldest = min(mtimes)
    span = oldest - newest

    weights: dict[str, float] = {}
    for key, mtime in scanned:
        ratio = 0.0 if span == 0 else (mtime - newest) / span
        weights[key] = min(top, max(bottom, top - AGE_SPREAD * ratio))
    return weights


def reconcile(
    existing: Mapping[str, RotationItem],
    scanned: Iterable[tuple[str, float]],
    base: float = 100.0,
) -> tuple[dict[str, RotationItem], RescanResult]:
    """Merge a directory scan into an existing pool.

    Items still present keep their state; vanished items are dropped. New
    items get their age weight when the pool is fresh, or the average of
    their age weight and the mean weight of the retained items otherwise,
    so newcomers land in the middle of an established pool.
    """
    scanned_list: list[tuple[str, float]] = []
    seen: set[str] = set()
    for key, mtime in scanned:
        if key in seen:
            continue
        seen.add(key)
        scanned_list.append((key, mtime))

    initial = age_weights(scanned_list, base)
    kept_weights = [existing[key].weight for key, _ in scanned_list if key in existing]
    pool_mean = sum(kept_weights) / len(kept_weights) if kept_weights else None

    result = RescanResult()
    merged: dict[str, RotationItem] = {}
    for key, _ in scanned_list:
        previous = existing.get(key)
        if previous is not None:
            merged[key] = replace(previous)
            result.kept += 1
            continue
        weight = initial[key]
        if pool_mean is not None:
            weight = (weight + pool_mean) / 2
        merged[key] = RotationItem(key=key, weight=weight)
        result.added.append(key)

    result.removed = [key for key in existing if key not in seen]
    return merged, result


def _parse_item(key: Any, data: Any) -> RotationItem | None:
    if not isinstance(key, str) or not isinstance(data, dict):
        return None
    try:
        weight = float(data["weight"])
        skip_streak = int(data.get("skip_streak", 0))
    except (KeyError, TypeError, ValueError):
        return None
    if not math.isfinite(weight) or skip_streak < 0:
        return None
    last = data.get("last_selected_at")
    try:
        last_selected_at = float(last) if last is not None else None
    except (TypeError, ValueError):
        last_selected_at = None
    return RotationItem(key=key, weight=weight, skip_streak=skip_streak, last_selected_at=last_selected_at)


class WeightStore:
    """Ordered item weights for one rotation pool, persisted as a JSON snapshot."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.items: dict[str, RotationItem] = {}
        self.generation = 0

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self) -> Iterator[RotationItem]:
        return iter(self.items.values())

    def __contains__(self, key: object) -> bool:
        return key in self.items

    def get(self, key: str) -> RotationItem | None:
        return self.items.get(key)

    def keys(self) -> list[str]:
        return list(self.items)

    def weights(self) -> list[float]:
        return [item.weight for item in self.items.values()]

    def replace_items(self, items: Mapping[str, RotationItem]) -> None:
        self.items = dict(items)

    def load(self) -> bool:
        """Load the snapshot from disk.

        Returns True when a usable snapshot was read. A missing, unreadable
        or malformed snapshot leaves the store empty so the caller rebuilds
        the pool from a scan.
        """
        self.items = {}
        self.generation = 0
        if not self.path.exists():
            return False

        try:
            payload = read_json(self.path)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to load weight snapshot %s: %s", self.path, exc)
            return False

        if not isinstance(payload, dict):
            LOGGER.warning("Ignoring malformed weight snapshot %s", self.path)
            return False

        if "items" in payload and isinstance(payload.get("items"), dict):
            raw_items = payload["items"]
            try:
                self.generation = max(0, int(payload.get("generation", 0)))
            except (TypeError, ValueError):
                self.generation = 0
        else:
            raw_items = payload

        skipped = 0
        for key, data in raw_items.items():
            item = _parse_item(key, data)
            if item is None:
                skipped += 1
                continue
            self.items[key] = item
        if skipped:
            LOGGER.warning("Dropped %d malformed record(s) from weight snapshot %s", skipped, self.path)
        return bool(self.items)

    def to_payload(self) -> dict[str, Any]:
        return {
            "version": SNAPSHOT_VERSION,
            "generation": self.generation,
            "items": {key: item.to_dict() for key, item in self.items.items()},
        }

    def save(self) -> None:
        """Rewrite the whole snapshot. Raises OSError on failure."""
        write_json_atomic(self.path, self.to_payload())


__all__ = ["AGE_SPREAD", "WeightStore", "age_weights", "reconcile"]
