"""Weighted rotation: conserved weights, perturbed tolerance-median selection.

Public API:
- RotationEngine: stateful ``next()`` / ``rescan()`` / ``peek_candidates()``
- WeightStore: persisted per-item state
- WeightUpdater: conserved redistribution, renormalization, reshuffle
- Selector: tolerance-median selection over perturbed weights
- reconcile: pure merge of a directory scan into an existing pool
"""

from .engine import RotationEngine
from .selector import Selector, pool_stats
from .store import WeightStore, age_weights, reconcile
from .updater import WeightUpdater

__all__ = [
    "RotationEngine",
    "Selector",
    "WeightStore",
    "WeightUpdater",
    "age_weights",
    "pool_stats",
    "reconcile",
]
