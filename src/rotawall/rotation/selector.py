from __future__ import annotations

import random
from collections.abc import Sequence

from ..errors import NoCandidatesError
from ..models import PoolStats, RotationItem

DEFAULT_TOLERANCE = 5.0
DEFAULT_PERTURBATION_RATIO = 0.03


class Selector:
    """Tolerance-median selection over randomly perturbed weights.

    Each weight is nudged by ``weight * perturbation_ratio * U(-1, 1)`` so the
    randomness stays proportional however far the weights drift. Among the
    items whose perturbed weight is within ``tolerance`` of the top one, the
    middle-ranked item wins, which avoids always taking the single leader.
    """

    def __init__(
        self,
        tolerance: float = DEFAULT_TOLERANCE,
        perturbation_ratio: float = DEFAULT_PERTURBATION_RATIO,
        rng: random.Random | None = None,
    ) -> None:
        self.tolerance = tolerance
        self.perturbation_ratio = perturbation_ratio
        self._rng = rng or random.Random()

    def perturb(self, weights: Sequence[float]) -> list[float]:
        ratio = self.perturbation_ratio
        return [weight + weight * ratio * self._rng.uniform(-1.0, 1.0) for weight in weights]

    def pick(self, weights: Sequence[float]) -> int:
        count = len(weights)
        if count == 0:
            raise NoCandidatesError("No candidates to select from")
        if count == 1:
            return 0

        perturbed = self.perturb(weights)
        return median_within_tolerance(perturbed, self.tolerance)


def median_within_tolerance(values: Sequence[float], tolerance: float) -> int:
    """Return the index of the lower-middle value within ``tolerance`` of the maximum."""
    if not values:
        raise NoCandidatesError("No candidates to select from")
    order = sorted(range(len(values)), key=lambda index: values[index], reverse=True)
    top = values[order[0]]
    candidates = [index for index in order if top - values[index] <= tolerance]
    return candidates[len(candidates) // 2]


def pool_stats(items: Sequence[RotationItem]) -> PoolStats:
    if not items:
        return PoolStats()
    weights = [item.weight for item in items]
    total = sum(weights)
    return PoolStats(
        count=len(items),
        min_weight=min(weights),
        max_weight=max(weights),
        mean_weight=total / len(items),
        total_weight=total,
        total_skips=sum(item.skip_streak for item in items),
    )


__all__ = ["DEFAULT_PERTURBATION_RATIO", "DEFAULT_TOLERANCE", "Selector", "median_within_tolerance", "pool_stats"]
