from __future__ import annotations

import logging
import random
from collections.abc import Sequence

from ..config import WeightSettings
from ..models import RotationItem

LOGGER = logging.getLogger(__name__)

RESHUFFLE_JITTER = 0.2


class WeightUpdater:
    """Redistributes weight after each selection.

    The selected item pays ``select_penalty`` and every other item receives an
    equal share, so the total weight of the pool never changes. Only
    :meth:`renormalize` and :meth:`reshuffle` alter the total.
    """

    def __init__(self, settings: WeightSettings, rng: random.Random | None = None) -> None:
        self.settings = settings
        self._rng = rng or random.Random()

    def apply(self, items: Sequence[RotationItem], selected: int) -> bool:
        count = len(items)
        if count <= 1:
            return False
        if not 0 <= selected < count:
            raise IndexError(f"Selected index {selected} outside pool of {count}")

        penalty = self.settings.select_penalty
        reward = penalty / (count - 1)
        for index, item in enumerate(items):
            if index == selected:
                item.weight -= penalty
                item.skip_streak = 0
            else:
                item.weight += reward
                item.skip_streak += 1
        return True

    def renormalize(self, items: Sequence[RotationItem]) -> float | None:
        """Rescale all weights when the mean exceeds the threshold.

        Returns the applied scale factor, or None when no rescale was needed.
        """
        if not items:
            return None
        mean = sum(item.weight for item in items) / len(items)
        if mean <= self.settings.normalization_threshold:
            return None

        factor = self.settings.normalization_target / mean
        for item in items:
            item.weight *= factor
        LOGGER.info("Renormalized weights: mean %.2f -> %.2f (factor %.4f)", mean, mean * factor, factor)
        return factor

    def reshuffle_due(self, generation: int) -> bool:
        period = self.settings.shuffle_period
        return period > 0 and generation > 0 and generation % period == 0

    def reshuffle_count(self, count: int) -> int:
        return max(0, min(count, round(self.settings.shuffle_intensity * count)))

    def reshuffle(self, items: Sequence[RotationItem]) -> list[int]:
        """Reset a random subset of items to near the base weight.

        Returns the indices that were reset.
        """
        chosen_count = self.reshuffle_count(len(items))
        if chosen_count == 0:
            return []

        base = self.settings.base
        indices = self._rng.sample(range(len(items)), chosen_count)
        for index in indices:
            offset = self._rng.uniform(-RESHUFFLE_JITTER, RESHUFFLE_JITTER)
            items[index].weight = base * (1.0 + offset)
            items[index].skip_streak = 0
        LOGGER.info(
            "Reshuffled %d of %d item(s) (intensity %.0f%%)",
            chosen_count,
            len(items),
            self.settings.shuffle_intensity * 100,
        )
        return sorted(indices)


__all__ = ["RESHUFFLE_JITTER", "WeightUpdater"]
