from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import List, Optional


class Mode(str, enum.Enum):
    VIDEO = "video"
    IMAGE = "image"

    @classmethod
    def parse(cls, value: str) -> "Mode":
        lowered = value.strip().lower()
        if lowered in {"picture", "image", "static"}:
            return cls.IMAGE
        if lowered in {"video", "dynamic", "live"}:
            return cls.VIDEO
        raise ValueError(f"Unknown mode: {value}")

    @property
    def label(self) -> str:
        return "Video" if self is Mode.VIDEO else "Image"


@dataclass(slots=True)
class RotationItem:
    key: str
    weight: float
    skip_streak: int = 0
    last_selected_at: Optional[float] = None

    def to_dict(self) -> dict[str, object]:
        return {
            "weight": self.weight,
            "skip_streak": self.skip_streak,
            "last_selected_at": self.last_selected_at,
        }


@dataclass(slots=True)
class PoolStats:
    count: int = 0
    min_weight: float = 0.0
    max_weight: float = 0.0
    mean_weight: float = 0.0
    total_weight: float = 0.0
    total_skips: int = 0


@dataclass(slots=True)
class CooldownInfo:
    key: str
    weight: float
    gap_to_top: float
    cooling: bool
    skip_streak: int
    last_selected_at: Optional[float]


@dataclass(slots=True)
class RescanResult:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    kept: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)
