"""Renditions sized for the display, and the machinery that produces them."""

from .cache import RenditionCache, RenditionEntry, RenditionKey
from .detector import Detector, HardwareProfile, MediaInfo, needs_transcode
from .preload import JobState, PreloadJob, PreloadQueue

__all__ = [
    "Detector",
    "HardwareProfile",
    "JobState",
    "MediaInfo",
    "PreloadJob",
    "PreloadQueue",
    "RenditionCache",
    "RenditionEntry",
    "RenditionKey",
    "needs_transcode",
]
