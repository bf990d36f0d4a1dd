"""Bounded background preloading of renditions for upcoming selections.

The queue peeks at the rotation engine's highest-weighted items and encodes
those that would need a rendition, at most ``capacity`` at a time. Workers only
read from the engine and write to the rendition cache; the queue's own lock is
never held while calling into either of them.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections import Counter
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import EncodeCancelled, EncodeError, ProbeError
from ..rotation import RotationEngine
from .cache import RenditionCache, RenditionKey
from .detector import HardwareProfile

LOGGER = logging.getLogger(__name__)


class JobState(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PreloadJob:
    key: RenditionKey
    state: JobState = JobState.QUEUED
    submitted_at: float = field(default_factory=time.time)
    error: str | None = None
    result: Path | None = None
    cancel: threading.Event = field(default_factory=threading.Event, repr=False)
    future: Future | None = field(default=None, repr=False)
    retryable: bool = False

    @property
    def source(self) -> Path:
        return Path(self.key.source)

    @property
    def active(self) -> bool:
        return self.state in (JobState.QUEUED, JobState.RUNNING)

    @property
    def blocks_resubmit(self) -> bool:
        # Encode failures and renditions rejected by the budget are not retried.
        if self.active:
            return True
        if self.state is JobState.FAILED:
            return not self.retryable
        return self.state is JobState.DONE and self.result is None


class PreloadQueue:
    def __init__(
        self,
        engine: RotationEngine,
        cache: RenditionCache,
        capacity: int,
        *,
        profile_provider: Callable[[], HardwareProfile] | None = None,
    ) -> None:
        self.engine = engine
        self.cache = cache
        self.capacity = max(0, capacity)
        self._profile = profile_provider or cache.detector.profile
        self._executor: ThreadPoolExecutor | None = None
        if self.capacity > 0:
            self._executor = ThreadPoolExecutor(max_workers=self.capacity, thread_name_prefix="rotawall-preload")
        self._jobs: dict[RenditionKey, PreloadJob] = {}
        self._lock = threading.Lock()
        self._closed = False

    def jobs(self) -> list[PreloadJob]:
        with self._lock:
            return sorted(self._jobs.values(), key=lambda job: job.submitted_at)

    def active_count(self) -> int:
        with self._lock:
            return self._active_locked()

    def _active_locked(self) -> int:
        return sum(1 for job in self._jobs.values() if job.active)

    def summary(self) -> dict[str, int]:
        with self._lock:
            counts = Counter(job.state.value for job in self._jobs.values())
        return {state.value: counts.get(state.value, 0) for state in JobState}

    def tick(self) -> list[PreloadJob]:
        """Submit encodes for upcoming candidates while capacity allows."""
        if self._closed or self._executor is None:
            return []
        if self.capacity - self.active_count() <= 0:
            return []
        profile = self._profile()
        if not profile.can_encode:
            return []

        submitted: list[PreloadJob] = []
        for source in self.engine.peek_candidates(self.capacity):
            job = self.submit(source, profile)
            if job is not None:
                submitted.append(job)
            if self.active_count() >= self.capacity:
                break
        if submitted:
            LOGGER.debug("Queued %d preload job(s)", len(submitted))
        return submitted

    def submit(self, source: Path, profile: HardwareProfile | None = None) -> PreloadJob | None:
        """Queue one encode unless it is unnecessary, resident, already queued or over capacity."""
        if self._closed or self._executor is None:
            return None
        profile = profile or self._profile()
        if not self.cache.requires_transcode(source, profile):
            return None
        key = RenditionKey.for_profile(source, profile)
        if self.cache.contains(key):
            return None

        with self._lock:
            if self._closed:
                return None
            existing = self._jobs.get(key)
            if existing is not None and existing.blocks_resubmit:
                return None
            if self._active_locked() >= self.capacity:
                return None
            job = PreloadJob(key=key)
            self._jobs[key] = job
            job.future = self._executor.submit(self._run, job, profile)
        LOGGER.debug("Preload queued for %s", source.name)
        return job

    def _run(self, job: PreloadJob, profile: HardwareProfile) -> None:
        with self._lock:
            if job.cancel.is_set():
                job.state = JobState.CANCELLED
                return
            job.state = JobState.RUNNING

        state = JobState.DONE
        try:
            info = self.cache.media_info(job.source)
            job.result = self.cache.produce(job.key, info, profile, cancel=job.cancel)
        except EncodeCancelled:
            state = JobState.CANCELLED
            LOGGER.debug("Preload cancelled for %s", job.source.name)
        except (EncodeError, ProbeError) as exc:
            state = JobState.FAILED
            job.error = str(exc)
            LOGGER.warning("Preload failed for %s: %s", job.source.name, exc)
        except OSError as exc:
            state = JobState.FAILED
            job.error = str(exc)
            job.retryable = True
            LOGGER.warning("Preload of %s hit a file error and will be retried: %s", job.source.name, exc)
        except Exception as exc:  # noqa: BLE001
            state = JobState.FAILED
            job.error = str(exc)
            LOGGER.exception("Unexpected error while preloading %s", job.source)

        with self._lock:
            job.state = state
        if state is JobState.DONE and job.result is not None:
            LOGGER.info("Preloaded %s", job.result.name)

    def cancel_all(self) -> int:
        """Flag every queued or running job; returns how many were cancelled."""
        cancelled = 0
        with self._lock:
            for job in self._jobs.values():
                if not job.active:
                    continue
                job.cancel.set()
                cancelled += 1
                if job.future is not None and job.future.cancel():
                    job.state = JobState.CANCELLED
        if cancelled:
            LOGGER.info("Cancelled %d preload job(s)", cancelled)
        return cancelled

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        self.cancel_all()
        if self._executor is not None:
            self._executor.shutdown(wait=wait, cancel_futures=True)


__all__ = ["JobState", "PreloadJob", "PreloadQueue"]
