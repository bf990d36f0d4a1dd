from __future__ import annotations

import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from rotawall.errors import EncodeCancelled, EncodeError
from rotawall.transcode.detector import HardwareProfile, MediaInfo
from rotawall.transcode.preload import JobState, PreloadQueue

PROFILE = HardwareProfile(width=1920, height=1080, fps=30, encoder="libx264")


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.peek_candidates.return_value = [Path("/v/a.mp4"), Path("/v/b.mp4"), Path("/v/c.mp4")]
    return engine


@pytest.fixture
def resident() -> set[str]:
    return set()


@pytest.fixture
def cache(resident):
    cache = MagicMock()
    cache.requires_transcode.return_value = True
    cache.contains.side_effect = lambda key: key.source in resident
    cache.media_info.return_value = MediaInfo(width=3840, height=2160, fps=60.0)
    cache.produce.side_effect = lambda key, info, profile, cancel=None: Path(f"/cache/{Path(key.source).name}")
    return cache


def _queue(engine, cache, capacity: int = 3) -> PreloadQueue:
    return PreloadQueue(engine, cache, capacity, profile_provider=lambda: PROFILE)


def _drain(queue: PreloadQueue) -> None:
    for job in queue.jobs():
        job.future.result(timeout=5)


class TestTick:
    def test_only_missing_renditions_are_queued(self, engine, cache, resident) -> None:
        resident.update({"/v/a.mp4", "/v/b.mp4"})
        queue = _queue(engine, cache)

        submitted = queue.tick()
        _drain(queue)
        queue.shutdown(wait=True)

        assert [job.source for job in submitted] == [Path("/v/c.mp4")]
        engine.peek_candidates.assert_called_once_with(3)
        assert cache.produce.call_count == 1
        assert queue.jobs()[0].state is JobState.DONE
        assert queue.jobs()[0].result == Path("/cache/c.mp4")

    def test_sources_within_target_are_skipped(self, engine, cache) -> None:
        cache.requires_transcode.side_effect = lambda source, profile: source.name != "b.mp4"
        queue = _queue(engine, cache)

        submitted = queue.tick()
        _drain(queue)
        queue.shutdown(wait=True)

        assert sorted(job.source.name for job in submitted) == ["a.mp4", "c.mp4"]

    def test_no_encoder_means_no_jobs(self, engine, cache) -> None:
        queue = PreloadQueue(
            engine,
            cache,
            3,
            profile_provider=lambda: HardwareProfile(width=1920, height=1080, fps=30, encoder="none"),
        )

        assert queue.tick() == []
        queue.shutdown()
        engine.peek_candidates.assert_not_called()

    def test_zero_capacity_is_inert(self, engine, cache) -> None:
        queue = _queue(engine, cache, capacity=0)

        assert queue.tick() == []
        assert queue.submit(Path("/v/a.mp4")) is None
        queue.shutdown()


class TestCapacityAndDuplicates:
    def test_running_jobs_block_duplicates_and_respect_capacity(self, engine, cache) -> None:
        release = threading.Event()
        started = threading.Semaphore(0)

        def produce(key, info, profile, cancel=None):
            started.release()
            release.wait(5)
            return Path(f"/cache/{Path(key.source).name}")

        cache.produce.side_effect = produce
        queue = _queue(engine, cache, capacity=2)

        first = queue.tick()
        assert started.acquire(timeout=5)
        assert started.acquire(timeout=5)
        second = queue.tick()
        extra = queue.submit(Path("/v/c.mp4"))

        assert len(first) == 2
        assert second == []
        assert extra is None
        assert queue.active_count() == 2

        release.set()
        _drain(queue)
        queue.shutdown(wait=True)
        assert queue.summary()["done"] == 2

    def test_failed_job_is_not_retried(self, engine, cache) -> None:
        engine.peek_candidates.return_value = [Path("/v/a.mp4")]
        cache.produce.side_effect = EncodeError("ffmpeg exited with 1")
        queue = _queue(engine, cache)

        queue.tick()
        _drain(queue)
        again = queue.tick()
        queue.shutdown()

        job = queue.jobs()[0]
        assert job.state is JobState.FAILED
        assert "ffmpeg exited" in job.error
        assert again == []

    def test_file_error_is_retried_on_next_tick(self, engine, cache) -> None:
        engine.peek_candidates.return_value = [Path("/v/a.mp4")]
        outcomes = [FileNotFoundError("partial output vanished"), Path("/cache/a.mp4")]

        def produce(key, info, profile, cancel=None):
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        cache.produce.side_effect = produce
        queue = _queue(engine, cache)

        queue.tick()
        _drain(queue)
        failed = queue.jobs()[0]
        assert failed.state is JobState.FAILED
        assert failed.retryable

        retried = queue.tick()
        _drain(queue)
        queue.shutdown()

        assert len(retried) == 1
        assert retried[0].state is JobState.DONE
        assert retried[0].result == Path("/cache/a.mp4")


class TestCancellation:
    def test_cancel_all_stops_running_encode(self, engine, cache) -> None:
        engine.peek_candidates.return_value = [Path("/v/a.mp4")]
        started = threading.Event()

        def produce(key, info, profile, cancel=None):
            started.set()
            cancel.wait(5)
            raise EncodeCancelled("cancelled")

        cache.produce.side_effect = produce
        queue = _queue(engine, cache)

        queue.tick()
        assert started.wait(5)
        assert queue.cancel_all() == 1
        queue.shutdown(wait=True)

        assert queue.jobs()[0].state is JobState.CANCELLED

    def test_shutdown_rejects_new_work(self, engine, cache) -> None:
        queue = _queue(engine, cache)
        queue.shutdown(wait=True)

        assert queue.tick() == []
        assert queue.submit(Path("/v/a.mp4")) is None

    def test_cancelled_job_can_be_resubmitted(self, engine, cache) -> None:
        engine.peek_candidates.return_value = [Path("/v/a.mp4")]
        started = threading.Event()

        def produce(key, info, profile, cancel=None):
            if not started.is_set():
                started.set()
                cancel.wait(5)
                raise EncodeCancelled("cancelled")
            return Path("/cache/a.mp4")

        cache.produce.side_effect = produce
        queue = _queue(engine, cache)
        queue.tick()
        assert started.wait(5)
        queue.cancel_all()
        _drain(queue)

        resubmitted = queue.tick()
        queue.shutdown(wait=True)

        assert len(resubmitted) == 1
