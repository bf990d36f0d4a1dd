from __future__ import annotations

import logging
import random
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from rotawall.config import AppConfig, build_config
from rotawall.daemon import RotationDaemon, build_engine, read_mode_state, write_mode_state
from rotawall.display import DisplayEngine
from rotawall.errors import DisplayError, NoCandidatesError
from rotawall.models import Mode
from rotawall.transcode.cache import RenditionKey
from rotawall.transcode.detector import HardwareProfile

PROFILE = HardwareProfile(width=1920, height=1080, fps=30, encoder="libx264")


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return build_config(
        {
            "paths": {
                "video_dir": str(tmp_path / "videos"),
                "image_dir": str(tmp_path / "images"),
                "video_state": str(tmp_path / "state" / "video.json"),
                "image_state": str(tmp_path / "state" / "image.json"),
                "mode_state": str(tmp_path / "state" / "mode"),
            },
            "transcode": {"enabled": False, "cache_dir": str(tmp_path / "cache")},
        }
    )


@pytest.fixture
def displays():
    return {mode: MagicMock(spec=DisplayEngine) for mode in Mode}


@pytest.fixture
def engines():
    engines = {mode: MagicMock() for mode in Mode}
    engines[Mode.VIDEO].next.return_value = Path("/v/ocean.mp4")
    engines[Mode.IMAGE].next.return_value = Path("/i/forest.png")
    return engines


@pytest.fixture
def detector():
    detector = MagicMock()
    detector.profile.return_value = PROFILE
    return detector


class TestModeState:
    def test_missing_file_defaults_to_video(self, tmp_path) -> None:
        assert read_mode_state(tmp_path / "mode") is Mode.VIDEO

    def test_round_trip(self, tmp_path) -> None:
        path = tmp_path / "state" / "mode"
        write_mode_state(path, Mode.IMAGE)

        assert path.read_text(encoding="utf-8") == "image"
        assert read_mode_state(path) is Mode.IMAGE

    def test_accepts_aliases(self, tmp_path) -> None:
        path = tmp_path / "mode"
        path.write_text("picture\n", encoding="utf-8")
        assert read_mode_state(path) is Mode.IMAGE

    def test_garbage_falls_back(self, tmp_path, caplog) -> None:
        path = tmp_path / "mode"
        path.write_text("slideshow", encoding="utf-8")

        with caplog.at_level(logging.WARNING):
            assert read_mode_state(path, default=Mode.IMAGE) is Mode.IMAGE
        assert "Ignoring unknown mode" in caplog.text


class TestSwitch:
    def test_serves_original_without_cache(self, config, engines, displays, detector) -> None:
        daemon = RotationDaemon(config, engines=engines, displays=displays, detector=detector)

        served = daemon.switch()

        assert served == Path("/v/ocean.mp4")
        displays[Mode.VIDEO].show.assert_called_once_with(Path("/v/ocean.mp4"))
        assert daemon.current == served
        assert daemon.preload is None

    def test_cache_hit_serves_rendition(self, config, engines, displays, detector) -> None:
        cache = MagicMock()
        cache.requires_transcode.return_value = True
        cache.lookup.return_value = Path("/cache/ocean_1920x1080@30fps.mp4")
        daemon = RotationDaemon(
            config, background=False, engines=engines, displays=displays, detector=detector, cache=cache
        )

        served = daemon.switch()

        assert served == Path("/cache/ocean_1920x1080@30fps.mp4")
        key = RenditionKey.for_profile(Path("/v/ocean.mp4"), PROFILE)
        cache.lookup.assert_called_once_with(key)
        cache.pin.assert_called_once_with(key)

    def test_cache_miss_serves_original_and_preloads(self, config, engines, displays, detector) -> None:
        config.transcode.preload_count = 2
        cache = MagicMock()
        cache.requires_transcode.return_value = True
        cache.lookup.return_value = None
        daemon = RotationDaemon(config, engines=engines, displays=displays, detector=detector, cache=cache)
        daemon.preload = MagicMock()

        served = daemon.switch()

        assert served == Path("/v/ocean.mp4")
        daemon.preload.submit.assert_called_once_with(Path("/v/ocean.mp4"), PROFILE)
        daemon.preload.tick.assert_called_once_with()
        cache.produce.assert_not_called()

    def test_small_source_bypasses_lookup(self, config, engines, displays, detector) -> None:
        cache = MagicMock()
        cache.requires_transcode.return_value = False
        daemon = RotationDaemon(
            config, background=False, engines=engines, displays=displays, detector=detector, cache=cache
        )

        assert daemon.switch() == Path("/v/ocean.mp4")
        cache.lookup.assert_not_called()

    def test_image_mode_never_touches_cache(self, config, engines, displays, detector) -> None:
        write_mode_state(config.paths.mode_state, Mode.IMAGE)
        cache = MagicMock()
        daemon = RotationDaemon(
            config, background=False, engines=engines, displays=displays, detector=detector, cache=cache
        )

        assert daemon.switch() == Path("/i/forest.png")
        displays[Mode.IMAGE].show.assert_called_once_with(Path("/i/forest.png"))
        cache.requires_transcode.assert_not_called()

    def test_errors_propagate(self, config, engines, displays, detector) -> None:
        daemon = RotationDaemon(config, engines=engines, displays=displays, detector=detector)

        engines[Mode.VIDEO].next.side_effect = NoCandidatesError("empty")
        with pytest.raises(NoCandidatesError):
            daemon.switch()

        engines[Mode.VIDEO].next.side_effect = None
        displays[Mode.VIDEO].show.side_effect = DisplayError("no wayland")
        with pytest.raises(DisplayError):
            daemon.switch()


class TestSetMode:
    def test_switching_stops_previous_display_and_persists(self, config, engines, displays, detector) -> None:
        daemon = RotationDaemon(config, engines=engines, displays=displays, detector=detector)
        daemon.preload = MagicMock()

        daemon.set_mode(Mode.IMAGE)

        assert daemon.mode is Mode.IMAGE
        displays[Mode.VIDEO].stop.assert_called_once_with()
        daemon.preload.cancel_all.assert_called_once_with()
        assert read_mode_state(config.paths.mode_state) is Mode.IMAGE

    def test_same_mode_is_a_noop(self, config, engines, displays, detector) -> None:
        daemon = RotationDaemon(config, engines=engines, displays=displays, detector=detector)

        daemon.set_mode(Mode.VIDEO)

        displays[Mode.VIDEO].stop.assert_not_called()
        assert read_mode_state(config.paths.mode_state) is Mode.VIDEO

    def test_stop_failure_is_tolerated(self, config, engines, displays, detector, caplog) -> None:
        displays[Mode.VIDEO].stop.side_effect = DisplayError("pkill missing")
        daemon = RotationDaemon(config, engines=engines, displays=displays, detector=detector)

        with caplog.at_level(logging.WARNING):
            daemon.set_mode(Mode.IMAGE)

        assert daemon.mode is Mode.IMAGE
        assert "Failed to stop video display" in caplog.text

    def test_external_mode_change_is_adopted(self, config, engines, displays, detector) -> None:
        daemon = RotationDaemon(config, engines=engines, displays=displays, detector=detector)
        write_mode_state(config.paths.mode_state, Mode.IMAGE)

        assert daemon._sync_mode() is True
        assert daemon.mode is Mode.IMAGE
        assert daemon._sync_mode() is False


class TestLifecycle:
    def test_shutdown_is_idempotent(self, config, engines, displays, detector) -> None:
        daemon = RotationDaemon(config, engines=engines, displays=displays, detector=detector)
        daemon.preload = MagicMock()

        daemon.shutdown()
        daemon.shutdown()

        daemon.preload.shutdown.assert_called_once_with(wait=True)

    def test_run_forever_switches_then_stops(self, config, engines, displays, detector) -> None:
        daemon = RotationDaemon(config, engines=engines, displays=displays, detector=detector)

        def stop_after_show(path):
            daemon.stop()

        displays[Mode.VIDEO].show.side_effect = stop_after_show

        daemon.run_forever()

        engines[Mode.VIDEO].load.assert_called_once_with()
        engines[Mode.IMAGE].load.assert_called_once_with()
        displays[Mode.VIDEO].show.assert_called_once_with(Path("/v/ocean.mp4"))

    def test_run_forever_survives_empty_pool(self, config, engines, displays, detector, caplog) -> None:
        daemon = RotationDaemon(config, engines=engines, displays=displays, detector=detector)

        def empty_then_stop():
            daemon.stop()
            raise NoCandidatesError("No candidates available for video pool")

        engines[Mode.VIDEO].next.side_effect = empty_then_stop

        with caplog.at_level(logging.WARNING):
            daemon.run_forever()

        assert "No candidates available" in caplog.text


def test_build_engine_scans_configured_directory(config, tmp_path) -> None:
    videos = tmp_path / "videos"
    videos.mkdir()
    (videos / "a.mp4").write_bytes(b"a")
    (videos / "b.png").write_bytes(b"b")

    engine = build_engine(config, Mode.VIDEO, rng=random.Random(0))

    assert engine.next() == videos / "a.mp4"
    assert config.paths.video_state.exists()
