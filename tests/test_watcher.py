from __future__ import annotations

import logging
from queue import Queue
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from rotawall.config import WatcherSettings
from rotawall.watcher import MediaWatcher, _MediaChangeHandler


@pytest.fixture
def mock_observer():
    """Mock watchdog Observer."""
    with patch("rotawall.watcher.Observer") as observer_cls:
        yield observer_cls.return_value


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _event(src: str, *, dest: str | None = None, is_directory: bool = False) -> SimpleNamespace:
    return SimpleNamespace(src_path=src, dest_path=dest, is_directory=is_directory)


class TestMediaChangeHandler:
    def test_emits_matching_files(self, tmp_path) -> None:
        queue: Queue = Queue()
        handler = _MediaChangeHandler(queue, tmp_path, ["mp4"])

        handler.on_created(_event(str(tmp_path / "new.MP4")))

        assert queue.get_nowait() == (tmp_path, tmp_path / "new.MP4")

    def test_ignores_other_files_and_directories(self, tmp_path) -> None:
        queue: Queue = Queue()
        handler = _MediaChangeHandler(queue, tmp_path, ["mp4"])

        handler.on_created(_event(str(tmp_path / "notes.txt")))
        handler.on_created(_event(str(tmp_path / "clip.mp4.part")))
        handler.on_created(_event(str(tmp_path / "._clip.mp4")))
        handler.on_deleted(_event(str(tmp_path / "folder.mp4"), is_directory=True))

        assert queue.empty()

    def test_move_reports_both_ends(self, tmp_path) -> None:
        queue: Queue = Queue()
        handler = _MediaChangeHandler(queue, tmp_path, ["mp4"])

        # A finished download renamed into place
        handler.on_moved(_event(str(tmp_path / "clip.mp4.part"), dest=str(tmp_path / "clip.mp4")))

        assert queue.get_nowait() == (tmp_path, tmp_path / "clip.mp4")
        assert queue.empty()


class TestMediaWatcher:
    def test_schedules_existing_roots_only(self, tmp_path, mock_observer, caplog) -> None:
        present = tmp_path / "videos"
        present.mkdir()

        with caplog.at_level(logging.WARNING):
            watcher = MediaWatcher(
                {present: (["mp4"], MagicMock()), tmp_path / "absent": (["png"], MagicMock())},
                WatcherSettings(enabled=True),
            )

        assert watcher.roots == [present]
        mock_observer.schedule.assert_called_once()
        assert "Not watching" in caplog.text

    def test_rescan_after_changes_settle(self, tmp_path, mock_observer) -> None:
        rescan = MagicMock()
        clock = FakeClock()
        watcher = MediaWatcher({tmp_path: (["mp4"], rescan)}, WatcherSettings(debounce_seconds=5.0), clock=clock)
        handler = mock_observer.schedule.call_args[0][0]

        handler.on_created(_event(str(tmp_path / "a.mp4")))
        handler.on_created(_event(str(tmp_path / "b.mp4")))
        assert watcher.collect() == 2

        clock.now += 3
        assert watcher.flush_due() == []
        rescan.assert_not_called()

        clock.now += 3
        assert watcher.flush_due() == [tmp_path]
        rescan.assert_called_once_with()
        assert watcher.flush_due() == []

    def test_new_events_restart_the_debounce(self, tmp_path, mock_observer) -> None:
        rescan = MagicMock()
        clock = FakeClock()
        watcher = MediaWatcher({tmp_path: (["mp4"], rescan)}, WatcherSettings(debounce_seconds=5.0), clock=clock)
        handler = mock_observer.schedule.call_args[0][0]

        handler.on_created(_event(str(tmp_path / "a.mp4")))
        watcher.collect()
        clock.now += 4
        handler.on_modified(_event(str(tmp_path / "a.mp4")))
        watcher.collect()
        clock.now += 4

        assert watcher.flush_due() == []
        rescan.assert_not_called()

    def test_callback_errors_are_logged(self, tmp_path, mock_observer, caplog) -> None:
        rescan = MagicMock(side_effect=RuntimeError("scan failed"))
        clock = FakeClock()
        watcher = MediaWatcher({tmp_path: (["mp4"], rescan)}, WatcherSettings(debounce_seconds=0.0), clock=clock)
        handler = mock_observer.schedule.call_args[0][0]
        handler.on_deleted(_event(str(tmp_path / "a.mp4")))
        watcher.collect()

        with caplog.at_level(logging.ERROR):
            assert watcher.flush_due() == [tmp_path]

        assert "Rescan of" in caplog.text

    def test_start_and_stop(self, tmp_path, mock_observer) -> None:
        watcher = MediaWatcher({tmp_path: (["mp4"], MagicMock())}, WatcherSettings(debounce_seconds=0.0))

        watcher.start()
        watcher.stop()

        mock_observer.start.assert_called_once()
        mock_observer.stop.assert_called_once()
        mock_observer.join.assert_called_once()

    def test_start_without_roots_is_noop(self, tmp_path, mock_observer) -> None:
        watcher = MediaWatcher({tmp_path / "absent": (["mp4"], MagicMock())}, WatcherSettings())

        watcher.start()
        watcher.stop()

        mock_observer.start.assert_not_called()
