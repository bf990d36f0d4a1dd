from __future__ import annotations

import json
import logging

import pytest

from rotawall.models import RotationItem
from rotawall.rotation.store import SNAPSHOT_VERSION, WeightStore, age_weights, reconcile


class TestAgeWeights:
    def test_newest_high_oldest_low(self) -> None:
        weights = age_weights([("old", 1000.0), ("mid", 1500.0), ("new", 2000.0)], base=100.0)

        assert weights["new"] == pytest.approx(120.0)
        assert weights["mid"] == pytest.approx(100.0)
        assert weights["old"] == pytest.approx(80.0)

    def test_single_file_gets_top_weight(self) -> None:
        assert age_weights([("only", 5.0)], base=100.0) == {"only": pytest.approx(120.0)}

    def test_identical_mtimes(self) -> None:
        weights = age_weights([("a", 7.0), ("b", 7.0)], base=50.0)
        assert weights == {"a": pytest.approx(70.0), "b": pytest.approx(70.0)}

    def test_empty(self) -> None:
        assert age_weights([]) == {}


class TestReconcile:
    def test_fresh_pool_uses_age_weights(self) -> None:
        merged, result = reconcile({}, [("a", 1.0), ("b", 2.0)])

        assert list(merged) == ["a", "b"]
        assert merged["a"].weight == pytest.approx(80.0)
        assert merged["b"].weight == pytest.approx(120.0)
        assert result.added == ["a", "b"]
        assert result.removed == []
        assert result.kept == 0

    def test_kept_items_retain_state(self) -> None:
        existing = {"a": RotationItem(key="a", weight=42.0, skip_streak=3, last_selected_at=10.0)}

        merged, result = reconcile(existing, [("a", 1.0)])

        assert merged["a"] == existing["a"]
        assert merged["a"] is not existing["a"]
        assert result.kept == 1
        assert not result.changed

    def test_vanished_items_are_dropped(self) -> None:
        existing = {
            "a": RotationItem(key="a", weight=100.0),
            "gone": RotationItem(key="gone", weight=100.0),
        }

        merged, result = reconcile(existing, [("a", 1.0)])

        assert "gone" not in merged
        assert result.removed == ["gone"]

    def test_newcomers_average_with_pool_mean(self) -> None:
        existing = {
            "a": RotationItem(key="a", weight=60.0),
            "b": RotationItem(key="b", weight=80.0),
        }

        # "new" is the newest file so its age weight is 120; pool mean is 70
        merged, result = reconcile(existing, [("a", 1.0), ("b", 2.0), ("new", 3.0)])

        assert merged["new"].weight == pytest.approx(95.0)
        assert merged["new"].skip_streak == 0
        assert merged["new"].last_selected_at is None
        assert result.added == ["new"]

    def test_mean_ignores_removed_items(self) -> None:
        existing = {
            "a": RotationItem(key="a", weight=100.0),
            "gone": RotationItem(key="gone", weight=1000.0),
        }

        merged, _ = reconcile(existing, [("a", 5.0), ("new", 5.0)])

        assert merged["new"].weight == pytest.approx((120.0 + 100.0) / 2)

    def test_duplicate_scan_entries(self) -> None:
        merged, result = reconcile({}, [("a", 1.0), ("a", 1.0)])
        assert list(merged) == ["a"]
        assert result.added == ["a"]

    def test_does_not_mutate_input(self) -> None:
        existing = {"a": RotationItem(key="a", weight=100.0)}
        merged, _ = reconcile(existing, [("a", 1.0)])
        merged["a"].weight = 1.0
        assert existing["a"].weight == 100.0


class TestWeightStore:
    def test_save_and_load(self, tmp_path) -> None:
        path = tmp_path / "state" / "video.json"
        store = WeightStore(path)
        store.replace_items(
            {
                "/v/a.mp4": RotationItem(key="/v/a.mp4", weight=91.5, skip_streak=2, last_selected_at=1700.0),
                "/v/b.mp4": RotationItem(key="/v/b.mp4", weight=108.5),
            }
        )
        store.generation = 17
        store.save()

        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["version"] == SNAPSHOT_VERSION
        assert payload["generation"] == 17

        restored = WeightStore(path)
        assert restored.load() is True
        assert restored.generation == 17
        assert restored.keys() == ["/v/a.mp4", "/v/b.mp4"]
        assert restored.get("/v/a.mp4") == RotationItem(
            key="/v/a.mp4", weight=91.5, skip_streak=2, last_selected_at=1700.0
        )

    def test_missing_snapshot(self, tmp_path) -> None:
        store = WeightStore(tmp_path / "absent.json")
        assert store.load() is False
        assert len(store) == 0

    def test_corrupt_snapshot_is_ignored(self, tmp_path, caplog) -> None:
        path = tmp_path / "video.json"
        path.write_text("{not json", encoding="utf-8")
        store = WeightStore(path)

        with caplog.at_level(logging.WARNING):
            assert store.load() is False

        assert len(store) == 0
        assert "Failed to load weight snapshot" in caplog.text

    def test_flat_mapping_is_accepted(self, tmp_path) -> None:
        path = tmp_path / "video.json"
        path.write_text(json.dumps({"/v/a.mp4": {"weight": 99.0, "skip_streak": 1}}), encoding="utf-8")
        store = WeightStore(path)

        assert store.load() is True
        assert store.generation == 0
        assert store.get("/v/a.mp4").weight == 99.0

    def test_malformed_records_are_skipped(self, tmp_path, caplog) -> None:
        path = tmp_path / "video.json"
        path.write_text(
            json.dumps(
                {
                    "version": 1,
                    "generation": 3,
                    "items": {
                        "/v/good.mp4": {"weight": 100.0},
                        "/v/no-weight.mp4": {"skip_streak": 2},
                        "/v/text.mp4": {"weight": "heavy"},
                        "/v/negative.mp4": {"weight": 1.0, "skip_streak": -1},
                    },
                }
            ),
            encoding="utf-8",
        )
        store = WeightStore(path)

        with caplog.at_level(logging.WARNING):
            assert store.load() is True

        assert store.keys() == ["/v/good.mp4"]
        assert "Dropped 3 malformed record(s)" in caplog.text

    def test_save_raises_when_unwritable(self, tmp_path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        store = WeightStore(blocker / "video.json")

        with pytest.raises(OSError):
            store.save()
