# tests/test_scene.py
import numpy as np
import pandas as pd
import pytest

from erosion_watch.scene import SceneCollection, to_timestamp


class TestTimestamps:

    def test_naive_taken_as_utc(self):
        assert to_timestamp("2019-05-01 10:00") == pd.Timestamp("2019-05-01 10:00", tz="UTC")

    def test_aware_converted(self):
        ts = to_timestamp(pd.Timestamp("2019-05-01 12:00", tz="Europe/Madrid"))
        assert ts == pd.Timestamp("2019-05-01 10:00", tz="UTC")
        assert str(ts.tz) == "UTC"


class TestSceneCollection:

    def test_sorted_by_time(self, make_scene):
        col = SceneCollection([make_scene("2019-03-01"), make_scene("2019-01-01"), make_scene("2019-02-01")])
        assert [t.month for t in col.timestamps] == [1, 2, 3]

    def test_filter_date_half_open(self, monthly_collection):
        out = monthly_collection.filter_date("2019-03-15", "2019-05-15")
        assert [t.month for t in out.timestamps] == [3, 4]

    def test_filter_bounds(self, monthly_collection, grid):
        west, south, east, north = grid.bounds
        assert len(monthly_collection.filter_bounds((west + 50, south + 50, east + 500, north + 500))) == 12
        assert len(monthly_collection.filter_bounds((0.0, 0.0, 10.0, 10.0))) == 0

    def test_filter_metadata_keeps_unknown(self, make_scene):
        col = SceneCollection([
            make_scene("2019-01-01", metadata={"CLOUDY_PIXEL_PERCENTAGE": 10.0}),
            make_scene("2019-01-02", metadata={"CLOUDY_PIXEL_PERCENTAGE": 90.0}),
            make_scene("2019-01-03", metadata={}),
        ])
        out = col.filter_metadata("CLOUDY_PIXEL_PERCENTAGE", 60.0)
        assert [t.day for t in out.timestamps] == [1, 3]

    def test_stack_marks_invalid(self, make_scene, grid):
        scene = make_scene("2019-01-01")
        mask = np.ones(grid.shape, dtype=bool)
        mask[2, 2] = False
        col = SceneCollection([scene.with_raster(scene.raster.update_mask(mask)), make_scene("2019-01-05")])
        stack = col.stack("B8")
        assert stack.shape == (2,) + grid.shape
        assert np.isnan(stack[0, 2, 2])
        assert stack[1, 2, 2] == 3500.0

    def test_select(self, monthly_collection):
        out = monthly_collection.select(["B4", "B8"])
        assert out[0].raster.band_names == ["B4", "B8"]
        assert len(out) == 12

    def test_empty_stack(self):
        with pytest.raises(ValueError):
            SceneCollection().stack("B8")

    def test_missing_metadata_number(self, make_scene):
        scene = make_scene("2019-01-01", metadata={"A": "n/a", "B": float("nan"), "C": "12.5"})
        assert scene.number("A") is None
        assert scene.number("B") is None
        assert scene.number("C") == 12.5
        assert scene.number("D") is None
