# tests/test_composites.py
import numpy as np
import pandas as pd
import pytest

from erosion_watch.composites import (
    TimeInterval,
    TimeIntervalSet,
    aggregate_stack,
    extract_time_ranges,
    geometric_median,
    harmonized_series,
    reduce_stack,
)
from erosion_watch.errors import DomainError
from erosion_watch.scene import Scene, SceneCollection


def ts(s):
    return pd.Timestamp(s, tz="UTC")


class TestExtractTimeRanges:
    """Intervals are contiguous and cover the whole span."""

    def test_bimonthly_calendar_year(self):
        intervals = extract_time_ranges("2019-01-01", "2020-01-01", 60)
        starts = [str(i.start.date()) for i in intervals]
        assert starts == ["2019-01-01", "2019-03-01", "2019-05-01", "2019-07-01", "2019-09-01", "2019-11-01"]
        assert intervals.start == ts("2019-01-01")
        assert intervals.end == ts("2020-01-01")

    def test_monthly_intervals_follow_months(self):
        intervals = extract_time_ranges("2019-01-01", "2019-04-01", 30)
        assert [(str(i.start.date()), str(i.end.date())) for i in intervals] == [
            ("2019-01-01", "2019-02-01"), ("2019-02-01", "2019-03-01"), ("2019-03-01", "2019-04-01")]
        assert intervals[1].days == 28

    def test_contiguous(self):
        intervals = extract_time_ranges("2018-03-10", "2020-07-22", 16)
        for prev, nxt in zip(intervals, list(intervals)[1:]):
            assert prev.end == nxt.start
        assert intervals.end == ts("2020-07-22")

    def test_count_rounds_half_up(self):
        # 365 / 10 = 36.5 intervals of a third of a month each
        intervals = extract_time_ranges("2019-01-01", "2020-01-01", 10)
        assert len(intervals) == 37
        assert intervals[36].start == ts("2020-01-01")
        assert intervals[1].start == ts("2019-01-11 08:00")

    def test_overshooting_intervals_kept(self):
        # three intervals of two months each run past the end
        intervals = extract_time_ranges("2019-01-01", "2019-04-04", 31)
        assert [str(i.start.date()) for i in intervals] == ["2019-01-01", "2019-03-01", "2019-05-01"]
        assert intervals.end == ts("2019-07-01")

    def test_short_span_gives_one_interval(self):
        intervals = extract_time_ranges("2019-01-01", "2019-01-10", 60)
        assert len(intervals) == 1
        assert intervals[0].end == ts("2019-02-01")

    def test_short_steps_extended_to_end(self):
        intervals = extract_time_ranges("2019-01-01", "2019-01-25", 10)
        assert len(intervals) == 2
        assert intervals[1].start == ts("2019-01-11 08:00")
        assert intervals.end == ts("2019-01-25")

    @pytest.mark.parametrize("start,end,days", [
        ("2019-01-01", "2019-01-01", 30),
        ("2019-02-01", "2019-01-01", 30),
        ("2019-01-01", "2020-01-01", 0),
    ])
    def test_bad_arguments(self, start, end, days):
        with pytest.raises(DomainError):
            extract_time_ranges(start, end, days)

    def test_interval_is_half_open(self):
        iv = TimeInterval(ts("2019-01-01"), ts("2019-02-01"))
        assert "2019-01-01" in iv
        assert "2019-02-01" not in iv
        assert iv.midpoint == ts("2019-01-16 12:00")

    def test_gaps_rejected(self):
        with pytest.raises(DomainError):
            TimeIntervalSet([TimeInterval(ts("2019-01-01"), ts("2019-02-01")),
                             TimeInterval(ts("2019-02-02"), ts("2019-03-01"))])


class TestReducers:

    @pytest.fixture
    def scenes(self, make_raster, grid):
        valid = np.ones(grid.shape, dtype=bool)
        valid[0, 0] = False
        values = [(1.0, 30.0), (2.0, 10.0), (10.0, 20.0)]
        out = []
        for i, (a, b) in enumerate(values):
            raster = make_raster({"a": a, "b": b}, valid=valid if i == 2 else None)
            out.append(Scene(raster, f"2019-01-0{i + 1}"))
        return out

    @pytest.mark.parametrize("reducer,expected", [
        ("median", 2.0), ("mean", 13.0 / 3.0), ("sum", 13.0), ("count", 3),
    ])
    def test_simple_reducers(self, scenes, reducer, expected):
        out = reduce_stack(scenes, ["a", "b"], reducer)
        assert out["a"].data[5, 5] == pytest.approx(expected, rel=1e-6)

    def test_invalid_samples_skipped(self, scenes):
        out = reduce_stack(scenes, ["a"], "mean")
        assert out["a"].data[0, 0] == pytest.approx(1.5)
        assert reduce_stack(scenes, ["a"], "count")["a"].data[0, 0] == 2

    def test_count_dtype(self, scenes):
        out = reduce_stack(scenes, ["a"], "count")
        assert out["a"].dtype == np.int32
        assert out["a"].validity().all()

    def test_max_band_keeps_sample_together(self, scenes):
        out = reduce_stack(scenes, ["a", "b"], "max_band", band_name="b")
        assert out["b"].data[5, 5] == 30.0
        assert out["a"].data[5, 5] == 1.0

    def test_max_band_needs_ranking_band(self, scenes):
        with pytest.raises(DomainError):
            reduce_stack(scenes, ["a"], "max_band", band_name="b")

    def test_geomedian(self, scenes):
        out = reduce_stack(scenes, ["a"], "geomedian")
        assert out["a"].data[5, 5] == pytest.approx(2.0, abs=0.05)

    def test_geomedian_of_identical_samples(self):
        stack = np.tile(np.array([3.0, 7.0]).reshape(1, 2, 1, 1), (4, 1, 2, 2))
        np.testing.assert_allclose(geometric_median(stack), stack[0])

    def test_geomedian_all_missing_is_nan(self):
        stack = np.full((3, 2, 1, 1), np.nan)
        assert np.isnan(geometric_median(stack)).all()

    def test_unknown_reducer(self, scenes):
        with pytest.raises(DomainError):
            reduce_stack(scenes, ["a"], "mode")

    def test_empty_needs_grid(self, grid):
        with pytest.raises(ValueError):
            reduce_stack([], ["a"])
        assert not reduce_stack([], ["a"], grid=grid)["a"].validity().any()


class TestHarmonizedSeries:

    def test_monthly_series(self, monthly_collection):
        intervals = extract_time_ranges("2019-01-01", "2020-01-01", 30)
        series = harmonized_series(monthly_collection, ["B4", "B8"], intervals)
        assert len(series) == 12
        assert series.intervals is intervals
        assert series[0].timestamp == intervals[0].midpoint
        assert series[0].metadata["scene_count"] == 1
        assert series[3].raster["B8"].data[0, 0] == 3500

    def test_empty_interval_fully_masked(self, make_scene, grid):
        col = SceneCollection([make_scene("2019-01-15"), make_scene("2019-03-15")])
        intervals = extract_time_ranges("2019-01-01", "2019-04-01", 30)
        series = harmonized_series(col, ["B8"], intervals)
        assert len(series) == 3
        assert not series[1].raster["B8"].validity().any()
        assert series[1].metadata["scene_count"] == 0
        assert series[1].grid == grid

    def test_aggregate_uses_interval_scenes_only(self, make_scene):
        col = SceneCollection([make_scene("2019-01-15", reflectance={"B8": 1000}),
                               make_scene("2019-02-15", reflectance={"B8": 3000})])
        iv = TimeInterval(ts("2019-01-01"), ts("2019-02-01"))
        comp = aggregate_stack(col, ["B8"], iv)
        assert comp.raster["B8"].data[0, 0] == 1000
        assert comp.metadata["interval_end"] == ts("2019-02-01")
