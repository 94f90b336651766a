# tests/test_terrain.py
import numpy as np
import pytest

from erosion_watch.errors import DomainError
from erosion_watch.indicators.terrain import (
    contributing_area_from_upa,
    factor_ls,
    ls_factor,
    slope_aspect,
    slope_direction,
)
from erosion_watch.raster import Band, Raster

SQRT2 = np.sqrt(2.0)


class TestSlopeDirection:
    """Cardinal octants give 1, diagonal octants sqrt(2)."""

    @pytest.mark.parametrize("aspect,expected", [
        (0.0, 1.0), (10.0, 1.0), (22.5, 1.0), (30.0, SQRT2), (45.0, SQRT2), (67.5, SQRT2),
        (90.0, 1.0), (135.0, SQRT2), (180.0, 1.0), (225.0, SQRT2), (270.0, 1.0),
        (315.0, SQRT2), (337.5, SQRT2), (350.0, 1.0), (360.0, 1.0),
    ])
    def test_octants(self, aspect, expected):
        assert slope_direction(np.array([aspect]))[0] == pytest.approx(expected)

    def test_undefined_aspect_is_cardinal(self):
        np.testing.assert_array_equal(slope_direction(np.array([-1.0, np.nan, 400.0])), [1.0, 1.0, 1.0])


class TestLSFactor:

    def test_flat_terrain(self):
        area = np.array([0.0, 10.0, 900.0, 4000.0, 1e6])
        ls = ls_factor(area, np.zeros_like(area), np.full(area.shape, 45.0), 10.0)
        np.testing.assert_allclose(ls, 0.03)

    def test_steep_pixel_matches_equations(self):
        s = np.deg2rad(20.0)
        beta = abs(np.sin(s) / (0.0896 * 3 * (np.sin(s) ** 0.8 + 0.56)))
        m = beta / (beta + 1)
        length = (2 * 500.0 / (2 * 30.0 * 1.0 * 22.13)) ** m * (m + 1)
        steep = 16.8 * np.sin(s) - 0.5
        ls = ls_factor(np.array([500.0]), np.array([s]), np.array([90.0]), 30.0)
        assert ls[0] == pytest.approx(length * steep)

    def test_mild_branch_below_nine_percent(self):
        s = np.arctan(0.05)
        ls = ls_factor(np.array([0.0]), np.array([s]), np.array([0.0]), 30.0)
        # zero area: L = 0 ** m * (m + 1) = 0
        assert ls[0] == pytest.approx(0.0)
        ls = ls_factor(np.array([100.0]), np.array([s]), np.array([0.0]), 30.0)
        assert ls[0] > 0

    def test_contributing_area_clamped(self):
        s = np.full(2, np.deg2rad(10.0))
        ls = ls_factor(np.array([4000.0, 50000.0]), s, np.zeros(2), 30.0)
        assert ls[0] == pytest.approx(ls[1])

    def test_diagonal_flow_shortens_length(self):
        s = np.full(2, np.deg2rad(10.0))
        ls = ls_factor(np.full(2, 1000.0), s, np.array([0.0, 45.0]), 30.0)
        assert ls[1] < ls[0]

    def test_bad_cell_size(self):
        with pytest.raises(DomainError):
            ls_factor(np.ones(1), np.zeros(1), np.zeros(1), 0.0)

    def test_factor_ls_raster(self, make_raster):
        terrain = make_raster({"slope_deg": 0.0, "aspect": 90.0, "contrib_area": 500.0})
        out = factor_ls(terrain)
        assert out.band_names == ["LS"]
        np.testing.assert_allclose(out["LS"].data, 0.03, rtol=1e-6)

    def test_factor_ls_requires_slope(self, make_raster):
        with pytest.raises(DomainError):
            factor_ls(make_raster({"aspect": 90.0, "contrib_area": 500.0}))


class TestTerrainPreparation:

    def test_east_facing_plane(self, grid):
        cols = np.arange(grid.width) * 10.0
        dem = np.tile(-0.1 * cols, (grid.height, 1))  # falls towards the east
        terrain = slope_aspect(Raster(grid, [Band("elevation", dem)]))
        inner = (slice(1, -1), slice(1, -1))
        np.testing.assert_allclose(terrain["slope_rad"].data[inner], np.arctan(0.1), rtol=1e-5)
        np.testing.assert_allclose(terrain["aspect"].data[inner], 90.0, atol=1e-4)

    def test_south_facing_plane(self, grid):
        rows = np.arange(grid.height) * 10.0
        dem = np.tile(-0.2 * rows[:, None], (1, grid.width))  # falls towards the south
        terrain = slope_aspect(Raster(grid, [Band("elevation", dem)]))
        inner = (slice(1, -1), slice(1, -1))
        np.testing.assert_allclose(terrain["slope_deg"].data[inner], np.degrees(np.arctan(0.2)), rtol=1e-5)
        np.testing.assert_allclose(terrain["aspect"].data[inner], 180.0, atol=1e-4)

    def test_flat_dem_has_undefined_aspect(self, grid):
        terrain = slope_aspect(Raster(grid, [Band("elevation", np.full(grid.shape, 100.0))]))
        assert np.all(terrain["slope_deg"].data == 0)
        assert np.all(terrain["aspect"].data == -1)

    def test_invalid_neighbourhood_propagates(self, grid):
        valid = np.ones(grid.shape, dtype=bool)
        valid[5, 5] = False
        terrain = slope_aspect(Raster(grid, [Band("elevation", np.zeros(grid.shape), valid)]))
        v = terrain["slope_deg"].validity()
        assert not v[4:7, 4:7].any()
        assert v[0, 0] and v[8, 8]

    def test_upa_conversion(self):
        np.testing.assert_allclose(contributing_area_from_upa(np.array([0.009, 0.0])), [1000.0, 0.0])
        np.testing.assert_allclose(contributing_area_from_upa(np.array([0.009]), redistribution=1.0), [9000.0])

    def test_flat_dem_end_to_end(self, grid):
        terrain = slope_aspect(Raster(grid, [Band("elevation", np.full(grid.shape, 100.0))]))
        rng = np.random.default_rng(3)
        terrain = terrain.with_band("contrib_area", rng.uniform(0.0, 1e5, grid.shape))
        np.testing.assert_allclose(factor_ls(terrain)["LS"].data, 0.03, rtol=1e-6)
