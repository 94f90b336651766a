# tests/test_fcover.py
import numpy as np
import pytest

from erosion_watch import constants as C
from erosion_watch.errors import DomainError
from erosion_watch.indicators.fcover import (
    add_fcover,
    fcover_collection,
    fcover_network,
    mean_incidence_angles,
    tansig,
)
from erosion_watch.scene import Scene, SceneCollection

from conftest import BARE_SOIL, VEGETATION, default_metadata


def float_scene(make_raster, values, metadata=None):
    refl = {b: v / 10000.0 for b, v in values.items()}
    return Scene(make_raster(refl), "2019-06-01", default_metadata() if metadata is None else metadata)


class TestNetwork:

    def test_tansig_matches_tanh(self):
        x = np.linspace(-3, 3, 13)
        np.testing.assert_allclose(tansig(x), np.tanh(x), atol=1e-12)

    def test_deterministic_and_elementwise(self):
        refl = np.array([VEGETATION[b] / 10000.0 for b in C.FCOVER_BANDS])
        single = fcover_network(refl.reshape(8, 1), 8.0, 35.0, 40.0)
        grid = fcover_network(np.repeat(refl.reshape(8, 1, 1), 4, axis=2).repeat(3, axis=1), 8.0, 35.0, 40.0)
        assert grid.shape == (3, 4)
        np.testing.assert_allclose(grid, single[0])
        np.testing.assert_array_equal(fcover_network(refl.reshape(8, 1), 8.0, 35.0, 40.0), single)

    def test_vegetation_covers_more_than_bare_soil(self):
        veg = np.array([VEGETATION[b] / 10000.0 for b in C.FCOVER_BANDS]).reshape(8, 1)
        bare = np.array([BARE_SOIL[b] / 10000.0 for b in C.FCOVER_BANDS]).reshape(8, 1)
        assert fcover_network(veg, 8.0, 35.0, 40.0)[0] > fcover_network(bare, 8.0, 35.0, 40.0)[0]


class TestAddFcover:

    def test_band_added_with_b4_dtype(self, make_scene):
        out = add_fcover(make_scene("2019-06-01"))
        band = out.raster["fcover"]
        assert band.dtype == np.uint16
        assert band.validity().all()
        # integer output is rounded scaled FCover
        assert 0 < band.data[0, 0] <= 10000

    def test_float_input_keeps_float(self, make_raster):
        out = add_fcover(float_scene(make_raster, VEGETATION), sr_band_scale=1.0)
        band = out.raster["fcover"]
        assert np.issubdtype(band.dtype, np.floating)
        assert 0.0 < band.data[0, 0] < 1.2

    def test_invalid_pixels_propagate(self, make_scene, grid):
        mask = np.ones(grid.shape, dtype=bool)
        mask[4, 4] = False
        scene = make_scene("2019-06-01")
        scene = scene.with_raster(scene.raster.update_mask(mask, ["B6"]))
        assert not add_fcover(scene).raster["fcover"].validity()[4, 4]

    def test_missing_solar_angles_rejected(self, make_scene):
        meta = default_metadata()
        del meta["MEAN_SOLAR_ZENITH_ANGLE"]
        with pytest.raises(DomainError):
            add_fcover(make_scene("2019-06-01", metadata=meta))

    def test_negative_reflectance_rejected(self, make_raster):
        values = dict(VEGETATION)
        values["B5"] = -50
        with pytest.raises(DomainError):
            add_fcover(float_scene(make_raster, values), sr_band_scale=1.0)

    def test_missing_band_rejected(self, make_raster):
        values = dict(VEGETATION)
        del values["B8A"]
        with pytest.raises(DomainError):
            add_fcover(float_scene(make_raster, values), sr_band_scale=1.0)

    def test_default_incidence_angles(self, make_scene):
        meta = {"MEAN_SOLAR_AZIMUTH_ANGLE": 140.0, "MEAN_SOLAR_ZENITH_ANGLE": 35.0}
        scene = make_scene("2019-06-01", metadata=meta)
        assert mean_incidence_angles(scene) == (C.DEFAULT_INCIDENCE_AZIMUTH_DEG, C.DEFAULT_INCIDENCE_ZENITH_DEG)
        assert add_fcover(scene).raster["fcover"].validity().all()

    def test_collection(self, monthly_collection):
        out = fcover_collection(monthly_collection)
        assert len(out) == 12
        assert all("fcover" in s.raster for s in out)
        assert isinstance(out, SceneCollection)
