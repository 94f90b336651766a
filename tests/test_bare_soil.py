# tests/test_bare_soil.py
import numpy as np
import pytest

from erosion_watch.indicators.bare_soil import (
    analysis_mask,
    bare_observations,
    bare_soil_composite,
    bare_soil_frequency,
    bare_soil_mask,
    geos3,
)
from erosion_watch.raster import Band, Raster
from erosion_watch.scene import SceneCollection

from conftest import BARE_SOIL, VEGETATION


class TestGeos3:

    def test_bare_and_vegetated(self, make_scene, grid):
        refl = {k: np.full(grid.shape, v) for k, v in BARE_SOIL.items()}
        refl_veg = make_scene("2019-01-01").raster
        bare = geos3(make_scene("2019-01-01", reflectance=refl).raster)
        veg = geos3(refl_veg)
        assert bare.name == "GEOS3"
        assert bare.data.all()
        assert not veg.data.any()
        assert veg.validity().all()

    def test_zero_denominator_invalid(self, make_scene, grid):
        b8 = np.full(grid.shape, 500)
        b4 = np.full(grid.shape, 500)
        b8[0, 0] = b4[0, 0] = 0
        band = geos3(make_scene("2019-01-01", reflectance={"B8": b8, "B4": b4}).raster)
        assert not band.validity()[0, 0]
        assert not band.data[0, 0]

    def test_invalid_input_propagates(self, make_scene, grid):
        scene = make_scene("2019-01-01")
        mask = np.ones(grid.shape, dtype=bool)
        mask[3, 4] = False
        band = geos3(scene.raster.update_mask(mask, ["B11"]))
        assert not band.validity()[3, 4]


class TestBareSoilFrequency:

    @pytest.fixture
    def collections(self, make_scene, grid):
        scenes = []
        for i in range(4):
            refl = {}
            # left half bare in the first and third scenes
            if i in (0, 2):
                for k, v in BARE_SOIL.items():
                    arr = np.full(grid.shape, VEGETATION[k])
                    arr[:, :10] = v
                    refl[k] = arr
            scenes.append(make_scene(f"2019-0{i + 1}-10", reflectance=refl))
        masked = SceneCollection(scenes)
        return masked, bare_observations(masked)

    def test_frequency(self, collections, grid):
        masked, bare = collections
        bsf = bare_soil_frequency(masked, bare)["bare_soil_frequency"]
        np.testing.assert_allclose(bsf.data[:, :10], 0.5)
        np.testing.assert_allclose(bsf.data[:, 10:], 0.0)
        assert bsf.validity().all()

    def test_frequency_counts_only_valid_observations(self, collections, grid):
        masked, _ = collections
        hidden = np.ones(grid.shape, dtype=bool)
        hidden[0, 0] = False
        # the bare observation of the first scene is cloud-masked at (0, 0)
        scenes = [masked[0].with_raster(masked[0].raster.update_mask(hidden, ["B8"]))] + list(masked)[1:]
        masked = SceneCollection(scenes)
        bsf = bare_soil_frequency(masked, bare_observations(masked))["bare_soil_frequency"]
        assert bsf.data[0, 0] == pytest.approx(1.0 / 3.0)

    def test_mask_restricts_output(self, collections, grid):
        masked, bare = collections
        slope = np.zeros(grid.shape)
        slope[0, :] = 30.0
        water = np.zeros(grid.shape, dtype=bool)
        water[1, :] = True
        mask = analysis_mask(slope, water=water)
        bsf = bare_soil_frequency(masked, bare, mask)["bare_soil_frequency"]
        assert not bsf.validity()[:2].any()
        assert bsf.validity()[2:].all()

    def test_bare_soil_mask(self, grid):
        freq = np.array([0.0, 0.3, 0.95, 1.0] * 100, dtype="float32").reshape(grid.shape)
        out = bare_soil_mask(Raster(grid, [Band("bare_soil_frequency", freq)]))["bare_soil_mask"]
        np.testing.assert_array_equal(out.data[0, :4], [0, 1, 0, 0])

    def test_bare_composite(self, collections, grid):
        _, bare = collections
        comp = bare_soil_composite(bare, ["B4", "B8"])
        assert comp["B4"].validity()[:, :10].all()
        assert not comp["B4"].validity()[:, 10:].any()
        np.testing.assert_allclose(comp["B8"].data[:, :10], BARE_SOIL["B8"])

    def test_empty_bare_composite_needs_grid(self, grid):
        comp = bare_soil_composite(SceneCollection(), ["B4"], grid=grid)
        assert not comp["B4"].validity().any()
