"""EXR tiling and file round trips."""

import numpy as np
import pytest

from skyscatter.errors import LUTFormatError
from skyscatter.utils.exr import tile_3d, untile_3d


def test_tile_places_depth_slices_side_by_side():
    data = np.arange(2 * 3 * 4 * 4, dtype=np.float32).reshape(2, 3, 4, 4)
    tiled = tile_3d(data)

    assert tiled.shape == (3, 8, 4)
    np.testing.assert_array_equal(tiled[:, :4], data[0])
    np.testing.assert_array_equal(tiled[:, 4:], data[1])
    np.testing.assert_array_equal(untile_3d(tiled, 2), data)


def test_untile_rejects_bad_depth():
    with pytest.raises(ValueError):
        untile_3d(np.zeros((3, 8, 4)), 3)


def test_exr_round_trip(tmp_path):
    pytest.importorskip("OpenEXR")
    from skyscatter.utils.exr import read_lut_exr, write_lut_exr

    rng = np.random.default_rng(1)
    image = rng.random((4, 16, 3)).astype(np.float32)
    volume = rng.random((2, 4, 8, 4)).astype(np.float32)

    write_lut_exr(str(tmp_path / "image.exr"), image)
    write_lut_exr(str(tmp_path / "volume.exr"), volume)

    np.testing.assert_array_equal(read_lut_exr(str(tmp_path / "image.exr")), image)
    np.testing.assert_array_equal(read_lut_exr(str(tmp_path / "volume.exr"), depth=2), volume)
    with pytest.raises(LUTFormatError):
        read_lut_exr(str(tmp_path / "volume.exr"), depth=3)


def test_model_exr_round_trip(precomputed_model, tmp_path):
    pytest.importorskip("OpenEXR")
    from skyscatter.core.model import AtmosphereModel

    directory = str(tmp_path / "exr")
    precomputed_model.save_textures_exr(directory)

    model = AtmosphereModel(precomputed_model.params, precomputed_model.options)
    model.load_textures_exr(directory)
    for name, lut in precomputed_model.textures.as_dict().items():
        np.testing.assert_array_equal(model.textures.as_dict()[name], lut)


def test_missing_openexr_is_reported(monkeypatch):
    from skyscatter.utils import exr

    monkeypatch.setattr(exr, "HAS_OPENEXR", False)
    with pytest.raises(RuntimeError, match="OpenEXR"):
        exr.write_lut_exr("unused.exr", np.zeros((2, 2, 3)))
