"""LUT serialization tests (raw binary and .npz)."""

import os

import numpy as np
import pytest

from skyscatter.core.model import AtmosphereModel, PrecomputeState, expected_lut_shapes
from skyscatter.core.parameters import AtmosphereParameters
from skyscatter.errors import LUTFormatError, PrecomputeInProgressError
from skyscatter.utils.io import (
    check_lut_shapes,
    load_lut_binary,
    load_luts_npz,
    save_lut_binary,
    save_luts_npz,
)

from conftest import make_small_options


def test_binary_round_trip_is_exact(tmp_path):
    data = np.random.default_rng(0).random((3, 4, 5, 4)).astype(np.float32)
    path = str(tmp_path / "lut.bin")
    save_lut_binary(path, data)

    # int32 rank + shape header, then float32 payload
    assert os.path.getsize(path) == 4 * (1 + 4) + data.nbytes
    loaded = load_lut_binary(path, expected_shape=(3, 4, 5, 4))
    np.testing.assert_array_equal(loaded, data)
    assert loaded.dtype == np.float32


def test_binary_shape_mismatch(tmp_path):
    path = str(tmp_path / "lut.bin")
    save_lut_binary(path, np.zeros((4, 8, 3)))
    with pytest.raises(LUTFormatError, match="expected shape"):
        load_lut_binary(path, expected_shape=(8, 4, 3))


def test_binary_truncated_file(tmp_path):
    path = str(tmp_path / "lut.bin")
    save_lut_binary(path, np.ones((4, 8, 3)))
    with open(path, 'rb') as f:
        raw = f.read()
    with open(path, 'wb') as f:
        f.write(raw[:-10])

    with pytest.raises(LUTFormatError):
        load_lut_binary(path)

    with open(path, 'wb') as f:
        f.write(b'\x01')
    with pytest.raises(LUTFormatError):
        load_lut_binary(path)


def test_binary_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_lut_binary(str(tmp_path / "missing.bin"))


def test_npz_round_trip(tmp_path):
    luts = {"transmittance": np.full((8, 32, 3), 0.5, dtype=np.float32)}
    flags = {
        "transmittance_precision_log": True,
        "combined_scattering_textures": False,
        "higher_order_scattering_texture": True,
    }
    path = str(tmp_path / "luts.npz")
    save_luts_npz(path, luts, (32, 8, 16, 4, 4, 8, 8, 4), flags)

    loaded, sizes, loaded_flags = load_luts_npz(path)
    np.testing.assert_array_equal(loaded["transmittance"], luts["transmittance"])
    assert sizes == (32, 8, 16, 4, 4, 8, 8, 4)
    assert loaded_flags == flags


def test_npz_without_options_is_rejected(tmp_path):
    path = str(tmp_path / "bare.npz")
    np.savez(path, transmittance=np.zeros((2, 2, 3)))
    with pytest.raises(LUTFormatError):
        load_luts_npz(path)


def test_check_lut_shapes():
    expected = [("irradiance", (4, 16, 3))]
    luts = {"irradiance": np.zeros((4, 16, 3)), "stale": np.zeros(1)}
    assert list(check_lut_shapes("memory", luts, expected)) == ["irradiance"]

    with pytest.raises(LUTFormatError, match="missing"):
        check_lut_shapes("memory", {}, expected)
    with pytest.raises(LUTFormatError, match="shape"):
        check_lut_shapes("memory", {"irradiance": np.zeros((16, 4, 3))}, expected)


def _fresh_model(options=None):
    return AtmosphereModel(AtmosphereParameters.earth_default(), options or make_small_options())


def test_model_binary_round_trip(precomputed_model, tmp_path):
    directory = str(tmp_path / "luts")
    precomputed_model.save_textures(directory)

    written = sorted(os.listdir(directory))
    assert written == sorted(name + ".bin" for name, _ in expected_lut_shapes(precomputed_model.options))

    model = _fresh_model()
    model.load_textures(directory)
    assert model.is_initialized
    assert model.version == 1
    assert model.state is PrecomputeState.COMPLETE
    for name, lut in precomputed_model.textures.as_dict().items():
        np.testing.assert_array_equal(model.textures.as_dict()[name], lut)


def test_model_binary_load_with_wrong_layout(precomputed_model, tmp_path):
    directory = str(tmp_path / "luts")
    precomputed_model.save_textures(directory)

    model = _fresh_model()
    with pytest.raises(LUTFormatError):
        model.load_textures(directory, options=make_small_options(scattering_size=(4, 8, 8, 2)))
    with pytest.raises(FileNotFoundError):
        model.load_textures(directory, options=make_small_options(combined_scattering_textures=False))
    assert not model.is_initialized


def test_model_npz_round_trip(precomputed_model, tmp_path):
    path = str(tmp_path / "atmosphere_luts.npz")
    precomputed_model.save_textures_npz(path)

    # The archive carries its own layout, so the loading model's options do not matter
    model = AtmosphereModel()
    model.load_textures_npz(path)
    assert model.options.flat_sizes() == precomputed_model.options.flat_sizes()
    np.testing.assert_array_equal(model.textures.scattering, precomputed_model.textures.scattering)

    radiance, _ = model.get_sky_radiance([0.0, 0.0, 6361000.0], [0.0, 0.0, 1.0], 0.0, [0.0, 0.0, 1.0])
    expected, _ = precomputed_model.get_sky_radiance(
        [0.0, 0.0, 6361000.0], [0.0, 0.0, 1.0], 0.0, [0.0, 0.0, 1.0]
    )
    np.testing.assert_allclose(radiance, expected)


def test_load_while_running_raises(precomputed_model, tmp_path):
    path = str(tmp_path / "atmosphere_luts.npz")
    precomputed_model.save_textures_npz(path)

    model = _fresh_model()
    task = model.update(num_scattering_orders=1)
    with pytest.raises(PrecomputeInProgressError):
        model.load_textures_npz(path)
    task.cancel()
