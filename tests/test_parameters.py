"""Parameter, profile and option validation tests."""

import dataclasses
import math

import numpy as np
import pytest

from skyscatter.core.constants import (
    TRANSMITTANCE_TEXTURE_WIDTH,
    TRANSMITTANCE_TEXTURE_HEIGHT,
    SCATTERING_TEXTURE_R_SIZE,
    EARTH_RADIUS,
    LUMINANCE_COEFFICIENTS,
    SUN_RADIANCE_TO_LUMINANCE,
)
from skyscatter.core.parameters import (
    AtmosphereParameters,
    DensityProfile,
    DensityProfileLayer,
    PrecomputeOptions,
)
from skyscatter.errors import AtmosphereConfigError


def test_constants():
    assert TRANSMITTANCE_TEXTURE_WIDTH == 256
    assert TRANSMITTANCE_TEXTURE_HEIGHT == 64
    assert SCATTERING_TEXTURE_R_SIZE == 32
    assert EARTH_RADIUS == 6360000.0


def test_density_profile_layer():
    # Exponential layer (Rayleigh-like), 8 km scale height
    layer = DensityProfileLayer(exp_term=1.0, exp_scale=-1.0 / 8000.0)

    assert abs(layer.get_density(0.0) - 1.0) < 1e-6
    assert abs(layer.get_density(8000.0) - np.exp(-1)) < 1e-6
    assert layer.get_density(100000.0) < 0.001


def test_density_is_clamped_to_unit_range():
    layer = DensityProfileLayer(linear_term=1.0, constant_term=-0.5)
    densities = layer.get_density(np.array([-10.0, 0.75, 10.0]))
    np.testing.assert_allclose(densities, [0.0, 0.25, 1.0])


def test_ozone_profile_is_a_tent():
    profile = DensityProfile.ozone(center_altitude=25000.0, width=15000.0)
    altitudes = np.array([0.0, 10000.0, 17500.0, 25000.0, 32500.0, 40000.0, 60000.0])
    np.testing.assert_allclose(
        profile.get_density(altitudes), [0.0, 0.0, 0.5, 1.0, 0.5, 0.0, 0.0], atol=1e-12
    )


def test_density_profile_requires_two_layers():
    with pytest.raises(AtmosphereConfigError):
        DensityProfile((DensityProfileLayer(),))


def test_atmosphere_parameters():
    params = AtmosphereParameters.earth_default()

    assert params.bottom_radius == 6360000.0
    assert params.top_radius == 6360000.0 + 60000.0
    assert params.mie_phase_function_g == 0.8
    assert len(params.rayleigh_scattering) == 3
    assert params.get_atmosphere_height() == 60000.0

    params2 = AtmosphereParameters.from_artistic_controls(
        rayleigh_density_scale=2.0,
        mie_density_scale=0.5,
        mie_phase_g=0.9,
    )
    assert params2.mie_phase_function_g == 0.9
    np.testing.assert_allclose(params2.rayleigh_scattering, params.rayleigh_scattering * 2.0)
    np.testing.assert_allclose(params2.mie_scattering, params.mie_scattering * 0.5)


def test_earth_default_without_ozone():
    params = AtmosphereParameters.earth_default(use_ozone=False)
    assert np.all(params.absorption_extinction == 0.0)


def test_default_luminance_scale_normalizes_sun_luminance():
    params = AtmosphereParameters()
    expected = 1.0 / np.dot(LUMINANCE_COEFFICIENTS, SUN_RADIANCE_TO_LUMINANCE)
    assert params.luminance_scale == pytest.approx(expected)


@pytest.mark.parametrize("overrides", [
    {"bottom_radius": 6420000.0, "top_radius": 6360000.0},
    {"mie_phase_function_g": 1.0},
    {"mie_phase_function_g": -1.0},
    {"rayleigh_scattering": [-1e-6, 1e-5, 3e-5]},
    {"ground_albedo": [0.1, 0.1]},
    {"solar_irradiance": [1.0, float("nan"), 1.0]},
    {"max_sun_zenith_angle": 0.0},
    {"length_unit_in_meters": 0.0},
])
def test_invalid_parameters_raise(overrides):
    with pytest.raises(AtmosphereConfigError) as exc_info:
        AtmosphereParameters(**overrides)
    # Configuration errors are also ValueErrors
    assert isinstance(exc_info.value, ValueError)


def test_uniforms_are_scaled_to_length_unit():
    params = AtmosphereParameters.earth_default()
    uniforms = params.uniforms()

    assert uniforms.bottom_radius == pytest.approx(6360.0)
    assert uniforms.top_radius == pytest.approx(6420.0)
    np.testing.assert_allclose(uniforms.rayleigh_scattering, params.rayleigh_scattering * 1000.0)
    assert uniforms.rayleigh_density.layers[1].exp_scale == pytest.approx(-1.0 / 8.0)
    assert uniforms.absorption_density.layers[0].width == pytest.approx(25.0)
    assert uniforms.min_cos_sun == pytest.approx(math.cos(math.radians(102.0)))
    assert uniforms.horizon_distance == pytest.approx(math.sqrt(6420.0 ** 2 - 6360.0 ** 2))


def test_uniforms_are_read_only():
    uniforms = AtmosphereParameters.earth_default().uniforms()
    with pytest.raises(dataclasses.FrozenInstanceError):
        uniforms.bottom_radius = 1.0


def test_precompute_options_shapes():
    options = PrecomputeOptions()

    assert options.transmittance_shape == (64, 256)
    assert options.irradiance_shape == (16, 64)
    assert options.scattering_shape == (32, 128, 8 * 32)
    assert options.transmittance_precision_log is False
    assert options.combined_scattering_textures is True
    assert options.higher_order_scattering_texture is True


def test_precompute_options_from_sizes():
    options = PrecomputeOptions.from_sizes(
        (32, 8, 16, 4, 4, 8, 8, 4), combined_scattering_textures=False
    )
    assert options.flat_sizes() == (32, 8, 16, 4, 4, 8, 8, 4)
    assert options.scattering_shape == (4, 8, 32)
    assert options.combined_scattering_textures is False


@pytest.mark.parametrize("sizes", [
    {"scattering_size": (4, 7, 8, 4)},
    {"scattering_size": (4, 8, 8, 1)},
    {"transmittance_size": (1, 8)},
    {"irradiance_size": (16, 4, 2)},
])
def test_invalid_options_raise(sizes):
    with pytest.raises(AtmosphereConfigError):
        PrecomputeOptions(**sizes)
