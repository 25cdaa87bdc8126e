"""Sky radiance, aerial perspective, irradiance and luminance query tests."""

import dataclasses
import math

import numpy as np
import pytest

from skyscatter.core import runtime
from skyscatter.core.constants import LUMINANCE_COEFFICIENTS

GROUND = 6360000.0
UP = np.array([0.0, 0.0, 1.0])
DOWN = np.array([0.0, 0.0, -1.0])
CAMERA = np.array([0.0, 0.0, GROUND + 1000.0])


def _normalize(v):
    v = np.asarray(v, dtype=np.float64)
    return v / np.linalg.norm(v, axis=-1, keepdims=True)


def test_sky_radiance_looking_up(precomputed_model):
    sun = _normalize([1.0, 0.0, 1.0])
    radiance, transmittance = precomputed_model.get_sky_radiance(CAMERA, UP, 0.0, sun)

    assert radiance.shape == (3,)
    assert np.all(radiance > 0.0)
    assert np.all((transmittance > 0.0) & (transmittance < 1.0))
    # Rayleigh makes the zenith blue
    assert radiance[2] > radiance[0]


def test_sky_radiance_ray_missing_atmosphere(precomputed_model):
    camera = np.array([0.0, 0.0, 1e8])
    radiance, transmittance = precomputed_model.get_sky_radiance(
        camera, [1.0, 0.0, 0.0], 0.0, UP
    )
    np.testing.assert_array_equal(radiance, 0.0)
    np.testing.assert_array_equal(transmittance, 1.0)


def test_sky_radiance_ray_hitting_ground(precomputed_model):
    radiance, transmittance = precomputed_model.get_sky_radiance(CAMERA, DOWN, 0.0, UP)
    np.testing.assert_array_equal(transmittance, 0.0)
    assert np.all(radiance >= 0.0)


def test_sky_radiance_from_space(precomputed_model):
    camera = np.array([0.0, 0.0, 1e7])
    radiance, transmittance = precomputed_model.get_sky_radiance(camera, DOWN, 0.0, UP)
    # Viewer is moved to the top boundary; the ray then hits the planet
    np.testing.assert_array_equal(transmittance, 0.0)
    assert np.all(radiance > 0.0)


def test_sky_radiance_batches(precomputed_model):
    cameras = np.array([
        CAMERA,
        [0.0, GROUND + 5000.0, 0.0],
        [GROUND + 30000.0, 0.0, 0.0],
    ])
    view_rays = _normalize([[0.0, 1.0, 1.0], [0.0, 1.0, 0.2], [1.0, 0.0, -0.3]])
    sun = _normalize([0.3, 0.2, 1.0])

    radiance, transmittance = precomputed_model.get_sky_radiance(cameras, view_rays, 0.0, sun)
    assert radiance.shape == (3, 3)
    for i in range(3):
        single_radiance, single_transmittance = precomputed_model.get_sky_radiance(
            cameras[i], view_rays[i], 0.0, sun
        )
        np.testing.assert_allclose(radiance[i], single_radiance, rtol=1e-12)
        np.testing.assert_allclose(transmittance[i], single_transmittance, rtol=1e-12)


def test_sky_radiance_with_light_shafts(precomputed_model):
    view_rays = _normalize([[0.0, 1.0, 1.0], [0.0, 1.0, 0.05]])
    shadow = np.array([0.0, 2000.0])
    radiance, transmittance = precomputed_model.get_sky_radiance(
        CAMERA, view_rays, shadow, _normalize([0.0, 1.0, 0.5])
    )
    assert np.all(np.isfinite(radiance))

    # Unshadowed rays in a batch match the unshadowed query
    plain, _ = precomputed_model.get_sky_radiance(CAMERA, view_rays[0], 0.0, _normalize([0.0, 1.0, 0.5]))
    np.testing.assert_allclose(radiance[0], plain, rtol=1e-12)


def test_sky_radiance_to_nearby_point(precomputed_model):
    point = CAMERA + UP * 100.0
    radiance, transmittance = precomputed_model.get_sky_radiance_to_point(CAMERA, point, 0.0, UP)
    sky, _ = precomputed_model.get_sky_radiance(CAMERA, UP, 0.0, UP)

    assert np.all(transmittance > 0.98)
    assert np.all(transmittance <= 1.0)
    assert np.all(np.abs(radiance) < 0.2 * sky)


def test_sky_radiance_to_distant_point(precomputed_model):
    view = _normalize([0.0, 1.0, 0.1])
    point = CAMERA + view * 50000.0
    radiance, transmittance = precomputed_model.get_sky_radiance_to_point(CAMERA, point, 0.0, UP)

    assert np.all(radiance > 0.0)
    assert np.all((transmittance > 0.0) & (transmittance < 0.98))


def test_sky_radiance_to_point_degenerate_segments(precomputed_model):
    cameras = np.array([
        [0.0, 0.0, 6000000.0],  # both ends below the ground
        [1e8, 0.0, 0.0],        # segment outside the atmosphere
    ])
    points = np.array([
        [0.0, 0.0, 6100000.0],
        [1e8, 1e6, 0.0],
    ])
    radiance, transmittance = precomputed_model.get_sky_radiance_to_point(cameras, points, 0.0, UP)
    np.testing.assert_array_equal(radiance, 0.0)
    np.testing.assert_array_equal(transmittance, 1.0)


def test_sun_and_sky_irradiance(precomputed_model):
    point = np.array([0.0, 0.0, GROUND])
    sun, sky = precomputed_model.get_sun_and_sky_irradiance(point, UP, UP)
    assert np.all(sun > 0.0)
    assert np.all(sky > 0.0)
    # Direct light dominates with the sun at the zenith
    assert np.all(sun > sky)

    sun_down, sky_down = precomputed_model.get_sun_and_sky_irradiance(point, DOWN, UP)
    np.testing.assert_array_equal(sun_down, 0.0)
    np.testing.assert_allclose(sky_down, 0.0, atol=1e-12)


def test_sun_below_horizon_gives_no_direct_light(precomputed_model):
    point = np.array([0.0, 0.0, GROUND])
    sun, _ = precomputed_model.get_sun_and_sky_irradiance(point, UP, _normalize([1.0, 0.0, -0.2]))
    np.testing.assert_array_equal(sun, 0.0)


def test_scalar_irradiance(precomputed_model):
    textures = precomputed_model.textures
    uniforms = precomputed_model.uniforms
    point = np.array([0.0, 0.0, GROUND + 500.0])

    sun, sky = runtime.get_sun_and_sky_irradiance(textures, uniforms, point, UP, UP)
    scalar_sun, scalar_sky = runtime.get_sun_and_sky_scalar_irradiance(textures, uniforms, point, UP)

    np.testing.assert_allclose(scalar_sky, sky * 2.0 * math.pi, rtol=1e-12)
    np.testing.assert_allclose(scalar_sun, sun, rtol=1e-12)
    np.testing.assert_allclose(
        runtime.get_sky_irradiance(textures, uniforms, point, UP, UP), sky, rtol=1e-12
    )


def test_luminance_wrappers(precomputed_model):
    uniforms = precomputed_model.uniforms
    sky_factor = np.asarray(uniforms.sky_radiance_to_luminance) * uniforms.luminance_scale
    sun_factor = np.asarray(uniforms.sun_radiance_to_luminance) * uniforms.luminance_scale

    radiance, transmittance = precomputed_model.get_sky_radiance(CAMERA, UP, 0.0, UP)
    luminance, luminance_transmittance = precomputed_model.get_sky_luminance(CAMERA, UP, 0.0, UP)
    np.testing.assert_allclose(luminance, radiance * sky_factor)
    np.testing.assert_array_equal(luminance_transmittance, transmittance)

    point = CAMERA + _normalize([0.0, 1.0, 0.1]) * 20000.0
    radiance, _ = precomputed_model.get_sky_radiance_to_point(CAMERA, point, 0.0, UP)
    luminance, _ = precomputed_model.get_sky_luminance_to_point(CAMERA, point, 0.0, UP)
    np.testing.assert_allclose(luminance, radiance * sky_factor)

    ground = np.array([0.0, 0.0, GROUND])
    sun, sky = precomputed_model.get_sun_and_sky_irradiance(ground, UP, UP)
    sun_lum, sky_lum = precomputed_model.get_sun_and_sky_illuminance(ground, UP, UP)
    np.testing.assert_allclose(sun_lum, sun * sun_factor)
    np.testing.assert_allclose(sky_lum, sky * sky_factor)


def test_solar_luminance(precomputed_model):
    params = precomputed_model.params
    solar = precomputed_model.get_solar_luminance()

    assert solar.shape == (3,)
    # The default luminance scale normalizes the sun to unit luminance
    assert np.dot(LUMINANCE_COEFFICIENTS, solar) == pytest.approx(
        math.pi * params.sun_angular_radius ** 2
    )
    np.testing.assert_allclose(runtime.get_solar_luminance(params.uniforms()), solar)


def test_sun_light_color(precomputed_model):
    textures = precomputed_model.textures
    uniforms = precomputed_model.uniforms
    solar = np.asarray(uniforms.solar_irradiance)

    def color(position, sun_direction, photometric=False):
        return runtime.get_sun_light_color(
            textures.transmittance, uniforms, position, sun_direction,
            photometric=photometric, options=textures.options,
        )

    # In space, facing away from the planet: unattenuated
    np.testing.assert_allclose(color([0.0, 0.0, 1e8], UP), solar)
    # In space, sun behind the planet
    np.testing.assert_array_equal(color([0.0, 0.0, 1e8], DOWN), 0.0)
    # Below the horizon from the ground
    np.testing.assert_array_equal(color([0.0, 0.0, GROUND + 10.0], DOWN), 0.0)

    noon = color([0.0, 0.0, GROUND], UP)
    assert np.all((noon > 0.0) & (noon < solar))

    photometric = precomputed_model.get_sun_light_color([0.0, 0.0, GROUND], UP)
    sun_factor = np.asarray(uniforms.sun_radiance_to_luminance) * uniforms.luminance_scale
    np.testing.assert_allclose(photometric, noon * sun_factor)


def test_below_ground_camera_is_clamped_by_default(precomputed_model):
    view = _normalize([0.0, 1.0, 1.0])
    below = precomputed_model.get_sky_radiance([0.0, 0.0, GROUND - 500.0], view, 0.0, UP)
    at_ground = precomputed_model.get_sky_radiance([0.0, 0.0, GROUND], view, 0.0, UP)
    np.testing.assert_allclose(below[0], at_ground[0], rtol=1e-5)
    np.testing.assert_allclose(below[1], at_ground[1], rtol=1e-5)


def test_unconstrained_camera_still_clamps_lookup_radius(precomputed_model):
    textures = precomputed_model.textures
    uniforms = dataclasses.replace(precomputed_model.uniforms, constrain_camera_above_ground=False)
    view = _normalize([0.0, 1.0, 1.0])

    cameras = np.array([[0.0, 0.0, GROUND - 500.0], [0.0, 0.0, 0.0]])
    radiance, transmittance = runtime.get_sky_radiance(textures, uniforms, cameras, view, 0.0, UP)
    at_ground, _ = runtime.get_sky_radiance(textures, uniforms, [0.0, 0.0, GROUND], view, 0.0, UP)

    assert np.all(np.isfinite(radiance)) and np.all(np.isfinite(transmittance))
    np.testing.assert_allclose(radiance[0], at_ground, rtol=1e-2)


def test_hide_ground(precomputed_model):
    textures = precomputed_model.textures
    uniforms = dataclasses.replace(precomputed_model.uniforms, hide_ground=True)

    _, shown = runtime.get_sky_radiance(textures, precomputed_model.uniforms, CAMERA, DOWN, 0.0, UP)
    _, hidden = runtime.get_sky_radiance(textures, uniforms, CAMERA, DOWN, 0.0, UP)
    np.testing.assert_array_equal(shown, 0.0)
    assert hidden[0] > 0.0


def test_runtime_accepts_parameters(precomputed_model):
    textures = precomputed_model.textures
    from_params = runtime.get_sky_radiance(textures, precomputed_model.params, CAMERA, UP, 0.0, UP)
    from_uniforms = runtime.get_sky_radiance(textures, precomputed_model.uniforms, CAMERA, UP, 0.0, UP)
    np.testing.assert_allclose(from_params[0], from_uniforms[0])


def test_extrapolated_single_mie(precomputed_model):
    fn = runtime.bind_functions(precomputed_model.textures, precomputed_model.uniforms)
    combined = np.array([[0.2, 0.4, 0.8, 0.1], [0.0, 0.0, 0.0, 0.5]])
    mie = runtime.get_extrapolated_single_mie_scattering(fn, combined)

    np.testing.assert_allclose(mie[0, 0], 0.1)
    np.testing.assert_array_equal(mie[1], 0.0)


def _split_textures(textures, higher_order_fraction):
    """Mie-free LUTs whose scattering is counted as single or as higher order."""
    scattering = textures.scattering.copy()
    scattering[..., 3] = 0.0
    return dataclasses.replace(
        textures,
        scattering=scattering,
        higher_order_scattering=scattering[..., :3] * higher_order_fraction,
    )


def test_light_shafts_occlude_only_single_scattering(precomputed_model):
    """Known approximation: orders >= 2 are never occluded by the shadow."""
    uniforms = precomputed_model.uniforms
    single = _split_textures(precomputed_model.textures, 0.0)
    higher = _split_textures(precomputed_model.textures, 1.0)
    view = _normalize([0.0, 1.0, 0.5])
    shadow_length = 3000.0

    single_radiance, _ = runtime.get_sky_radiance(single, uniforms, CAMERA, view, shadow_length, view)
    higher_radiance, _ = runtime.get_sky_radiance(higher, uniforms, CAMERA, view, shadow_length, view)

    fn = runtime.bind_functions(single, uniforms)
    unit = uniforms.length_unit_in_meters
    shadow_transmittance = fn.get_transmittance(
        single.transmittance, np.linalg.norm(CAMERA) / unit, view[2], shadow_length / unit, False
    )
    assert np.all(shadow_transmittance < 1.0)
    assert np.all(higher_radiance > single_radiance)
    np.testing.assert_allclose(single_radiance, higher_radiance * shadow_transmittance, rtol=1e-8)


def test_light_shafts_are_continuous_at_zero_length(precomputed_model):
    view = _normalize([0.0, 1.0, 0.2])
    point = CAMERA + view * 20000.0

    plain, _ = precomputed_model.get_sky_radiance(CAMERA, view, 0.0, UP)
    shafts, _ = precomputed_model.get_sky_radiance(CAMERA, view, 1e-3, UP)
    np.testing.assert_allclose(shafts, plain, rtol=1e-4)

    plain, _ = precomputed_model.get_sky_radiance_to_point(CAMERA, point, 0.0, UP)
    shafts, _ = precomputed_model.get_sky_radiance_to_point(CAMERA, point, 1e-3, UP)
    np.testing.assert_allclose(shafts, plain, rtol=1e-4)


def test_sky_radiance_to_point_without_shadow_ignores_order_split(precomputed_model):
    textures = precomputed_model.textures
    uniforms = precomputed_model.uniforms
    without_split = dataclasses.replace(textures, higher_order_scattering=None)
    point = CAMERA + _normalize([0.0, 1.0, 0.1]) * 20000.0

    split, split_transmittance = runtime.get_sky_radiance_to_point(textures, uniforms, CAMERA, point, 0.0, UP)
    plain, plain_transmittance = runtime.get_sky_radiance_to_point(
        without_split, uniforms, CAMERA, point, 0.0, UP
    )
    np.testing.assert_allclose(split, plain, rtol=1e-7, atol=1e-12)
    np.testing.assert_array_equal(split_transmittance, plain_transmittance)


def test_fully_shadowed_segment(precomputed_model):
    """Known approximation: a fully shadowed segment keeps its higher-order light."""
    uniforms = precomputed_model.uniforms
    point = CAMERA + _normalize([0.0, 1.0, 0.1]) * 20000.0
    shadow_length = 1e6

    unshadowed, _ = runtime.get_sky_radiance_to_point(
        _split_textures(precomputed_model.textures, 0.0), uniforms, CAMERA, point, 0.0, UP
    )
    single, _ = runtime.get_sky_radiance_to_point(
        _split_textures(precomputed_model.textures, 0.0), uniforms, CAMERA, point, shadow_length, UP
    )
    higher, _ = runtime.get_sky_radiance_to_point(
        _split_textures(precomputed_model.textures, 1.0), uniforms, CAMERA, point, shadow_length, UP
    )

    assert np.all(unshadowed > 0.0)
    np.testing.assert_allclose(single, 0.0, atol=1e-9 * unshadowed.max())
    assert np.all(higher > 0.0)


def test_irradiance_at_planet_center_is_finite(precomputed_model):
    sun, sky = precomputed_model.get_sun_and_sky_irradiance([0.0, 0.0, 0.0], UP, UP)
    assert np.all(np.isfinite(sun))
    assert np.all(np.isfinite(sky))
