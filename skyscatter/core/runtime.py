"""
Skyscatter Runtime - Sky radiance, aerial perspective and irradiance queries.

Ported from atmosphere/functions.glsl (GetSkyRadiance, GetSkyRadianceToPoint,
GetSunAndSkyIrradiance) by Eric Bruneton.

Every query is a pure function of the published textures, the atmosphere and
the geometry. Positions are in meters relative to the planet center;
directions are unit vectors. Inputs broadcast over any leading shape, with
vectors in the last axis.
"""

import math
from typing import Tuple, Union

import numpy as np

from .functions import AtmosphereFunctions
from .parameters import AtmosphereParameters, AtmosphereUniforms, PrecomputeOptions

# Minimum cosine offset above the horizon for rays that miss the ground
HORIZON_EPSILON = 0.004

AtmosphereLike = Union[AtmosphereParameters, AtmosphereUniforms]


def bind_functions(textures, atmosphere: AtmosphereLike) -> AtmosphereFunctions:
    """Atmosphere math for sampling ``textures`` (host arrays, linear transmittance)."""
    if isinstance(atmosphere, AtmosphereParameters):
        atmosphere = atmosphere.uniforms()
    return AtmosphereFunctions(atmosphere, textures.options)


def _dot(a, b):
    return np.sum(a * b, axis=-1)


def _length(v):
    return np.sqrt(_dot(v, v))


def _to_lut_units(fn: AtmosphereFunctions, position):
    return np.asarray(position, dtype=np.float64) / fn.atmosphere.length_unit_in_meters


def _as_direction(direction):
    return np.asarray(direction, dtype=np.float64)


def get_extrapolated_single_mie_scattering(fn: AtmosphereFunctions, scattering):
    """
    Single Mie scattering recovered from a combined (rayleigh.rgb, mie.r) sample.

    Assumes single Mie is proportional to single Rayleigh channel-wise, scaled
    by the ratio of the scattering coefficients.
    """
    scattering = np.asarray(scattering)
    red = scattering[..., 0:1]
    rayleigh = fn.rayleigh_scattering
    mie = fn.mie_scattering
    extrapolated = (
        scattering[..., :3] * scattering[..., 3:4] / np.where(red >= 1e-5, red, 1.0) *
        (rayleigh[0] / mie[0]) * (mie / rayleigh)
    )
    return np.where(red >= 1e-5, extrapolated, 0.0)


def get_combined_scattering(fn: AtmosphereFunctions, textures, r, mu, mu_s, nu,
                            ray_r_mu_intersects_ground):
    """(scattering, single_mie_scattering) at (r, mu, mu_s, nu)."""
    combined = fn.get_scattering(textures.scattering, r, mu, mu_s, nu, ray_r_mu_intersects_ground)
    if textures.single_mie_scattering is None:
        return combined[..., :3], get_extrapolated_single_mie_scattering(fn, combined)
    single_mie = fn.get_scattering(
        textures.single_mie_scattering, r, mu, mu_s, nu, ray_r_mu_intersects_ground
    )
    return combined[..., :3], single_mie


def _phase_weighted(fn: AtmosphereFunctions, scattering, single_mie, nu):
    g = fn.atmosphere.mie_phase_function_g
    return (
        scattering * fn.rayleigh_phase_function(nu)[..., None] +
        single_mie * fn.mie_phase_function(g, nu)[..., None]
    )


def _point_along_ray(fn: AtmosphereFunctions, r, mu, mu_s, nu, d):
    """(r_p, mu_p, mu_s_p) of the point at distance d along (r, mu)."""
    r_p = fn.clamp_radius(np.sqrt(d * d + 2.0 * r * mu * d + r * r))
    mu_p = (r * mu + d) / r_p
    mu_s_p = (r * mu_s + d * nu) / r_p
    return r_p, mu_p, mu_s_p


def get_sky_radiance(textures, atmosphere: AtmosphereLike, camera, view_ray,
                     shadow_length, sun_direction) -> Tuple[np.ndarray, np.ndarray]:
    """
    Radiance of the sky along an infinite view ray.

    Args:
        textures: Published LUTs
        atmosphere: Parameters the LUTs were computed with
        camera: Camera position (m)
        view_ray: Unit view direction
        shadow_length: Length (m) of the shadowed part of the ray next to the
            camera (light shafts); 0 disables the shadow path
        sun_direction: Unit direction to the sun

    Returns:
        (radiance, transmittance). Rays that miss the atmosphere give zero
        radiance and unit transmittance; rays hitting the ground give zero
        transmittance.
    """
    fn = bind_functions(textures, atmosphere)
    a = fn.atmosphere
    camera = _to_lut_units(fn, camera)
    view_ray = _as_direction(view_ray)
    sun_direction = _as_direction(sun_direction)
    shadow_length = _to_lut_units(fn, shadow_length)
    camera, view_ray, sun_direction = np.broadcast_arrays(camera, view_ray, sun_direction)
    shadow_length = np.broadcast_to(shadow_length, camera.shape[:-1])

    r = _length(camera)
    r = np.where(np.isnan(r), fn.bottom_radius, r)
    # Radii below the ground always look up at the bottom boundary; the camera
    # itself is only snapped there when constrained
    below = r < fn.bottom_radius
    if a.constrain_camera_above_ground:
        camera = np.where(
            below[..., None],
            camera * fn.safe_div(fn.bottom_radius, r, 1.0)[..., None],
            camera,
        )
    r = np.where(below, fn.bottom_radius, r)

    # Viewer in space looking at the atmosphere: move it to the top boundary
    rmu = _dot(camera, view_ray)
    distance_to_top = -rmu - fn.safe_sqrt(rmu * rmu - r * r + fn.top_radius * fn.top_radius)
    in_space = distance_to_top > 0.0
    camera = np.where(in_space[..., None], camera + view_ray * distance_to_top[..., None], camera)
    r = np.where(in_space, fn.top_radius, r)
    rmu = np.where(in_space, rmu + distance_to_top, rmu)

    inside = r <= fn.top_radius
    r_lookup = np.where(inside, r, fn.top_radius)
    mu = fn.clamp_cosine(fn.safe_div(rmu, r_lookup, 1.0))
    mu_s = fn.clamp_cosine(fn.safe_div(_dot(camera, sun_direction), r_lookup, 1.0))
    nu = fn.clamp_cosine(_dot(view_ray, sun_direction))

    if a.hide_ground:
        ground = np.zeros(r.shape, dtype=bool)
    else:
        ground = fn.ray_intersects_ground(r_lookup, mu)

    transmittance = np.where(
        ground[..., None],
        0.0,
        fn.get_transmittance_to_top_atmosphere_boundary(textures.transmittance, r_lookup, mu),
    )

    scattering, single_mie = get_combined_scattering(fn, textures, r_lookup, mu, mu_s, nu, ground)

    shadowed = shadow_length > 0.0
    if np.any(shadowed):
        # Light shafts: skip the scattering between the camera and the point
        # at shadow_length
        r_p, mu_p, mu_s_p = _point_along_ray(fn, r_lookup, mu, mu_s, nu, shadow_length)
        scattering_p, single_mie_p = get_combined_scattering(
            fn, textures, r_p, mu_p, mu_s_p, nu, ground
        )
        shadow_transmittance = fn.get_transmittance(
            textures.transmittance, r_lookup, mu, shadow_length, ground
        )
        # Occlude only single scattering by the shadow
        if textures.higher_order_scattering is not None:
            higher_order_p = fn.get_scattering(
                textures.higher_order_scattering, r_p, mu_p, mu_s_p, nu, ground
            )
            scattering_p = (scattering_p - higher_order_p) * shadow_transmittance + higher_order_p
        else:
            scattering_p = scattering_p * shadow_transmittance
        single_mie_p = single_mie_p * shadow_transmittance

        scattering = np.where(shadowed[..., None], scattering_p, scattering)
        single_mie = np.where(shadowed[..., None], single_mie_p, single_mie)

    radiance = _phase_weighted(fn, scattering, single_mie, nu)
    radiance = np.where(inside[..., None], radiance, 0.0)
    transmittance = np.where(inside[..., None], transmittance, 1.0)
    return radiance, transmittance


def _safe_ratio(numerator, denominator):
    positive = denominator > 0.0
    return np.where(positive, numerator / np.where(positive, denominator, 1.0), 0.0)


def _distance_to_closest_point_on_segment(camera, point):
    """Distance from the planet center to the closest point of the segment."""
    ray = point - camera
    t = np.clip(_safe_ratio(-_dot(camera, ray), _dot(ray, ray)), 0.0, 1.0)
    return _length(camera + t[..., None] * ray)


def _ray_sphere_intersections(origin, direction, radius):
    """Near and far ray parameters of the intersections with a sphere."""
    b = 2.0 * _dot(direction, origin)
    c = _dot(origin, origin) - radius * radius
    q = np.sqrt(np.maximum(b * b - 4.0 * c, 0.0))
    return 0.5 * (-b - q), 0.5 * (-b + q)


def _clip_segment_at_bottom(fn: AtmosphereFunctions, camera, point):
    """Clip (camera, point) at the bottom boundary. Returns (camera, point, degenerate)."""
    camera_below = _length(camera) < fn.bottom_radius
    point_below = _length(point) < fn.bottom_radius

    view_ray = point - camera
    view_ray = view_ray / np.maximum(_length(view_ray), 1e-30)[..., None]
    t_near, t_far = _ray_sphere_intersections(camera, view_ray, fn.bottom_radius)
    intersection = camera + view_ray * np.where(camera_below, t_far, t_near)[..., None]

    return (
        np.where(camera_below[..., None], intersection, camera),
        np.where(point_below[..., None], intersection, point),
        camera_below & point_below,
    )


def get_sky_radiance_to_point(textures, atmosphere: AtmosphereLike, camera, point,
                              shadow_length, sun_direction) -> Tuple[np.ndarray, np.ndarray]:
    """
    Radiance scattered towards the camera between it and ``point``, as the
    difference of two infinite-ray lookups.

    Returns:
        (radiance, transmittance). Segments outside the atmosphere or entirely
        below the ground give zero radiance and unit transmittance.
    """
    fn = bind_functions(textures, atmosphere)
    camera = _to_lut_units(fn, camera)
    point = _to_lut_units(fn, point)
    sun_direction = _as_direction(sun_direction)
    shadow_length = _to_lut_units(fn, shadow_length)
    camera, point, sun_direction = np.broadcast_arrays(camera, point, sun_direction)
    shadow_length = np.broadcast_to(shadow_length, camera.shape[:-1])

    valid = _distance_to_closest_point_on_segment(camera, point) < fn.top_radius
    camera, point, degenerate = _clip_segment_at_bottom(fn, camera, point)
    valid = valid & ~degenerate

    segment = point - camera
    view_ray = segment / np.maximum(_length(segment), 1e-30)[..., None]
    r = _length(camera)
    rmu = _dot(camera, view_ray)

    # Viewer in space: move it to the top boundary
    distance_to_top = -rmu - fn.safe_sqrt(rmu * rmu - r * r + fn.top_radius * fn.top_radius)
    in_space = distance_to_top > 0.0
    camera = np.where(in_space[..., None], camera + view_ray * distance_to_top[..., None], camera)
    r = np.where(in_space, fn.top_radius, r)
    rmu = np.where(in_space, rmu + distance_to_top, rmu)

    r = fn.clamp_radius(r)
    mu = fn.clamp_cosine(fn.safe_div(rmu, r, 1.0))
    mu_s = fn.clamp_cosine(fn.safe_div(_dot(camera, sun_direction), r, 1.0))
    nu = fn.clamp_cosine(_dot(view_ray, sun_direction))
    d = _length(point - camera)
    ground = fn.ray_intersects_ground(r, mu)

    # Keep rays that miss the ground slightly above the horizon to hide
    # texture resolution artifacts
    cos_horizon = -fn.safe_sqrt(1.0 - (fn.bottom_radius / r) ** 2)
    mu = np.where(ground, mu, np.maximum(mu, cos_horizon + HORIZON_EPSILON))

    transmittance = fn.get_transmittance(textures.transmittance, r, mu, d, ground)
    scattering, single_mie = get_combined_scattering(fn, textures, r, mu, mu_s, nu, ground)

    # Ignore the scattering along the last shadow_length of the ray
    d = np.maximum(d - shadow_length, 0.0)
    r_p, mu_p, mu_s_p = _point_along_ray(fn, r, mu, mu_s, nu, d)
    scattering_p, single_mie_p = get_combined_scattering(fn, textures, r_p, mu_p, mu_s_p, nu, ground)

    shadow_transmittance = np.where(
        (shadow_length > 0.0)[..., None],
        fn.get_transmittance(textures.transmittance, r, mu, d, ground),
        transmittance,
    )
    if textures.higher_order_scattering is not None:
        # Occlude only single scattering by the shadow
        higher_order = fn.get_scattering(textures.higher_order_scattering, r, mu, mu_s, nu, ground)
        higher_order_p = fn.get_scattering(
            textures.higher_order_scattering, r_p, mu_p, mu_s_p, nu, ground
        )
        scattering = (
            (scattering - higher_order) -
            shadow_transmittance * (scattering_p - higher_order_p) +
            (higher_order - transmittance * higher_order_p)
        )
    else:
        scattering = scattering - shadow_transmittance * scattering_p

    single_mie = single_mie - shadow_transmittance * single_mie_p
    if textures.single_mie_scattering is None:
        single_mie = get_extrapolated_single_mie_scattering(
            fn, np.concatenate([scattering, single_mie[..., 0:1]], axis=-1)
        )

    # Fade single Mie out as the sun sets
    single_mie = single_mie * fn.smoothstep(0.0, 0.01, mu_s)[..., None]

    radiance = _phase_weighted(fn, scattering, single_mie, nu)
    radiance = np.where(valid[..., None], radiance, 0.0)
    transmittance = np.where(valid[..., None], transmittance, 1.0)
    return radiance, transmittance


def _irradiance_geometry(fn: AtmosphereFunctions, point, sun_direction):
    point = _to_lut_units(fn, point)
    sun_direction = _as_direction(sun_direction)
    point, sun_direction = np.broadcast_arrays(point, sun_direction)
    r = _length(point)
    mu_s = fn.clamp_cosine(fn.safe_div(_dot(point, sun_direction), r, 1.0))
    return point, sun_direction, r, mu_s


def get_sky_irradiance(textures, atmosphere: AtmosphereLike, point, normal, sun_direction):
    """Sky (indirect) irradiance on a surface; approximate when it is not horizontal."""
    fn = bind_functions(textures, atmosphere)
    point, sun_direction, r, mu_s = _irradiance_geometry(fn, point, sun_direction)
    normal = _as_direction(normal)
    tilt = (1.0 + fn.safe_div(_dot(normal, point), r, 1.0)) * 0.5
    return fn.get_irradiance(textures.irradiance, r, mu_s) * tilt[..., None]


def get_sun_and_sky_irradiance(textures, atmosphere: AtmosphereLike, point, normal,
                               sun_direction) -> Tuple[np.ndarray, np.ndarray]:
    """
    Direct sun and sky irradiance on a surface at ``point`` with ``normal``.

    Returns:
        (sun_irradiance, sky_irradiance)
    """
    fn = bind_functions(textures, atmosphere)
    point, sun_direction, r, mu_s = _irradiance_geometry(fn, point, sun_direction)
    normal = _as_direction(normal)

    sun_irradiance = (
        fn.solar_irradiance *
        fn.get_transmittance_to_sun(textures.transmittance, r, mu_s) *
        np.maximum(_dot(normal, sun_direction), 0.0)[..., None]
    )
    tilt = (1.0 + fn.safe_div(_dot(normal, point), r, 1.0)) * 0.5
    sky_irradiance = fn.get_irradiance(textures.irradiance, r, mu_s) * tilt[..., None]
    return sun_irradiance, sky_irradiance


def get_sun_and_sky_scalar_irradiance(textures, atmosphere: AtmosphereLike, point,
                                      sun_direction) -> Tuple[np.ndarray, np.ndarray]:
    """
    Irradiance integrated over the whole sphere, without a cosine term.

    Returns:
        (sun_irradiance, sky_irradiance)
    """
    fn = bind_functions(textures, atmosphere)
    point, sun_direction, r, mu_s = _irradiance_geometry(fn, point, sun_direction)
    sky_irradiance = fn.get_irradiance(textures.irradiance, r, mu_s) * (2.0 * math.pi)
    sun_irradiance = fn.solar_irradiance * fn.get_transmittance_to_sun(
        textures.transmittance, r, mu_s
    )
    return sun_irradiance, sky_irradiance


# ----------------------------------------------------------------------
# Luminance
# ----------------------------------------------------------------------

def _sky_to_luminance(atmosphere: AtmosphereLike):
    return np.asarray(atmosphere.sky_radiance_to_luminance) * atmosphere.luminance_scale


def _sun_to_luminance(atmosphere: AtmosphereLike):
    return np.asarray(atmosphere.sun_radiance_to_luminance) * atmosphere.luminance_scale


def get_sky_luminance(textures, atmosphere: AtmosphereLike, camera, view_ray,
                      shadow_length, sun_direction):
    """Like :func:`get_sky_radiance`, returning (luminance, transmittance)."""
    radiance, transmittance = get_sky_radiance(
        textures, atmosphere, camera, view_ray, shadow_length, sun_direction
    )
    return radiance * _sky_to_luminance(atmosphere), transmittance


def get_sky_luminance_to_point(textures, atmosphere: AtmosphereLike, camera, point,
                               shadow_length, sun_direction):
    """Like :func:`get_sky_radiance_to_point`, returning (luminance, transmittance)."""
    radiance, transmittance = get_sky_radiance_to_point(
        textures, atmosphere, camera, point, shadow_length, sun_direction
    )
    return radiance * _sky_to_luminance(atmosphere), transmittance


def get_sun_and_sky_illuminance(textures, atmosphere: AtmosphereLike, point, normal,
                                sun_direction):
    sun, sky = get_sun_and_sky_irradiance(textures, atmosphere, point, normal, sun_direction)
    return sun * _sun_to_luminance(atmosphere), sky * _sky_to_luminance(atmosphere)


def get_sky_illuminance(textures, atmosphere: AtmosphereLike, point, normal, sun_direction):
    sky = get_sky_irradiance(textures, atmosphere, point, normal, sun_direction)
    return sky * _sky_to_luminance(atmosphere)


def get_sun_and_sky_scalar_illuminance(textures, atmosphere: AtmosphereLike, point,
                                       sun_direction):
    sun, sky = get_sun_and_sky_scalar_irradiance(textures, atmosphere, point, sun_direction)
    return sun * _sun_to_luminance(atmosphere), sky * _sky_to_luminance(atmosphere)


def get_solar_luminance(atmosphere: AtmosphereLike) -> np.ndarray:
    """Luminance factor of the sun disc, pi * alpha^2 * sun_radiance_to_luminance * scale."""
    alpha = atmosphere.sun_angular_radius
    return math.pi * alpha * alpha * _sun_to_luminance(atmosphere)


def get_sun_light_color(transmittance_texture, atmosphere: AtmosphereLike, position,
                        sun_direction, photometric: bool = True, options=None) -> np.ndarray:
    """
    Color of direct sunlight at ``position`` for a directional light.

    Unlike :func:`get_sun_and_sky_irradiance` the sun disc is treated as a
    point: light is either fully blocked by the planet or attenuated by the
    transmittance to the top boundary.

    Args:
        transmittance_texture: Published transmittance LUT
        atmosphere: Atmosphere parameters
        position: Position relative to the planet center (m)
        sun_direction: Unit direction to the sun
        photometric: Convert to luminance with the sun conversion factor
        options: Texture layout; defaults to the standard sizes
    """
    if isinstance(atmosphere, AtmosphereParameters):
        atmosphere = atmosphere.uniforms()
    if options is None:
        height, width = transmittance_texture.shape[:2]
        options = PrecomputeOptions(transmittance_size=(width, height))
    fn = AtmosphereFunctions(atmosphere, options)

    camera = _to_lut_units(fn, position)
    sun_direction = _as_direction(sun_direction)
    camera, sun_direction = np.broadcast_arrays(camera, sun_direction)

    r = _length(camera)
    rmu = _dot(camera, sun_direction)
    distance_to_top = -rmu - fn.safe_sqrt(rmu * rmu - r * r + fn.top_radius * fn.top_radius)
    in_space = distance_to_top > 0.0
    r = np.where(in_space, fn.top_radius, r)
    rmu = np.where(in_space, rmu + distance_to_top, rmu)

    outside = r > fn.top_radius
    r_lookup = np.where(outside, fn.top_radius, r)
    mu = fn.clamp_cosine(fn.safe_div(rmu, r_lookup, 1.0))
    ground = fn.ray_intersects_ground(r_lookup, mu)

    transmittance = fn.get_transmittance_to_top_atmosphere_boundary(
        transmittance_texture, r_lookup, mu
    )
    transmittance = np.where(ground[..., None], 0.0, transmittance)
    transmittance = np.where(outside[..., None], 1.0, transmittance)

    color = transmittance * fn.solar_irradiance
    if photometric:
        color = color * _sun_to_luminance(atmosphere)
    return color
