"""
Skyscatter Functions - Geometry, texture parametrizations and LUT sampling.

Ported from atmosphere/functions.glsl by Eric Bruneton. Every method is
vectorized over arbitrary array shapes through the backend's ``xp`` module;
radii and distances are in LUT length units.
"""

import math
from typing import Optional

import numpy as np

from .backend import ComputeBackend
from .parameters import AtmosphereUniforms, DensityProfile, PrecomputeOptions

# Floor for transmittance ratios so fully opaque paths do not divide by zero
_MIN_TRANSMITTANCE = 1e-30


class AtmosphereFunctions:
    """
    Atmosphere math bound to one configuration and one texture layout.

    Stages and runtime queries receive an instance explicitly; nothing here
    reads global state.
    """

    def __init__(
        self,
        atmosphere: AtmosphereUniforms,
        options: PrecomputeOptions,
        backend: Optional[ComputeBackend] = None,
        optical_depth_transmittance: bool = False,
    ):
        """
        Args:
            atmosphere: Parameters in LUT length units
            options: Texture sizes of the LUTs that will be sampled
            backend: Array backend (NumPy when omitted)
            optical_depth_transmittance: Transmittance textures passed to this
                instance hold optical depth instead of transmittance
        """
        self.atmosphere = atmosphere
        self.options = options
        self.backend = backend or ComputeBackend(use_gpu=False)
        self.xp = self.backend.xp
        self.optical_depth_transmittance = optical_depth_transmittance

        self.bottom_radius = float(atmosphere.bottom_radius)
        self.top_radius = float(atmosphere.top_radius)
        self.horizon_distance = atmosphere.horizon_distance

        to_backend = self.backend.asarray
        self.solar_irradiance = to_backend(atmosphere.solar_irradiance)
        self.rayleigh_scattering = to_backend(atmosphere.rayleigh_scattering)
        self.mie_scattering = to_backend(atmosphere.mie_scattering)
        self.mie_extinction = to_backend(atmosphere.mie_extinction)
        self.absorption_extinction = to_backend(atmosphere.absorption_extinction)
        self.ground_albedo = to_backend(atmosphere.ground_albedo)

        # mu_s parametrization constant: normalized distance to the top
        # boundary for the lowest precomputed sun
        d_min = self.top_radius - self.bottom_radius
        d_max = self.horizon_distance
        big_d = self._scalar_distance_to_top(self.bottom_radius, atmosphere.min_cos_sun)
        self._mu_s_big_a = (big_d - d_min) / (d_max - d_min)

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    def _scalar_distance_to_top(self, r: float, mu: float) -> float:
        discriminant = r * r * (mu * mu - 1.0) + self.top_radius * self.top_radius
        return max(0.0, -r * mu + math.sqrt(max(0.0, discriminant)))

    def asarray(self, x):
        return self.xp.asarray(x, dtype=self.xp.float64)

    def safe_div(self, numerator, denominator, fallback):
        """numerator / denominator, or ``fallback`` where the denominator is 0."""
        xp = self.xp
        is_zero = denominator == 0
        return xp.where(is_zero, fallback, numerator / xp.where(is_zero, 1.0, denominator))

    def safe_sqrt(self, x):
        return self.xp.sqrt(self.xp.maximum(x, 0.0))

    def clamp_cosine(self, mu):
        return self.xp.clip(mu, -1.0, 1.0)

    def clamp_distance(self, d):
        return self.xp.maximum(d, 0.0)

    def clamp_radius(self, r):
        """Clamp to [bottom, top]; NaN radii fall back to the bottom radius."""
        xp = self.xp
        r = xp.where(xp.isnan(r), self.bottom_radius, r)
        return xp.clip(r, self.bottom_radius, self.top_radius)

    def smoothstep(self, edge0, edge1, x):
        t = self.xp.clip(self.safe_div(x - edge0, edge1 - edge0, 1.0), 0.0, 1.0)
        return t * t * (3.0 - 2.0 * t)

    @staticmethod
    def get_texture_coord_from_unit_range(x, texture_size: int):
        """Convert unit range [0,1] to texture coordinate."""
        return 0.5 / texture_size + x * (1.0 - 1.0 / texture_size)

    @staticmethod
    def get_unit_range_from_texture_coord(u, texture_size: int):
        """Convert texture coordinate to unit range [0,1]."""
        return (u - 0.5 / texture_size) / (1.0 - 1.0 / texture_size)

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    def distance_to_top_atmosphere_boundary(self, r, mu):
        """
        Distance from a point at radius r looking in direction with cosine mu
        to the top atmosphere boundary.
        """
        discriminant = r * r * (mu * mu - 1.0) + self.top_radius * self.top_radius
        return self.clamp_distance(-r * mu + self.safe_sqrt(discriminant))

    def distance_to_bottom_atmosphere_boundary(self, r, mu):
        """Distance to the ground along (r, mu); only meaningful if the ray hits it."""
        discriminant = r * r * (mu * mu - 1.0) + self.bottom_radius * self.bottom_radius
        return self.clamp_distance(-r * mu - self.safe_sqrt(discriminant))

    def ray_intersects_ground(self, r, mu):
        """Check if a ray from radius r with direction cosine mu hits the ground."""
        return (mu < 0.0) & (
            r * r * (mu * mu - 1.0) + self.bottom_radius * self.bottom_radius >= 0.0
        )

    def distance_to_nearest_atmosphere_boundary(self, r, mu, ray_r_mu_intersects_ground):
        return self.xp.where(
            ray_r_mu_intersects_ground,
            self.distance_to_bottom_atmosphere_boundary(r, mu),
            self.distance_to_top_atmosphere_boundary(r, mu),
        )

    def get_profile_density(self, profile: DensityProfile, altitude):
        return profile.get_density(altitude, self.xp)

    # ------------------------------------------------------------------
    # Texture sampling (bilinear/trilinear, clamp to edge, texel centers at
    # (i + 0.5) / size)
    # ------------------------------------------------------------------

    def _linear_taps(self, coord, size: int):
        xp = self.xp
        x = xp.nan_to_num(coord * size - 0.5)
        x0 = xp.floor(x)
        weight = (x - x0)[..., None]
        i0 = xp.clip(x0, 0, size - 1).astype(xp.int64)
        i1 = xp.clip(x0 + 1, 0, size - 1).astype(xp.int64)
        return i0, i1, weight

    def sample_texture_2d(self, texture, u, v, decode=None):
        """
        Bilinear lookup of an (H, W, C) texture.

        Args:
            decode: Optional function applied to each tap before weighting
        """
        u, v = self.xp.broadcast_arrays(self.asarray(u), self.asarray(v))
        height, width = texture.shape[:2]
        i0, i1, fx = self._linear_taps(u, width)
        j0, j1, fy = self._linear_taps(v, height)

        t00 = texture[j0, i0]
        t10 = texture[j0, i1]
        t01 = texture[j1, i0]
        t11 = texture[j1, i1]
        if decode is not None:
            t00, t10, t01, t11 = decode(t00), decode(t10), decode(t01), decode(t11)

        return (
            (t00 * (1.0 - fx) + t10 * fx) * (1.0 - fy) +
            (t01 * (1.0 - fx) + t11 * fx) * fy
        )

    def sample_texture_3d(self, texture, u, v, w):
        """Trilinear lookup of a (D, H, W, C) texture."""
        u, v, w = self.xp.broadcast_arrays(self.asarray(u), self.asarray(v), self.asarray(w))
        depth, height, width = texture.shape[:3]
        i0, i1, fx = self._linear_taps(u, width)
        j0, j1, fy = self._linear_taps(v, height)
        k0, k1, fz = self._linear_taps(w, depth)

        near = (
            (texture[k0, j0, i0] * (1.0 - fx) + texture[k0, j0, i1] * fx) * (1.0 - fy) +
            (texture[k0, j1, i0] * (1.0 - fx) + texture[k0, j1, i1] * fx) * fy
        )
        far = (
            (texture[k1, j0, i0] * (1.0 - fx) + texture[k1, j0, i1] * fx) * (1.0 - fy) +
            (texture[k1, j1, i0] * (1.0 - fx) + texture[k1, j1, i1] * fx) * fy
        )
        return near * (1.0 - fz) + far * fz

    def _decode_optical_depth(self, optical_depth):
        return self.xp.exp(-optical_depth)

    # ------------------------------------------------------------------
    # Transmittance
    # ------------------------------------------------------------------

    def get_transmittance_texture_uv_from_r_mu(self, r, mu):
        width, height = self.options.transmittance_size
        H = self.horizon_distance
        rho = self.safe_sqrt(r * r - self.bottom_radius * self.bottom_radius)
        d = self.distance_to_top_atmosphere_boundary(r, mu)
        d_min = self.top_radius - r
        d_max = rho + H
        x_mu = (d - d_min) / (d_max - d_min)
        x_r = rho / H
        return (
            self.get_texture_coord_from_unit_range(x_mu, width),
            self.get_texture_coord_from_unit_range(x_r, height),
        )

    def get_r_mu_from_transmittance_texture_uv(self, u, v):
        """Convert transmittance texture UV to (r, mu) parameters."""
        width, height = self.options.transmittance_size
        H = self.horizon_distance
        x_mu = self.get_unit_range_from_texture_coord(u, width)
        x_r = self.get_unit_range_from_texture_coord(v, height)

        # Distance to the horizon
        rho = H * x_r
        r = self.xp.sqrt(rho * rho + self.bottom_radius * self.bottom_radius)

        # Distance to the top boundary, between straight up and the horizon
        d_min = self.top_radius - r
        d_max = rho + H
        d = d_min + x_mu * (d_max - d_min)
        mu = self.safe_div(H * H - rho * rho - d * d, 2.0 * r * d, 1.0)
        return r, self.clamp_cosine(mu)

    def compute_optical_depth_to_top_atmosphere_boundary(self, r, mu, sample_count: int):
        """
        Extinction-weighted optical depth from (r, mu) to the top boundary,
        summed over Rayleigh, Mie and absorption. Returns shape r.shape + (3,).

        Trapezoidal rule over ``sample_count`` intervals.
        """
        xp = self.xp
        a = self.atmosphere
        dx = self.distance_to_top_atmosphere_boundary(r, mu) / sample_count

        rayleigh = xp.zeros_like(dx)
        mie = xp.zeros_like(dx)
        absorption = xp.zeros_like(dx)
        for i in range(sample_count + 1):
            d_i = i * dx
            # Distance between the current sample point and the planet center
            r_i = self.safe_sqrt(d_i * d_i + 2.0 * r * mu * d_i + r * r)
            altitude = r_i - self.bottom_radius
            weight = 0.5 if i == 0 or i == sample_count else 1.0
            rayleigh = rayleigh + self.get_profile_density(a.rayleigh_density, altitude) * weight
            mie = mie + self.get_profile_density(a.mie_density, altitude) * weight
            absorption = absorption + self.get_profile_density(a.absorption_density, altitude) * weight

        return (
            (rayleigh * dx)[..., None] * self.rayleigh_scattering +
            (mie * dx)[..., None] * self.mie_extinction +
            (absorption * dx)[..., None] * self.absorption_extinction
        )

    def get_transmittance_to_top_atmosphere_boundary(self, transmittance_texture, r, mu):
        u, v = self.get_transmittance_texture_uv_from_r_mu(self.asarray(r), self.asarray(mu))
        decode = self._decode_optical_depth if self.optical_depth_transmittance else None
        return self.sample_texture_2d(transmittance_texture, u, v, decode)

    def _transmittance_ratio(self, numerator, denominator):
        xp = self.xp
        return xp.minimum(numerator / xp.maximum(denominator, _MIN_TRANSMITTANCE), 1.0)

    def get_transmittance(self, transmittance_texture, r, mu, d, ray_r_mu_intersects_ground):
        """
        Transmittance between (r, mu) and the point at distance d along the ray,
        as a ratio of two transmittances to the top boundary.
        """
        xp = self.xp
        r = self.asarray(r)
        mu = self.asarray(mu)
        d = self.asarray(d)
        r_d = self.clamp_radius(self.safe_sqrt(d * d + 2.0 * r * mu * d + r * r))
        mu_d = self.clamp_cosine(self.safe_div(r * mu + d, r_d, mu))

        def towards_ground():
            return self._transmittance_ratio(
                self.get_transmittance_to_top_atmosphere_boundary(transmittance_texture, r_d, -mu_d),
                self.get_transmittance_to_top_atmosphere_boundary(transmittance_texture, r, -mu),
            )

        def towards_sky():
            return self._transmittance_ratio(
                self.get_transmittance_to_top_atmosphere_boundary(transmittance_texture, r, mu),
                self.get_transmittance_to_top_atmosphere_boundary(transmittance_texture, r_d, mu_d),
            )

        ground = xp.asarray(ray_r_mu_intersects_ground)
        if ground.ndim == 0:
            return towards_ground() if bool(ground) else towards_sky()
        return xp.where(ground[..., None], towards_ground(), towards_sky())

    def get_transmittance_to_sun(self, transmittance_texture, r, mu_s):
        """Transmittance to the sun, faded over the visible fraction of the sun disc."""
        r = self.asarray(r)
        mu_s = self.asarray(mu_s)
        alpha_s = self.atmosphere.sun_angular_radius
        sin_theta_h = self.safe_div(self.bottom_radius, r, 1.0)
        cos_theta_h = -self.safe_sqrt(1.0 - sin_theta_h * sin_theta_h)
        visible = self.smoothstep(
            -sin_theta_h * alpha_s, sin_theta_h * alpha_s, mu_s - cos_theta_h
        )
        transmittance = self.get_transmittance_to_top_atmosphere_boundary(
            transmittance_texture, r, mu_s
        )
        return transmittance * visible[..., None]

    # ------------------------------------------------------------------
    # Phase functions
    # ------------------------------------------------------------------

    def rayleigh_phase_function(self, nu):
        k = 3.0 / (16.0 * math.pi)
        return k * (1.0 + nu * nu)

    def mie_phase_function(self, g, nu):
        """Cornette-Shanks phase function."""
        k = 3.0 / (8.0 * math.pi) * (1.0 - g * g) / (2.0 + g * g)
        return k * (1.0 + nu * nu) / self.xp.power(1.0 + g * g - 2.0 * g * nu, 1.5)

    # ------------------------------------------------------------------
    # Scattering texture parametrization
    # ------------------------------------------------------------------

    def get_scattering_texture_uvwz_from_r_mu_mu_s_nu(
        self, r, mu, mu_s, nu, ray_r_mu_intersects_ground
    ):
        """
        Map (r, mu, mu_s, nu) to the 4D unit coordinates (u_nu, u_mu_s, u_mu, u_r).

        The mu axis is split in two halves: [0, 0.5) for rays hitting the
        ground, [0.5, 1] for rays reaching the sky.
        """
        xp = self.xp
        opts = self.options
        H = self.horizon_distance
        bottom = self.bottom_radius
        top = self.top_radius
        mu_half = opts.scattering_mu_size // 2

        rho = self.safe_sqrt(r * r - bottom * bottom)
        u_r = self.get_texture_coord_from_unit_range(rho / H, opts.scattering_r_size)

        r_mu = r * mu
        discriminant = r_mu * r_mu - r * r + bottom * bottom

        # Ray towards the ground: distance to the ground, between r - bottom
        # (straight down) and rho (horizon)
        d_ground = -r_mu - self.safe_sqrt(discriminant)
        d_min_ground = r - bottom
        d_max_ground = rho
        x_ground = self.safe_div(
            d_ground - d_min_ground, d_max_ground - d_min_ground, 0.0
        )
        u_mu_ground = 0.5 - 0.5 * self.get_texture_coord_from_unit_range(x_ground, mu_half)

        # Ray towards the sky: distance to the top boundary, between top - r
        # (straight up) and rho + H (grazing the horizon)
        d_sky = -r_mu + self.safe_sqrt(discriminant + H * H)
        d_min_sky = top - r
        d_max_sky = rho + H
        x_sky = (d_sky - d_min_sky) / (d_max_sky - d_min_sky)
        u_mu_sky = 0.5 + 0.5 * self.get_texture_coord_from_unit_range(x_sky, mu_half)

        u_mu = xp.where(ray_r_mu_intersects_ground, u_mu_ground, u_mu_sky)

        d = self.distance_to_top_atmosphere_boundary(bottom, mu_s)
        d_min = top - bottom
        d_max = H
        a = (d - d_min) / (d_max - d_min)
        big_a = self._mu_s_big_a
        u_mu_s = self.get_texture_coord_from_unit_range(
            xp.maximum(1.0 - a / big_a, 0.0) / (1.0 + a), opts.scattering_mu_s_size
        )

        u_nu = (nu + 1.0) / 2.0
        return u_nu, u_mu_s, u_mu, u_r

    def get_r_mu_mu_s_nu_from_scattering_texture_uvwz(self, u_nu, u_mu_s, u_mu, u_r):
        """
        Inverse of :meth:`get_scattering_texture_uvwz_from_r_mu_mu_s_nu`.
        Returns (r, mu, mu_s, nu, ray_r_mu_intersects_ground).
        """
        xp = self.xp
        opts = self.options
        H = self.horizon_distance
        bottom = self.bottom_radius
        top = self.top_radius
        mu_half = opts.scattering_mu_size // 2

        rho = H * self.get_unit_range_from_texture_coord(u_r, opts.scattering_r_size)
        r = xp.sqrt(rho * rho + bottom * bottom)

        ray_r_mu_intersects_ground = u_mu < 0.5

        d_min = r - bottom
        d_max = rho
        d = d_min + (d_max - d_min) * self.get_unit_range_from_texture_coord(
            1.0 - 2.0 * u_mu, mu_half
        )
        mu_ground = self.safe_div(-(rho * rho + d * d), 2.0 * r * d, -1.0)

        d_min = top - r
        d_max = rho + H
        d = d_min + (d_max - d_min) * self.get_unit_range_from_texture_coord(
            2.0 * u_mu - 1.0, mu_half
        )
        mu_sky = self.safe_div(H * H - rho * rho - d * d, 2.0 * r * d, 1.0)

        mu = self.clamp_cosine(xp.where(ray_r_mu_intersects_ground, mu_ground, mu_sky))

        x_mu_s = self.get_unit_range_from_texture_coord(u_mu_s, opts.scattering_mu_s_size)
        d_min = top - bottom
        d_max = H
        big_a = self._mu_s_big_a
        a = (big_a - x_mu_s * big_a) / (1.0 + x_mu_s * big_a)
        d = d_min + xp.minimum(a, big_a) * (d_max - d_min)
        mu_s = self.clamp_cosine(self.safe_div(H * H - d * d, 2.0 * bottom * d, 1.0))

        nu = self.clamp_cosine(u_nu * 2.0 - 1.0)
        return r, mu, mu_s, nu, ray_r_mu_intersects_ground

    def get_r_mu_mu_s_nu_from_scattering_frag_coord(self, frag_x, frag_y, frag_z):
        """
        Decode texel centers of the packed 3D scattering texture.

        ``frag_x`` runs over nu * mu_s (nu major), ``frag_y`` over mu and
        ``frag_z`` over r. nu is clamped to the range allowed by mu and mu_s.
        """
        xp = self.xp
        opts = self.options
        frag_x, frag_y, frag_z = xp.broadcast_arrays(
            self.asarray(frag_x), self.asarray(frag_y), self.asarray(frag_z)
        )
        mu_s_size = opts.scattering_mu_s_size
        frag_nu = xp.floor(frag_x / mu_s_size)
        frag_mu_s = xp.fmod(frag_x, mu_s_size)

        r, mu, mu_s, nu, ray_r_mu_intersects_ground = (
            self.get_r_mu_mu_s_nu_from_scattering_texture_uvwz(
                frag_nu / (opts.scattering_nu_size - 1),
                frag_mu_s / mu_s_size,
                frag_y / opts.scattering_mu_size,
                frag_z / opts.scattering_r_size,
            )
        )
        spread = self.safe_sqrt((1.0 - mu * mu) * (1.0 - mu_s * mu_s))
        nu = xp.minimum(xp.maximum(nu, mu * mu_s - spread), mu * mu_s + spread)
        return r, mu, mu_s, nu, ray_r_mu_intersects_ground

    def get_scattering_lerp_coords(self, r, mu, mu_s, nu, ray_r_mu_intersects_ground):
        """
        3D texture coordinates of the two nu slices bracketing ``nu``.

        Returns (x0, x1, y, z, lerp). The nu axis is interleaved with mu_s in
        x, so it is interpolated here rather than by the texture filter.
        """
        xp = self.xp
        nu_size = self.options.scattering_nu_size
        u_nu, u_mu_s, u_mu, u_r = self.get_scattering_texture_uvwz_from_r_mu_mu_s_nu(
            r, mu, mu_s, nu, ray_r_mu_intersects_ground
        )
        tex_coord_x = u_nu * (nu_size - 1)
        tex_x = xp.floor(tex_coord_x)
        lerp = tex_coord_x - tex_x
        x0 = (tex_x + u_mu_s) / nu_size
        x1 = (tex_x + 1.0 + u_mu_s) / nu_size
        return x0, x1, u_mu, u_r, lerp

    def get_scattering(self, scattering_texture, r, mu, mu_s, nu, ray_r_mu_intersects_ground):
        """Sample a packed scattering texture at (r, mu, mu_s, nu)."""
        x0, x1, y, z, lerp = self.get_scattering_lerp_coords(
            self.asarray(r), self.asarray(mu), self.asarray(mu_s), self.asarray(nu),
            ray_r_mu_intersects_ground,
        )
        lerp = self.xp.asarray(lerp)[..., None]
        return (
            self.sample_texture_3d(scattering_texture, x0, y, z) * (1.0 - lerp) +
            self.sample_texture_3d(scattering_texture, x1, y, z) * lerp
        )

    # ------------------------------------------------------------------
    # Irradiance texture parametrization
    # ------------------------------------------------------------------

    def get_irradiance_texture_uv_from_r_mu_s(self, r, mu_s):
        width, height = self.options.irradiance_size
        x_r = (r - self.bottom_radius) / (self.top_radius - self.bottom_radius)
        x_mu_s = mu_s * 0.5 + 0.5
        return (
            self.get_texture_coord_from_unit_range(x_mu_s, width),
            self.get_texture_coord_from_unit_range(x_r, height),
        )

    def get_r_mu_s_from_irradiance_texture_uv(self, u, v):
        width, height = self.options.irradiance_size
        x_mu_s = self.get_unit_range_from_texture_coord(u, width)
        x_r = self.get_unit_range_from_texture_coord(v, height)
        r = self.bottom_radius + x_r * (self.top_radius - self.bottom_radius)
        mu_s = self.clamp_cosine(2.0 * x_mu_s - 1.0)
        return r, mu_s

    def get_irradiance(self, irradiance_texture, r, mu_s):
        u, v = self.get_irradiance_texture_uv_from_r_mu_s(self.asarray(r), self.asarray(mu_s))
        return self.sample_texture_2d(irradiance_texture, u, v)


def texel_centers(size: int, xp=np):
    """Texel-center coordinates (i + 0.5) for a texture axis."""
    return xp.arange(size, dtype=xp.float64) + 0.5
