"""
Skyscatter Precompute - The six LUT stages of the Bruneton model.

Ported from atmosphere/functions.glsl and model.cc by Eric Bruneton.

Each stage reads and writes named buffers of a :class:`BufferArena`. Work is
vectorized over one radius slice of the scattering texture at a time (or the
whole texture for the 2D LUTs); the quadrature loops run on the host.
"""

import logging
import math

from .buffers import (
    BufferArena,
    TRANSMITTANCE,
    OPTICAL_DEPTH,
    IRRADIANCE,
    SCATTERING,
    SINGLE_MIE_SCATTERING,
    HIGHER_ORDER_SCATTERING,
    DELTA_IRRADIANCE,
    DELTA_RAYLEIGH_SCATTERING,
    DELTA_MIE_SCATTERING,
    DELTA_SCATTERING_DENSITY,
    DELTA_MULTIPLE_SCATTERING,
)
from .constants import (
    TRANSMITTANCE_SAMPLE_COUNT,
    SINGLE_SCATTERING_SAMPLE_COUNT,
    MULTIPLE_SCATTERING_SAMPLE_COUNT,
    SCATTERING_DENSITY_SAMPLE_COUNT,
    INDIRECT_IRRADIANCE_SAMPLE_COUNT,
)
from .functions import AtmosphereFunctions, texel_centers

logger = logging.getLogger(__name__)


class PrecomputeStages:
    """
    Stage math for one run.

    Args:
        functions: Atmosphere math bound to the run's parameters and backend.
            Its ``optical_depth_transmittance`` flag must match the options.
        arena: Buffers of the run
    """

    def __init__(self, functions: AtmosphereFunctions, arena: BufferArena):
        self.functions = functions
        self.arena = arena
        self.options = functions.options
        self.xp = functions.xp
        self._scattering_grid = None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transmittance_input(self):
        """Transmittance as later stages read it (optical depth in log mode)."""
        if self.options.transmittance_precision_log:
            return self.arena.get(OPTICAL_DEPTH)
        return self.arena.get(TRANSMITTANCE)

    def _texel_grid(self, height: int, width: int):
        xp = self.xp
        return xp.meshgrid(
            texel_centers(height, xp), texel_centers(width, xp), indexing='ij'
        )

    def _scattering_slice(self, k: int):
        """(r, mu, mu_s, nu, ray_r_mu_intersects_ground) for depth slice k."""
        if self._scattering_grid is None:
            _, height, width = self.options.scattering_shape
            self._scattering_grid = self._texel_grid(height, width)
        frag_y, frag_x = self._scattering_grid
        return self.functions.get_r_mu_mu_s_nu_from_scattering_frag_coord(
            frag_x, frag_y, k + 0.5
        )

    def _log_slice(self, label: str, k: int) -> None:
        depth = self.options.scattering_r_size
        if (k + 1) % 8 == 0 or k + 1 == depth:
            logger.debug("  %s: %d/%d", label, k + 1, depth)

    def _get_scattering_for_order(self, textures, r, mu, mu_s, nu,
                                  ray_r_mu_intersects_ground, scattering_order: int):
        """
        Radiance of a given scattering order arriving at r from direction mu.

        Order 1 comes from the separate single Rayleigh and Mie deltas with
        their phase functions applied; later orders from delta multiple
        scattering, which already includes them.
        """
        fn = self.functions
        if scattering_order == 1:
            rayleigh_texture, mie_texture = textures
            rayleigh = fn.get_scattering(rayleigh_texture, r, mu, mu_s, nu, ray_r_mu_intersects_ground)
            mie = fn.get_scattering(mie_texture, r, mu, mu_s, nu, ray_r_mu_intersects_ground)
            g = fn.atmosphere.mie_phase_function_g
            return (
                rayleigh * fn.rayleigh_phase_function(nu)[..., None] +
                mie * fn.mie_phase_function(g, nu)[..., None]
            )
        (multiple_texture,) = textures
        return fn.get_scattering(multiple_texture, r, mu, mu_s, nu, ray_r_mu_intersects_ground)

    def _scattering_inputs(self, scattering_order: int):
        if scattering_order == 1:
            return (
                self.arena.get(DELTA_RAYLEIGH_SCATTERING),
                self.arena.get(DELTA_MIE_SCATTERING),
            )
        return (self.arena.get(DELTA_MULTIPLE_SCATTERING),)

    # ------------------------------------------------------------------
    # Transmittance
    # ------------------------------------------------------------------

    def compute_transmittance(self) -> None:
        """Precompute the transmittance LUT (fully vectorized)."""
        xp = self.xp
        fn = self.functions
        height, width = self.options.transmittance_shape
        frag_y, frag_x = self._texel_grid(height, width)

        r, mu = fn.get_r_mu_from_transmittance_texture_uv(frag_x / width, frag_y / height)
        optical_depth = fn.compute_optical_depth_to_top_atmosphere_boundary(
            r, mu, TRANSMITTANCE_SAMPLE_COUNT
        )

        transmittance = self.arena.acquire(TRANSMITTANCE)
        transmittance[...] = xp.exp(-optical_depth)
        if self.options.transmittance_precision_log:
            self.arena.acquire(OPTICAL_DEPTH)[...] = optical_depth

        logger.debug(
            "  Transmittance done, max: %.4f, min: %.6g",
            float(transmittance.max()), float(transmittance.min()),
        )

    # ------------------------------------------------------------------
    # Direct irradiance
    # ------------------------------------------------------------------

    def compute_direct_irradiance(self) -> None:
        """
        Direct sun irradiance on a horizontal surface, into delta irradiance.

        The published irradiance LUT only holds sky irradiance, so it is
        cleared here and left at zero.
        """
        xp = self.xp
        fn = self.functions
        height, width = self.options.irradiance_shape
        frag_y, frag_x = self._texel_grid(height, width)
        r, mu_s = fn.get_r_mu_s_from_irradiance_texture_uv(frag_x / width, frag_y / height)

        alpha_s = fn.atmosphere.sun_angular_radius
        # Approximate average of the cosine factor over the visible sun disc
        average_cosine_factor = xp.where(
            mu_s < -alpha_s,
            0.0,
            xp.where(
                mu_s > alpha_s,
                mu_s,
                fn.safe_div((mu_s + alpha_s) * (mu_s + alpha_s), 4.0 * alpha_s, 0.0),
            ),
        )
        transmittance = fn.get_transmittance_to_top_atmosphere_boundary(
            self._transmittance_input(), r, mu_s
        )

        delta_irradiance = self.arena.acquire(DELTA_IRRADIANCE)
        delta_irradiance[...] = (
            fn.solar_irradiance * transmittance * average_cosine_factor[..., None]
        )
        self.arena.acquire(IRRADIANCE)

    # ------------------------------------------------------------------
    # Single scattering
    # ------------------------------------------------------------------

    def compute_single_scattering_at(self, transmittance_texture, r, mu, mu_s, nu,
                                     ray_r_mu_intersects_ground):
        """
        Single Rayleigh and Mie scattering by numerical integration.
        Returns (rayleigh, mie), each of shape r.shape + (3,).
        """
        xp = self.xp
        fn = self.functions
        a = fn.atmosphere
        sample_count = SINGLE_SCATTERING_SAMPLE_COUNT

        dx = fn.distance_to_nearest_atmosphere_boundary(
            r, mu, ray_r_mu_intersects_ground
        ) / sample_count

        rayleigh_sum = xp.zeros(dx.shape + (3,))
        mie_sum = xp.zeros(dx.shape + (3,))
        for i in range(sample_count + 1):
            d_i = i * dx
            r_d = fn.clamp_radius(fn.safe_sqrt(d_i * d_i + 2.0 * r * mu * d_i + r * r))
            mu_s_d = fn.clamp_cosine((r * mu_s + d_i * nu) / r_d)
            transmittance = (
                fn.get_transmittance(transmittance_texture, r, mu, d_i, ray_r_mu_intersects_ground) *
                fn.get_transmittance_to_sun(transmittance_texture, r_d, mu_s_d)
            )
            altitude = r_d - fn.bottom_radius
            weight = 0.5 if i == 0 or i == sample_count else 1.0
            rayleigh_sum += transmittance * (fn.get_profile_density(a.rayleigh_density, altitude) * weight)[..., None]
            mie_sum += transmittance * (fn.get_profile_density(a.mie_density, altitude) * weight)[..., None]

        rayleigh = rayleigh_sum * dx[..., None] * fn.solar_irradiance * fn.rayleigh_scattering
        mie = mie_sum * dx[..., None] * fn.solar_irradiance * fn.mie_scattering
        return rayleigh, mie

    def compute_single_scattering(self) -> None:
        """Precompute single scattering into the deltas and the scattering LUT."""
        arena = self.arena
        transmittance = self._transmittance_input()

        delta_rayleigh = arena.acquire(DELTA_RAYLEIGH_SCATTERING)
        delta_mie = arena.acquire(DELTA_MIE_SCATTERING)
        scattering = arena.acquire(SCATTERING)
        single_mie = None
        if not self.options.combined_scattering_textures:
            single_mie = arena.acquire(SINGLE_MIE_SCATTERING)
        if self.options.higher_order_scattering_texture:
            arena.acquire(HIGHER_ORDER_SCATTERING)

        for k in range(self.options.scattering_r_size):
            r, mu, mu_s, nu, ground = self._scattering_slice(k)
            rayleigh, mie = self.compute_single_scattering_at(transmittance, r, mu, mu_s, nu, ground)

            delta_rayleigh[k] = rayleigh
            delta_mie[k] = mie
            scattering[k, ..., :3] = rayleigh
            scattering[k, ..., 3] = mie[..., 0]
            if single_mie is not None:
                single_mie[k] = mie
            self._log_slice("Single scattering", k)

    # ------------------------------------------------------------------
    # Scattering density
    # ------------------------------------------------------------------

    def compute_scattering_density_at(self, transmittance_texture, scattering_textures,
                                      irradiance_texture, r, mu, mu_s, nu,
                                      scattering_order: int):
        """
        In-scattered radiance density at (r, mu, mu_s, nu) from light of
        ``scattering_order`` arriving from the whole sphere, including light
        reflected by the ground.
        """
        xp = self.xp
        fn = self.functions
        a = fn.atmosphere
        g = a.mie_phase_function_g
        sample_count = SCATTERING_DENSITY_SAMPLE_COUNT
        dphi = math.pi / sample_count
        dtheta = math.pi / sample_count

        # View direction omega and sun direction omega_s in the local frame
        # where z is the zenith and omega lies in the x-z plane
        omega_x = fn.safe_sqrt(1.0 - mu * mu)
        omega_z = mu
        sun_x = fn.safe_div(nu - mu * mu_s, omega_x, 0.0)
        sun_y = fn.safe_sqrt(1.0 - sun_x * sun_x - mu_s * mu_s)
        sun_z = mu_s

        altitude = r - fn.bottom_radius
        rayleigh_density = fn.get_profile_density(a.rayleigh_density, altitude)
        mie_density = fn.get_profile_density(a.mie_density, altitude)

        rayleigh_mie = xp.zeros(r.shape + (3,))
        for l in range(sample_count):
            theta = (l + 0.5) * dtheta
            cos_theta = math.cos(theta)
            sin_theta = math.sin(theta)
            ray_r_theta_intersects_ground = fn.ray_intersects_ground(r, cos_theta)

            # Ground contribution only exists for directions that hit it
            distance_to_ground = xp.where(
                ray_r_theta_intersects_ground,
                fn.distance_to_bottom_atmosphere_boundary(r, cos_theta),
                0.0,
            )
            transmittance_to_ground = xp.where(
                ray_r_theta_intersects_ground[..., None],
                fn.get_transmittance(transmittance_texture, r, cos_theta, distance_to_ground, True),
                0.0,
            )
            ground_reflectance = transmittance_to_ground * fn.ground_albedo / math.pi

            for m in range(2 * sample_count):
                phi = (m + 0.5) * dphi
                omega_i_x = math.cos(phi) * sin_theta
                omega_i_y = math.sin(phi) * sin_theta
                omega_i_z = cos_theta
                d_omega_i = dtheta * dphi * sin_theta

                nu1 = sun_x * omega_i_x + sun_y * omega_i_y + sun_z * omega_i_z
                incident_radiance = self._get_scattering_for_order(
                    scattering_textures, r, omega_i_z, mu_s, nu1,
                    ray_r_theta_intersects_ground, scattering_order,
                )

                # Normal at the point where omega_i hits the ground
                normal_x = omega_i_x * distance_to_ground
                normal_y = omega_i_y * distance_to_ground
                normal_z = r + omega_i_z * distance_to_ground
                normal_length = xp.sqrt(normal_x * normal_x + normal_y * normal_y + normal_z * normal_z)
                ground_mu_s = (normal_x * sun_x + normal_y * sun_y + normal_z * sun_z) / normal_length
                ground_irradiance = fn.get_irradiance(
                    irradiance_texture, fn.bottom_radius, ground_mu_s
                )
                incident_radiance = incident_radiance + ground_reflectance * ground_irradiance

                nu2 = omega_x * omega_i_x + omega_z * omega_i_z
                rayleigh_phase = rayleigh_density * fn.rayleigh_phase_function(nu2)
                mie_phase = mie_density * fn.mie_phase_function(g, nu2)
                rayleigh_mie += incident_radiance * (
                    fn.rayleigh_scattering * rayleigh_phase[..., None] +
                    fn.mie_scattering * mie_phase[..., None]
                ) * d_omega_i

        return rayleigh_mie

    def compute_scattering_density(self, order: int) -> None:
        """Precompute the scattering density of ``order`` (>= 2)."""
        sample_count = SCATTERING_DENSITY_SAMPLE_COUNT
        logger.debug(
            "  Computing scattering density for order %d (%dx%d samples)",
            order, sample_count, 2 * sample_count,
        )
        transmittance = self._transmittance_input()
        scattering_textures = self._scattering_inputs(order - 1)
        irradiance = self.arena.get(DELTA_IRRADIANCE)
        density = self.arena.acquire(DELTA_SCATTERING_DENSITY)

        for k in range(self.options.scattering_r_size):
            r, mu, mu_s, nu, _ = self._scattering_slice(k)
            density[k] = self.compute_scattering_density_at(
                transmittance, scattering_textures, irradiance,
                r, mu, mu_s, nu, order - 1,
            )
            self._log_slice(f"Scattering density order {order}", k)

    # ------------------------------------------------------------------
    # Indirect irradiance
    # ------------------------------------------------------------------

    def compute_indirect_irradiance_at(self, scattering_textures, r, mu_s,
                                       scattering_order: int):
        """Irradiance on a horizontal surface from sky light of ``scattering_order``."""
        xp = self.xp
        fn = self.functions
        sample_count = INDIRECT_IRRADIANCE_SAMPLE_COUNT
        dphi = math.pi / sample_count
        dtheta = math.pi / sample_count

        omega_s_x = fn.safe_sqrt(1.0 - mu_s * mu_s)
        omega_s_z = mu_s

        result = xp.zeros(mu_s.shape + (3,))
        for j in range(sample_count // 2):
            theta = (j + 0.5) * dtheta
            cos_theta = math.cos(theta)
            sin_theta = math.sin(theta)
            for i in range(2 * sample_count):
                phi = (i + 0.5) * dphi
                omega_x = math.cos(phi) * sin_theta
                omega_z = cos_theta
                d_omega = dtheta * dphi * sin_theta
                nu = omega_x * omega_s_x + omega_z * omega_s_z
                result += self._get_scattering_for_order(
                    scattering_textures, r, omega_z, mu_s, nu, False, scattering_order
                ) * (omega_z * d_omega)
        return result

    def compute_indirect_irradiance(self, order: int) -> None:
        """
        Sky irradiance from scattering order ``order - 1``: stored into delta
        irradiance and accumulated into the irradiance LUT.
        """
        fn = self.functions
        height, width = self.options.irradiance_shape
        frag_y, frag_x = self._texel_grid(height, width)
        r, mu_s = fn.get_r_mu_s_from_irradiance_texture_uv(frag_x / width, frag_y / height)

        result = self.compute_indirect_irradiance_at(
            self._scattering_inputs(order - 1), r, mu_s, order - 1
        )
        delta_irradiance = self.arena.acquire(DELTA_IRRADIANCE)
        delta_irradiance[...] = result
        self.arena.get(IRRADIANCE)[...] += result

    # ------------------------------------------------------------------
    # Multiple scattering
    # ------------------------------------------------------------------

    def compute_multiple_scattering_at(self, transmittance_texture, density_texture,
                                       r, mu, mu_s, nu, ray_r_mu_intersects_ground):
        """Integrate the scattering density along the view ray (trapezoidal)."""
        xp = self.xp
        fn = self.functions
        sample_count = MULTIPLE_SCATTERING_SAMPLE_COUNT

        dx = fn.distance_to_nearest_atmosphere_boundary(
            r, mu, ray_r_mu_intersects_ground
        ) / sample_count

        rayleigh_mie_sum = xp.zeros(dx.shape + (3,))
        for i in range(sample_count + 1):
            d_i = i * dx
            r_i = fn.clamp_radius(fn.safe_sqrt(d_i * d_i + 2.0 * r * mu * d_i + r * r))
            mu_i = fn.clamp_cosine((r * mu + d_i) / r_i)
            mu_s_i = fn.clamp_cosine((r * mu_s + d_i * nu) / r_i)

            rayleigh_mie_i = (
                fn.get_scattering(density_texture, r_i, mu_i, mu_s_i, nu, ray_r_mu_intersects_ground) *
                fn.get_transmittance(transmittance_texture, r, mu, d_i, ray_r_mu_intersects_ground)
            )
            weight = 0.5 if i == 0 or i == sample_count else 1.0
            rayleigh_mie_sum += rayleigh_mie_i * weight

        return rayleigh_mie_sum * dx[..., None]

    def compute_multiple_scattering(self, order: int) -> None:
        """
        Scattering of ``order`` into delta multiple scattering, accumulated
        (divided by the Rayleigh phase function) into the scattering LUTs.
        """
        arena = self.arena
        fn = self.functions
        transmittance = self._transmittance_input()
        density = arena.get(DELTA_SCATTERING_DENSITY)
        scattering = arena.get(SCATTERING)
        higher_order = None
        if self.options.higher_order_scattering_texture:
            higher_order = arena.get(HIGHER_ORDER_SCATTERING)

        # The previous order's inputs are fully consumed at this point; delta
        # multiple scattering takes over the Rayleigh storage.
        arena.release(DELTA_RAYLEIGH_SCATTERING)
        arena.release(DELTA_MIE_SCATTERING)
        arena.release(DELTA_MULTIPLE_SCATTERING)
        delta_multiple = arena.acquire(DELTA_MULTIPLE_SCATTERING)

        for k in range(self.options.scattering_r_size):
            r, mu, mu_s, nu, ground = self._scattering_slice(k)
            radiance = self.compute_multiple_scattering_at(
                transmittance, density, r, mu, mu_s, nu, ground
            )
            delta_multiple[k] = radiance
            contribution = radiance / fn.rayleigh_phase_function(nu)[..., None]
            scattering[k, ..., :3] += contribution
            if higher_order is not None:
                higher_order[k] += contribution
            self._log_slice(f"Multiple scattering order {order}", k)
