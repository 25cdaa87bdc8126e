"""
Skyscatter Parameters - Atmosphere and precomputation parameter structures.

Public values are SI (meters, radians, m^-1). The LUT math runs in
``length_unit_in_meters`` units; :meth:`AtmosphereParameters.uniforms`
produces that scaled, read-only view.
"""

import math
from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np

from ..errors import AtmosphereConfigError
from .constants import (
    EARTH_RADIUS,
    EARTH_TOP_RADIUS,
    SUN_ANGULAR_RADIUS,
    SOLAR_IRRADIANCE,
    RAYLEIGH_SCALE_HEIGHT,
    RAYLEIGH_SCATTERING_COEFFICIENTS,
    MIE_SCALE_HEIGHT,
    MIE_SCATTERING_COEFFICIENT,
    MIE_EXTINCTION_COEFFICIENT,
    MIE_PHASE_FUNCTION_G,
    OZONE_CENTER_ALTITUDE,
    OZONE_WIDTH,
    OZONE_ABSORPTION_COEFFICIENTS,
    DEFAULT_GROUND_ALBEDO,
    MAX_SUN_ZENITH_ANGLE,
    SUN_RADIANCE_TO_LUMINANCE,
    SKY_RADIANCE_TO_LUMINANCE,
    LUMINANCE_COEFFICIENTS,
    LENGTH_UNIT_IN_METERS,
    TRANSMITTANCE_TEXTURE_WIDTH,
    TRANSMITTANCE_TEXTURE_HEIGHT,
    IRRADIANCE_TEXTURE_WIDTH,
    IRRADIANCE_TEXTURE_HEIGHT,
    SCATTERING_TEXTURE_R_SIZE,
    SCATTERING_TEXTURE_MU_SIZE,
    SCATTERING_TEXTURE_MU_S_SIZE,
    SCATTERING_TEXTURE_NU_SIZE,
)


@dataclass(frozen=True)
class DensityProfileLayer:
    """
    An atmosphere layer whose density is defined as:
        exp_term * exp(exp_scale * h) + linear_term * h + constant_term
    clamped to [0, 1], where h is the altitude above the bottom radius.

    Attributes:
        width: Layer width (only meaningful for the lower layer)
        exp_term: Exponential term coefficient (unitless)
        exp_scale: Exponential scale, inverse length
        linear_term: Linear term coefficient, inverse length
        constant_term: Constant term (unitless)
    """
    width: float = 0.0
    exp_term: float = 0.0
    exp_scale: float = 0.0
    linear_term: float = 0.0
    constant_term: float = 0.0

    def get_density(self, altitude, xp=np):
        """Compute density at given altitude within this layer."""
        density = (
            self.exp_term * xp.exp(self.exp_scale * altitude) +
            self.linear_term * altitude +
            self.constant_term
        )
        return xp.clip(density, 0.0, 1.0)

    def scaled(self, length_unit: float) -> 'DensityProfileLayer':
        """Return this layer expressed in a length unit of ``length_unit`` meters."""
        return DensityProfileLayer(
            width=self.width / length_unit,
            exp_term=self.exp_term,
            exp_scale=self.exp_scale * length_unit,
            linear_term=self.linear_term * length_unit,
            constant_term=self.constant_term,
        )


@dataclass(frozen=True)
class DensityProfile:
    """
    Two-layer vertical density profile.

    The lower layer applies below ``layers[0].width``, the upper layer
    everywhere above it. Both are evaluated at the absolute altitude.
    """
    layers: Tuple[DensityProfileLayer, DensityProfileLayer]

    def __post_init__(self):
        layers = tuple(self.layers)
        if len(layers) != 2:
            raise AtmosphereConfigError(
                "density profile",
                f"expected exactly 2 layers, got {len(layers)}",
                ["Use DensityProfileLayer() (all zeros) as a placeholder lower layer"],
            )
        object.__setattr__(self, 'layers', layers)

    @classmethod
    def exponential(cls, scale_height: float) -> 'DensityProfile':
        """Single exponential falloff exp(-h / scale_height)."""
        return cls((
            DensityProfileLayer(),
            DensityProfileLayer(exp_term=1.0, exp_scale=-1.0 / scale_height),
        ))

    @classmethod
    def ozone(cls, center_altitude: float = OZONE_CENTER_ALTITUDE,
              width: float = OZONE_WIDTH) -> 'DensityProfile':
        """Tent profile peaking at ``center_altitude`` and reaching 0 at +-width."""
        return cls((
            DensityProfileLayer(
                width=center_altitude,
                linear_term=1.0 / width,
                constant_term=1.0 - center_altitude / width,
            ),
            DensityProfileLayer(
                linear_term=-1.0 / width,
                constant_term=1.0 + center_altitude / width,
            ),
        ))

    def get_density(self, altitude, xp=np):
        """Get density at altitude. Supports both scalar and array inputs."""
        lower, upper = self.layers
        return xp.where(
            altitude < lower.width,
            lower.get_density(altitude, xp),
            upper.get_density(altitude, xp),
        )

    def scaled(self, length_unit: float) -> 'DensityProfile':
        return DensityProfile(tuple(layer.scaled(length_unit) for layer in self.layers))

    def iter_coefficients(self):
        for layer in self.layers:
            yield from (layer.exp_term, layer.linear_term, layer.constant_term)


def _as_density_profile(value) -> DensityProfile:
    if isinstance(value, DensityProfile):
        return value
    return DensityProfile(tuple(value))


@dataclass(frozen=True)
class AtmosphereUniforms:
    """
    Read-only view of the atmosphere in LUT length units.

    Every stage and runtime function reads this. One snapshot is taken per
    precomputation run.
    """
    bottom_radius: float
    top_radius: float
    solar_irradiance: np.ndarray
    sun_angular_radius: float
    rayleigh_density: DensityProfile
    rayleigh_scattering: np.ndarray
    mie_density: DensityProfile
    mie_scattering: np.ndarray
    mie_extinction: np.ndarray
    mie_phase_function_g: float
    absorption_density: DensityProfile
    absorption_extinction: np.ndarray
    ground_albedo: np.ndarray
    min_cos_sun: float
    sun_radiance_to_luminance: np.ndarray
    sky_radiance_to_luminance: np.ndarray
    luminance_scale: float
    length_unit_in_meters: float
    constrain_camera_above_ground: bool = True
    hide_ground: bool = False

    @property
    def horizon_distance(self) -> float:
        """Distance to the horizon from the top boundary (H)."""
        return math.sqrt(self.top_radius ** 2 - self.bottom_radius ** 2)


@dataclass
class AtmosphereParameters:
    """
    Complete atmosphere parameters for the Bruneton model.

    All spatial values are in meters unless otherwise noted.
    Scattering/extinction coefficients are in m^-1.
    """

    # Solar irradiance at top of atmosphere
    solar_irradiance: np.ndarray = field(default_factory=lambda: SOLAR_IRRADIANCE.copy())

    # Sun angular radius (radians)
    sun_angular_radius: float = SUN_ANGULAR_RADIUS

    # Planet geometry
    bottom_radius: float = EARTH_RADIUS  # Planet surface radius (m)
    top_radius: float = EARTH_TOP_RADIUS  # Top of atmosphere radius (m)

    # Rayleigh scattering (air molecules)
    rayleigh_density: DensityProfile = field(
        default_factory=lambda: DensityProfile.exponential(RAYLEIGH_SCALE_HEIGHT)
    )
    rayleigh_scattering: np.ndarray = field(
        default_factory=lambda: RAYLEIGH_SCATTERING_COEFFICIENTS.copy()
    )

    # Mie scattering (aerosols)
    mie_density: DensityProfile = field(
        default_factory=lambda: DensityProfile.exponential(MIE_SCALE_HEIGHT)
    )
    mie_scattering: np.ndarray = field(
        default_factory=lambda: np.array([MIE_SCATTERING_COEFFICIENT] * 3)
    )
    mie_extinction: np.ndarray = field(
        default_factory=lambda: np.array([MIE_EXTINCTION_COEFFICIENT] * 3)
    )
    mie_phase_function_g: float = MIE_PHASE_FUNCTION_G

    # Absorption (ozone layer)
    absorption_density: DensityProfile = field(default_factory=DensityProfile.ozone)
    absorption_extinction: np.ndarray = field(
        default_factory=lambda: OZONE_ABSORPTION_COEFFICIENTS.copy()
    )

    # Ground albedo at each wavelength
    ground_albedo: np.ndarray = field(
        default_factory=lambda: np.array([DEFAULT_GROUND_ALBEDO] * 3)
    )

    # Maximum sun zenith angle for precomputation (radians)
    max_sun_zenith_angle: float = MAX_SUN_ZENITH_ANGLE

    # Radiance to luminance conversion
    sun_radiance_to_luminance: np.ndarray = field(
        default_factory=lambda: SUN_RADIANCE_TO_LUMINANCE.copy()
    )
    sky_radiance_to_luminance: np.ndarray = field(
        default_factory=lambda: SKY_RADIANCE_TO_LUMINANCE.copy()
    )
    luminance_scale: Optional[float] = None  # None = normalize sun luminance to 1

    # Length unit the LUT math runs in (1.0 = meters, 1000.0 = kilometers)
    length_unit_in_meters: float = LENGTH_UNIT_IN_METERS

    # Runtime options (do not require a LUT rebuild)
    constrain_camera_above_ground: bool = True
    hide_ground: bool = False

    def __post_init__(self):
        """Coerce arrays and profiles, then validate."""
        self.solar_irradiance = np.asarray(self.solar_irradiance, dtype=np.float64)
        self.rayleigh_scattering = np.asarray(self.rayleigh_scattering, dtype=np.float64)
        self.mie_scattering = np.asarray(self.mie_scattering, dtype=np.float64)
        self.mie_extinction = np.asarray(self.mie_extinction, dtype=np.float64)
        self.absorption_extinction = np.asarray(self.absorption_extinction, dtype=np.float64)
        self.ground_albedo = np.asarray(self.ground_albedo, dtype=np.float64)
        self.sun_radiance_to_luminance = np.asarray(self.sun_radiance_to_luminance, dtype=np.float64)
        self.sky_radiance_to_luminance = np.asarray(self.sky_radiance_to_luminance, dtype=np.float64)
        self.rayleigh_density = _as_density_profile(self.rayleigh_density)
        self.mie_density = _as_density_profile(self.mie_density)
        self.absorption_density = _as_density_profile(self.absorption_density)
        if self.luminance_scale is None:
            self.luminance_scale = 1.0 / float(
                np.dot(LUMINANCE_COEFFICIENTS, self.sun_radiance_to_luminance)
            )
        self.validate()

    def validate(self) -> None:
        """
        Check the configuration.

        Raises:
            AtmosphereConfigError: On the first invalid field.
        """
        if not (0.0 < self.bottom_radius < self.top_radius):
            raise AtmosphereConfigError(
                "radii",
                f"need 0 < bottom_radius < top_radius, got {self.bottom_radius} and {self.top_radius}",
            )
        if self.length_unit_in_meters <= 0.0:
            raise AtmosphereConfigError("length_unit_in_meters", "must be positive")
        if not 0.0 <= self.sun_angular_radius < math.pi / 2:
            raise AtmosphereConfigError("sun_angular_radius", "must be in [0, pi/2)")
        if not -1.0 < self.mie_phase_function_g < 1.0:
            raise AtmosphereConfigError(
                "mie_phase_function_g",
                f"must be in (-1, 1), got {self.mie_phase_function_g}",
            )
        if not 0.0 < self.max_sun_zenith_angle <= math.pi:
            raise AtmosphereConfigError("max_sun_zenith_angle", "must be in (0, pi]")

        for name in (
            'solar_irradiance', 'rayleigh_scattering', 'mie_scattering',
            'mie_extinction', 'absorption_extinction', 'ground_albedo',
            'sun_radiance_to_luminance', 'sky_radiance_to_luminance',
        ):
            value = getattr(self, name)
            if value.shape != (3,):
                raise AtmosphereConfigError(name, f"expected 3 RGB components, got shape {value.shape}")
            if not np.all(np.isfinite(value)) or np.any(value < 0.0):
                raise AtmosphereConfigError(name, "components must be finite and non-negative")

        for name in ('rayleigh_density', 'mie_density', 'absorption_density'):
            coefficients = list(getattr(self, name).iter_coefficients())
            if not all(math.isfinite(c) for c in coefficients):
                raise AtmosphereConfigError(name, "layer terms must be finite")

        if self.rayleigh_scattering[0] <= 0.0 or self.mie_scattering[0] <= 0.0:
            raise AtmosphereConfigError(
                "scattering coefficients",
                "red Rayleigh and Mie scattering must be positive",
                ["Single Mie is extrapolated from the red channel ratio"],
            )

    @property
    def min_cos_sun(self) -> float:
        """Cosine of the maximum precomputed sun zenith angle."""
        return math.cos(self.max_sun_zenith_angle)

    @classmethod
    def earth_default(cls, use_ozone: bool = True) -> 'AtmosphereParameters':
        """Create default Earth atmosphere parameters."""
        params = cls()
        if not use_ozone:
            params.absorption_extinction = np.zeros(3, dtype=np.float64)
        return params

    @classmethod
    def from_artistic_controls(
        cls,
        rayleigh_density_scale: float = 1.0,
        mie_density_scale: float = 1.0,
        mie_phase_g: float = MIE_PHASE_FUNCTION_G,
        rayleigh_height: float = RAYLEIGH_SCALE_HEIGHT,
        mie_height: float = MIE_SCALE_HEIGHT,
        ground_albedo: float = DEFAULT_GROUND_ALBEDO,
        use_ozone: bool = True,
        ozone_density: float = 1.0,
        mie_angstrom_beta: float = 0.04,
    ) -> 'AtmosphereParameters':
        """
        Create atmosphere parameters from artistic control values.

        Args:
            rayleigh_density_scale: Multiplier for air molecule density
            mie_density_scale: Multiplier for aerosol density
            mie_phase_g: Mie phase function asymmetry parameter
            rayleigh_height: Scale height for air molecules (meters)
            mie_height: Scale height for aerosols (meters)
            ground_albedo: Ground reflectivity (0-1)
            use_ozone: Include ozone absorption layer
            ozone_density: Multiplier for ozone absorption (affects sunset colors)
            mie_angstrom_beta: Aerosol optical thickness (higher = denser haze)
        """
        mie_scale = mie_density_scale
        # Default beta is 0.04, so 0.08 doubles the Mie coefficients
        if mie_angstrom_beta > 0:
            mie_scale *= mie_angstrom_beta / 0.04

        if not use_ozone or ozone_density <= 0:
            absorption = np.zeros(3, dtype=np.float64)
        else:
            absorption = OZONE_ABSORPTION_COEFFICIENTS * ozone_density

        return cls(
            rayleigh_density=DensityProfile.exponential(rayleigh_height),
            rayleigh_scattering=RAYLEIGH_SCATTERING_COEFFICIENTS * rayleigh_density_scale,
            mie_density=DensityProfile.exponential(mie_height),
            mie_scattering=np.array([MIE_SCATTERING_COEFFICIENT * mie_scale] * 3),
            mie_extinction=np.array([MIE_EXTINCTION_COEFFICIENT * mie_scale] * 3),
            mie_phase_function_g=float(np.clip(mie_phase_g, -0.999, 0.999)),
            absorption_extinction=absorption,
            ground_albedo=np.array([ground_albedo] * 3),
        )

    def get_atmosphere_height(self) -> float:
        """Return the atmosphere thickness in meters."""
        return self.top_radius - self.bottom_radius

    def uniforms(self) -> AtmosphereUniforms:
        """Snapshot these parameters in LUT length units."""
        self.validate()
        unit = self.length_unit_in_meters
        return AtmosphereUniforms(
            bottom_radius=self.bottom_radius / unit,
            top_radius=self.top_radius / unit,
            solar_irradiance=self.solar_irradiance.copy(),
            sun_angular_radius=float(self.sun_angular_radius),
            rayleigh_density=self.rayleigh_density.scaled(unit),
            rayleigh_scattering=self.rayleigh_scattering * unit,
            mie_density=self.mie_density.scaled(unit),
            mie_scattering=self.mie_scattering * unit,
            mie_extinction=self.mie_extinction * unit,
            mie_phase_function_g=float(self.mie_phase_function_g),
            absorption_density=self.absorption_density.scaled(unit),
            absorption_extinction=self.absorption_extinction * unit,
            ground_albedo=self.ground_albedo.copy(),
            min_cos_sun=self.min_cos_sun,
            sun_radiance_to_luminance=self.sun_radiance_to_luminance.copy(),
            sky_radiance_to_luminance=self.sky_radiance_to_luminance.copy(),
            luminance_scale=float(self.luminance_scale),
            length_unit_in_meters=float(unit),
            constrain_camera_above_ground=bool(self.constrain_camera_above_ground),
            hide_ground=bool(self.hide_ground),
        )


@dataclass
class PrecomputeOptions:
    """
    Texture sizes and feature flags of a LUT set.

    ``scattering_size`` is ordered (r, mu, mu_s, nu). The packed 3D scattering
    texture has shape (r, mu, nu * mu_s).
    """
    transmittance_size: Tuple[int, int] = (TRANSMITTANCE_TEXTURE_WIDTH, TRANSMITTANCE_TEXTURE_HEIGHT)
    irradiance_size: Tuple[int, int] = (IRRADIANCE_TEXTURE_WIDTH, IRRADIANCE_TEXTURE_HEIGHT)
    scattering_size: Tuple[int, int, int, int] = (
        SCATTERING_TEXTURE_R_SIZE,
        SCATTERING_TEXTURE_MU_SIZE,
        SCATTERING_TEXTURE_MU_S_SIZE,
        SCATTERING_TEXTURE_NU_SIZE,
    )
    transmittance_precision_log: bool = False
    combined_scattering_textures: bool = True
    higher_order_scattering_texture: bool = True

    def __post_init__(self):
        self.transmittance_size = tuple(int(v) for v in self.transmittance_size)
        self.irradiance_size = tuple(int(v) for v in self.irradiance_size)
        self.scattering_size = tuple(int(v) for v in self.scattering_size)
        self.validate()

    def validate(self) -> None:
        for name, size, rank in (
            ('transmittance_size', self.transmittance_size, 2),
            ('irradiance_size', self.irradiance_size, 2),
            ('scattering_size', self.scattering_size, 4),
        ):
            if len(size) != rank:
                raise AtmosphereConfigError(name, f"expected {rank} entries, got {len(size)}")
            if any(v < 2 for v in size):
                raise AtmosphereConfigError(name, f"every entry must be at least 2, got {size}")
        if self.scattering_mu_size % 2:
            raise AtmosphereConfigError(
                "scattering_size",
                f"mu size must be even, got {self.scattering_mu_size}",
                ["The mu axis is split into ground and sky halves"],
            )

    @property
    def scattering_r_size(self) -> int:
        return self.scattering_size[0]

    @property
    def scattering_mu_size(self) -> int:
        return self.scattering_size[1]

    @property
    def scattering_mu_s_size(self) -> int:
        return self.scattering_size[2]

    @property
    def scattering_nu_size(self) -> int:
        return self.scattering_size[3]

    @property
    def transmittance_shape(self) -> Tuple[int, int]:
        """(height, width) of the transmittance texture."""
        width, height = self.transmittance_size
        return (height, width)

    @property
    def irradiance_shape(self) -> Tuple[int, int]:
        """(height, width) of the irradiance texture."""
        width, height = self.irradiance_size
        return (height, width)

    @property
    def scattering_shape(self) -> Tuple[int, int, int]:
        """(depth, height, width) of the packed scattering texture."""
        r_size, mu_size, mu_s_size, nu_size = self.scattering_size
        return (r_size, mu_size, nu_size * mu_s_size)

    @classmethod
    def from_sizes(cls, sizes: Sequence[int], **flags) -> 'PrecomputeOptions':
        """Build options from a flat (tW, tH, iW, iH, r, mu, mu_s, nu) sequence."""
        sizes = [int(v) for v in sizes]
        return cls(
            transmittance_size=tuple(sizes[0:2]),
            irradiance_size=tuple(sizes[2:4]),
            scattering_size=tuple(sizes[4:8]),
            **flags,
        )

    def flat_sizes(self) -> Tuple[int, ...]:
        return self.transmittance_size + self.irradiance_size + self.scattering_size
