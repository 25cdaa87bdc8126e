"""
Skyscatter Constants - Default texture sizes, quadrature counts and Earth values.

All physical quantities are SI (meters, radians, m^-1).
"""

import numpy as np

# Texture sizes
TRANSMITTANCE_TEXTURE_WIDTH = 256   # mu
TRANSMITTANCE_TEXTURE_HEIGHT = 64   # r

SCATTERING_TEXTURE_R_SIZE = 32
SCATTERING_TEXTURE_MU_SIZE = 128
SCATTERING_TEXTURE_MU_S_SIZE = 32
SCATTERING_TEXTURE_NU_SIZE = 8

IRRADIANCE_TEXTURE_WIDTH = 64    # mu_s
IRRADIANCE_TEXTURE_HEIGHT = 16   # r

# Quadrature
TRANSMITTANCE_SAMPLE_COUNT = 500
SINGLE_SCATTERING_SAMPLE_COUNT = 50
MULTIPLE_SCATTERING_SAMPLE_COUNT = 50
SCATTERING_DENSITY_SAMPLE_COUNT = 16     # polar; azimuth uses twice as many
INDIRECT_IRRADIANCE_SAMPLE_COUNT = 32    # half used for polar, twice for azimuth

DEFAULT_SCATTERING_ORDERS = 4

# Earth
EARTH_RADIUS = 6360000.0
EARTH_TOP_RADIUS = 6420000.0

SUN_ANGULAR_RADIUS = 0.004675
SOLAR_IRRADIANCE = np.array([1.474, 1.8504, 1.91198])

RAYLEIGH_SCALE_HEIGHT = 8000.0
RAYLEIGH_SCATTERING_COEFFICIENTS = np.array([5.802e-6, 13.558e-6, 33.1e-6])

MIE_SCALE_HEIGHT = 1200.0
MIE_SCATTERING_COEFFICIENT = 3.996e-6
MIE_EXTINCTION_COEFFICIENT = 4.44e-6
MIE_PHASE_FUNCTION_G = 0.8

# Ozone: tent profile peaking at 25 km, 30 km wide
OZONE_CENTER_ALTITUDE = 25000.0
OZONE_WIDTH = 15000.0
OZONE_ABSORPTION_COEFFICIENTS = np.array([0.65e-6, 1.881e-6, 0.085e-6])

DEFAULT_GROUND_ALBEDO = 0.1
MAX_SUN_ZENITH_ANGLE = np.deg2rad(102.0)

# Radiance to luminance (lm/W), for the default solar spectrum
SUN_RADIANCE_TO_LUMINANCE = np.array([98242.786222, 69954.398112, 66475.012354])
SKY_RADIANCE_TO_LUMINANCE = np.array([114974.91644, 71305.954816, 65310.548555])
LUMINANCE_COEFFICIENTS = np.array([0.2126, 0.7152, 0.0722])

# Unit the LUT math runs in (kilometers)
LENGTH_UNIT_IN_METERS = 1000.0
