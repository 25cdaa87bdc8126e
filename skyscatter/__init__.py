"""
Skyscatter - Precomputed atmospheric scattering.

Implements Eric Bruneton's Precomputed Atmospheric Scattering: the
transmittance, scattering and irradiance lookup tables and the sky radiance,
aerial perspective and irradiance queries that read them.

Based on work by Eric Bruneton (BSD License)
"""

__version__ = "1.0.0"

from .core import (
    AtmosphereModel,
    AtmosphereParameters,
    DensityProfile,
    DensityProfileLayer,
    PrecomputedTextures,
    PrecomputeOptions,
    PrecomputeState,
    PrecomputeTask,
)
from .errors import (
    SkyscatterError,
    AtmosphereConfigError,
    PrecomputeInProgressError,
    PrecomputeCancelledError,
    ModelNotInitializedError,
    LUTFormatError,
    BufferLifetimeError,
)
