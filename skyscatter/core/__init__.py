"""
Skyscatter Core - Atmospheric scattering model implementation.
"""

from .backend import ComputeBackend, CUPY_AVAILABLE, is_gpu_available
from .parameters import (
    AtmosphereParameters,
    AtmosphereUniforms,
    DensityProfile,
    DensityProfileLayer,
    PrecomputeOptions,
)
from .functions import AtmosphereFunctions
from .buffers import BufferArena
from .precompute import PrecomputeStages
from .model import (
    AtmosphereModel,
    PrecomputedTextures,
    PrecomputeState,
    PrecomputeTask,
)
from . import runtime
