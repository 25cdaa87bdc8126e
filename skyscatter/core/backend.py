"""
GPU/CPU Backend Abstraction for Skyscatter Precomputation.

Provides a unified interface that uses CuPy (GPU) when available,
falling back to NumPy (CPU) otherwise. The precompute stages only ever see
``backend.xp`` plus the allocation, transfer and barrier primitives below.
"""

import logging

import numpy as np

logger = logging.getLogger(__name__)

# Try to import CuPy
try:
    import cupy as cp
    CUPY_AVAILABLE = True
except ImportError:
    cp = None
    CUPY_AVAILABLE = False


class ComputeBackend:
    """
    Backend abstraction for array operations.

    Uses CuPy (GPU) if available and requested, otherwise NumPy (CPU).
    """

    def __init__(self, use_gpu: bool = False):
        """
        Initialize compute backend.

        Args:
            use_gpu: If True, use GPU (CuPy) when available
        """
        self.use_gpu = use_gpu and CUPY_AVAILABLE
        self.xp = cp if self.use_gpu else np

        if self.use_gpu:
            logger.info("Using GPU backend (CuPy) - Device: %s", cp.cuda.Device().id)
        elif use_gpu:
            logger.info("CuPy not available, using CPU backend (NumPy)")
        else:
            logger.debug("Using CPU backend (NumPy)")

    @property
    def name(self) -> str:
        """Get backend name."""
        return "CuPy (GPU)" if self.use_gpu else "NumPy (CPU)"

    def zeros(self, shape, dtype=np.float32):
        """Create zero-filled array."""
        return self.xp.zeros(shape, dtype=dtype)

    def asarray(self, x, dtype=np.float64):
        """Convert host values to a backend array."""
        return self.xp.asarray(x, dtype=dtype)

    def to_numpy(self, x):
        """Convert array to NumPy (for output/saving)."""
        if self.use_gpu:
            return cp.asnumpy(x)
        return np.asarray(x)

    def synchronize(self):
        """Synchronize GPU (no-op for CPU)."""
        if self.use_gpu:
            cp.cuda.Stream.null.synchronize()


def is_gpu_available() -> bool:
    """Check if GPU (CuPy) is available."""
    return CUPY_AVAILABLE
