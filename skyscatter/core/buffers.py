"""
Skyscatter Buffers - Named buffer arena for one precomputation run.

Every LUT and scratch ("delta") texture is owned by a :class:`BufferArena`
and addressed by name. Scratch buffers have explicit lifetimes:
:meth:`BufferArena.acquire` starts one (zero-cleared), :meth:`BufferArena.release`
ends it. ``delta_multiple_scattering`` shares storage with
``delta_rayleigh_scattering``; acquiring one while the other is live raises
:class:`~skyscatter.errors.BufferLifetimeError`.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Set, Tuple

import numpy as np

from ..errors import BufferLifetimeError
from .backend import ComputeBackend
from .parameters import PrecomputeOptions

logger = logging.getLogger(__name__)

TRANSMITTANCE = "transmittance"
OPTICAL_DEPTH = "optical_depth"
IRRADIANCE = "irradiance"
SCATTERING = "scattering"
SINGLE_MIE_SCATTERING = "single_mie_scattering"
HIGHER_ORDER_SCATTERING = "higher_order_scattering"
DELTA_IRRADIANCE = "delta_irradiance"
DELTA_RAYLEIGH_SCATTERING = "delta_rayleigh_scattering"
DELTA_MIE_SCATTERING = "delta_mie_scattering"
DELTA_SCATTERING_DENSITY = "delta_scattering_density"
DELTA_MULTIPLE_SCATTERING = "delta_multiple_scattering"

# Buffer name -> storage it lives in
ALIASES = {
    DELTA_MULTIPLE_SCATTERING: DELTA_RAYLEIGH_SCATTERING,
}


@dataclass(frozen=True)
class BufferSpec:
    """Shape of one named storage block (channels last)."""
    name: str
    shape: Tuple[int, ...]


def buffer_specs(options: PrecomputeOptions) -> Dict[str, BufferSpec]:
    """Storage blocks a run with ``options`` needs."""
    transmittance = options.transmittance_shape
    irradiance = options.irradiance_shape
    scattering = options.scattering_shape

    specs = [
        BufferSpec(TRANSMITTANCE, transmittance + (3,)),
        BufferSpec(IRRADIANCE, irradiance + (3,)),
        BufferSpec(SCATTERING, scattering + (4,)),
        BufferSpec(DELTA_IRRADIANCE, irradiance + (3,)),
        BufferSpec(DELTA_RAYLEIGH_SCATTERING, scattering + (3,)),
        BufferSpec(DELTA_MIE_SCATTERING, scattering + (3,)),
        BufferSpec(DELTA_SCATTERING_DENSITY, scattering + (3,)),
    ]
    if options.transmittance_precision_log:
        specs.append(BufferSpec(OPTICAL_DEPTH, transmittance + (3,)))
    if not options.combined_scattering_textures:
        specs.append(BufferSpec(SINGLE_MIE_SCATTERING, scattering + (3,)))
    if options.higher_order_scattering_texture:
        specs.append(BufferSpec(HIGHER_ORDER_SCATTERING, scattering + (3,)))
    return {spec.name: spec for spec in specs}


class BufferArena:
    """
    Owns the textures of a single precomputation run.

    Storage is allocated up front; a buffer is readable only between
    ``acquire`` and ``release``.
    """

    def __init__(self, backend: ComputeBackend, options: PrecomputeOptions,
                 dtype=np.float32):
        self.backend = backend
        self.options = options
        self.specs = buffer_specs(options)
        self._storage = {
            name: backend.zeros(spec.shape, dtype=dtype)
            for name, spec in self.specs.items()
        }
        self._live: Set[str] = set()
        self._disposed = False
        logger.debug(
            "Allocated %d buffers (%.1f MB)", len(self._storage), self.nbytes / 1024 ** 2
        )

    @property
    def nbytes(self) -> int:
        return sum(int(array.nbytes) for array in self._storage.values())

    @property
    def live(self) -> Set[str]:
        return set(self._live)

    @staticmethod
    def storage_name(name: str) -> str:
        return ALIASES.get(name, name)

    def has(self, name: str) -> bool:
        return self.storage_name(name) in self.specs

    def _sharing(self, name: str):
        storage = self.storage_name(name)
        for other in self._live:
            if other != name and self.storage_name(other) == storage:
                yield other

    def acquire(self, name: str, clear: bool = True):
        """
        Start the lifetime of ``name`` and return its array.

        Raises:
            BufferLifetimeError: If a buffer sharing the same storage is live.
        """
        self._check_not_disposed()
        storage = self.storage_name(name)
        if storage not in self._storage:
            raise KeyError(f"Unknown buffer '{name}'")
        conflicts = list(self._sharing(name))
        if conflicts:
            raise BufferLifetimeError(
                f"Cannot acquire '{name}': storage '{storage}' is still live as {conflicts}"
            )
        array = self._storage[storage]
        if clear:
            array.fill(0)
        self._live.add(name)
        return array

    def release(self, name: str) -> None:
        """End the lifetime of ``name``; its storage may be reused afterwards."""
        self._live.discard(name)

    def get(self, name: str):
        """Array of a live buffer."""
        self._check_not_disposed()
        if name not in self._live:
            raise BufferLifetimeError(f"Buffer '{name}' is not live")
        return self._storage[self.storage_name(name)]

    def get_optional(self, name: str) -> Optional[object]:
        if not self.has(name):
            return None
        return self.get(name)

    def clear(self, name: str) -> None:
        self.get(name).fill(0)

    def dispose(self) -> None:
        """Drop all storage; later access raises."""
        self._storage.clear()
        self._live.clear()
        self._disposed = True

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _check_not_disposed(self) -> None:
        if self._disposed:
            raise BufferLifetimeError("Buffer arena has been disposed")
