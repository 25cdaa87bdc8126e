"""
Skyscatter Atmosphere Model - LUT orchestration and published textures.

Ported from atmosphere/model.cc by Eric Bruneton

This module handles:
- Sequencing the precompute stages into resumable units
- Publishing the LUT set after a successful run
- Saving and loading LUT sets
"""

import enum
import logging
import os
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple

import numpy as np

from ..errors import (
    ModelNotInitializedError,
    PrecomputeCancelledError,
    PrecomputeInProgressError,
)
from ..utils import io as lut_io
from .backend import ComputeBackend
from .buffers import (
    BufferArena,
    TRANSMITTANCE,
    IRRADIANCE,
    SCATTERING,
    SINGLE_MIE_SCATTERING,
    HIGHER_ORDER_SCATTERING,
)
from .constants import DEFAULT_SCATTERING_ORDERS
from .functions import AtmosphereFunctions
from .parameters import AtmosphereParameters, AtmosphereUniforms, PrecomputeOptions
from .precompute import PrecomputeStages
from . import runtime

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


@dataclass
class PrecomputedTextures:
    """Container for precomputed LUT textures (host arrays, channels last)."""
    transmittance: np.ndarray  # Shape: (H, W, 3)
    scattering: np.ndarray     # Shape: (R, MU, NU * MU_S, 4) - rayleigh.rgb, mie.r
    irradiance: np.ndarray     # Shape: (H, W, 3) - sky irradiance only
    single_mie_scattering: Optional[np.ndarray] = None    # (R, MU, NU * MU_S, 3) if separate
    higher_order_scattering: Optional[np.ndarray] = None  # (R, MU, NU * MU_S, 3), orders >= 2
    options: Optional[PrecomputeOptions] = None

    def as_dict(self) -> dict:
        """LUT name -> array, optional LUTs included only when present."""
        luts = {
            TRANSMITTANCE: self.transmittance,
            SCATTERING: self.scattering,
            IRRADIANCE: self.irradiance,
        }
        if self.single_mie_scattering is not None:
            luts[SINGLE_MIE_SCATTERING] = self.single_mie_scattering
        if self.higher_order_scattering is not None:
            luts[HIGHER_ORDER_SCATTERING] = self.higher_order_scattering
        return luts

    @classmethod
    def from_dict(cls, luts: dict, options: PrecomputeOptions) -> 'PrecomputedTextures':
        return cls(
            transmittance=luts[TRANSMITTANCE],
            scattering=luts[SCATTERING],
            irradiance=luts[IRRADIANCE],
            single_mie_scattering=luts.get(SINGLE_MIE_SCATTERING),
            higher_order_scattering=luts.get(HIGHER_ORDER_SCATTERING),
            options=options,
        )


def expected_lut_shapes(options: PrecomputeOptions) -> List[Tuple[str, Tuple[int, ...]]]:
    """(name, shape) of every LUT a set built with ``options`` holds."""
    scattering = options.scattering_shape
    shapes = [
        (TRANSMITTANCE, options.transmittance_shape + (3,)),
        (SCATTERING, scattering + (4,)),
        (IRRADIANCE, options.irradiance_shape + (3,)),
    ]
    if not options.combined_scattering_textures:
        shapes.append((SINGLE_MIE_SCATTERING, scattering + (3,)))
    if options.higher_order_scattering_texture:
        shapes.append((HIGHER_ORDER_SCATTERING, scattering + (3,)))
    return shapes


class PrecomputeState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


class PrecomputeTask:
    """
    One precomputation run, iterated one unit at a time.

    Each ``next()`` runs exactly one stage and returns its label. Cancelling
    takes effect before the next unit; the LUTs are only published once the
    last unit has finished.
    """

    def __init__(self, model: 'AtmosphereModel', num_scattering_orders: int):
        self._model = model
        self.num_scattering_orders = num_scattering_orders
        self.options = model.options
        self.uniforms = model.params.uniforms()
        self.backend = model.backend

        self._arena = BufferArena(self.backend, self.options)
        functions = AtmosphereFunctions(
            self.uniforms, self.options, self.backend,
            optical_depth_transmittance=self.options.transmittance_precision_log,
        )
        self._stages = PrecomputeStages(functions, self._arena)
        self._units = self._build_units()

        self._index = 0
        self._in_unit = False
        self._cancelled = False
        self._finished = False
        self.error: Optional[BaseException] = None

    def _build_units(self) -> List[Tuple[str, Callable[[], None]]]:
        stages = self._stages
        units = [
            ("transmittance", stages.compute_transmittance),
            ("direct irradiance", stages.compute_direct_irradiance),
            ("single scattering", stages.compute_single_scattering),
        ]
        for order in range(2, self.num_scattering_orders + 1):
            units.extend([
                (f"scattering density order {order}",
                 lambda order=order: stages.compute_scattering_density(order)),
                (f"indirect irradiance order {order}",
                 lambda order=order: stages.compute_indirect_irradiance(order)),
                (f"multiple scattering order {order}",
                 lambda order=order: stages.compute_multiple_scattering(order)),
            ])
        return units

    @property
    def unit_count(self) -> int:
        return len(self._units)

    @property
    def unit_index(self) -> int:
        """Number of units completed so far."""
        return self._index

    @property
    def labels(self) -> List[str]:
        return [label for label, _ in self._units]

    @property
    def progress(self) -> float:
        return self._index / self.unit_count

    @property
    def done(self) -> bool:
        return self._finished

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def running_unit(self) -> bool:
        return self._in_unit

    def __iter__(self):
        return self

    def __next__(self) -> str:
        if self._finished:
            raise StopIteration
        if self._cancelled:
            self._finish()
            raise StopIteration

        label, unit = self._units[self._index]
        logger.info("Computing %s (%d/%d)...", label, self._index + 1, self.unit_count)
        self._in_unit = True
        try:
            unit()
            self.backend.synchronize()
        except Exception as e:
            self.error = e
            self._finish(failed=True)
            raise
        finally:
            self._in_unit = False

        self._index += 1
        if self._cancelled:
            self._finish()
        elif self._index == self.unit_count:
            self._publish()
        return label

    def cancel(self) -> None:
        """Stop before the next unit. Published LUTs are left untouched."""
        if not self._finished:
            self._cancelled = True
            logger.info("Precomputation cancelled after %d/%d units", self._index, self.unit_count)
            if not self._in_unit:
                self._finish()

    def run(self, progress_callback: Optional[ProgressCallback] = None) -> 'PrecomputedTextures':
        """
        Run all remaining units.

        Raises:
            PrecomputeCancelledError: If the task was cancelled before completion
        """
        for label in self:
            if progress_callback:
                progress_callback(self.progress, f"Computed {label}")
        if self._cancelled:
            raise PrecomputeCancelledError(self._index, self.unit_count)
        return self._model.textures

    def _publish(self) -> None:
        backend = self.backend
        arena = self._arena
        options = self.options

        def host(name):
            return np.ascontiguousarray(backend.to_numpy(arena.get(name)), dtype=np.float32)

        textures = PrecomputedTextures(
            transmittance=host(TRANSMITTANCE),
            scattering=host(SCATTERING),
            irradiance=host(IRRADIANCE),
            single_mie_scattering=(
                None if options.combined_scattering_textures else host(SINGLE_MIE_SCATTERING)
            ),
            higher_order_scattering=(
                host(HIGHER_ORDER_SCATTERING) if options.higher_order_scattering_texture else None
            ),
            options=options,
        )
        self._finish(textures=textures)
        logger.info("Precomputation complete.")

    def _finish(self, textures: Optional[PrecomputedTextures] = None, failed: bool = False) -> None:
        self._finished = True
        self._arena.dispose()
        self._model._task_finished(self, textures, failed)


class AtmosphereModel:
    """
    Main atmosphere model class.

    Handles precomputation of lookup tables, publishes them for the runtime
    queries and provides shader uniforms.
    """

    def __init__(self, params: Optional[AtmosphereParameters] = None,
                 options: Optional[PrecomputeOptions] = None,
                 use_gpu: bool = False,
                 backend: Optional[ComputeBackend] = None):
        """
        Initialize the atmosphere model.

        Args:
            params: Atmosphere parameters. Uses Earth defaults if None.
            options: Texture sizes and flags. Uses the defaults if None.
            use_gpu: Precompute with CuPy when available
            backend: Explicit backend (overrides use_gpu)
        """
        self.params = params or AtmosphereParameters.earth_default()
        self.options = options or PrecomputeOptions()
        self.backend = backend or ComputeBackend(use_gpu=use_gpu)
        self.textures: Optional[PrecomputedTextures] = None

        self._uniforms: Optional[AtmosphereUniforms] = None
        self._version = 0
        self._state = PrecomputeState.IDLE
        self._task: Optional[PrecomputeTask] = None
        self._dispose_pending = False

    @property
    def is_initialized(self) -> bool:
        """Check if LUTs have been published."""
        return self.textures is not None

    @property
    def version(self) -> int:
        """Incremented every time a new LUT set is published."""
        return self._version

    @property
    def state(self) -> PrecomputeState:
        return self._state

    @property
    def active_task(self) -> Optional[PrecomputeTask]:
        return self._task

    def update(self, num_scattering_orders: int = DEFAULT_SCATTERING_ORDERS) -> PrecomputeTask:
        """
        Start a precomputation run and return it as an iterator of units.

        Raises:
            PrecomputeInProgressError: If a run is already in flight
        """
        if self._task is not None:
            raise PrecomputeInProgressError(self._task.unit_index, self._task.unit_count)
        if num_scattering_orders < 1:
            raise ValueError("num_scattering_orders must be at least 1")

        logger.info(
            "Precomputing atmosphere LUTs on %s (%d scattering orders)",
            self.backend.name, num_scattering_orders,
        )
        self._task = PrecomputeTask(self, num_scattering_orders)
        self._state = PrecomputeState.RUNNING
        return self._task

    def init(self, num_scattering_orders: int = DEFAULT_SCATTERING_ORDERS,
             progress_callback: Optional[ProgressCallback] = None) -> None:
        """
        Precompute the atmosphere LUT textures (blocking).

        Args:
            num_scattering_orders: Number of scattering orders to compute (default 4)
            progress_callback: Optional callback(progress, message) for progress updates
        """
        if progress_callback:
            progress_callback(0.0, "Initializing atmosphere model...")
        self.update(num_scattering_orders).run(progress_callback)
        if progress_callback:
            progress_callback(1.0, "Precomputation complete.")

    def _task_finished(self, task: PrecomputeTask, textures: Optional[PrecomputedTextures],
                       failed: bool) -> None:
        if task is not self._task:
            return
        self._task = None
        if textures is not None:
            self._publish(textures, task.uniforms)
        elif failed:
            self._state = PrecomputeState.FAILED
            logger.error("Precomputation failed: %s", task.error)
        else:
            self._state = PrecomputeState.COMPLETE if self.is_initialized else PrecomputeState.IDLE
        if self._dispose_pending:
            self._dispose_now()

    def _publish(self, textures: PrecomputedTextures, uniforms: AtmosphereUniforms) -> None:
        self.textures = textures
        self._uniforms = uniforms
        self._version += 1
        self._state = PrecomputeState.COMPLETE

    def dispose(self) -> None:
        """
        Release the LUTs. If a unit is currently running, disposal happens
        when it returns; an idle in-flight task is cancelled.
        """
        task = self._task
        if task is not None and task.running_unit:
            self._dispose_pending = True
            task.cancel()
            return
        if task is not None:
            task.cancel()
        self._dispose_now()

    def _dispose_now(self) -> None:
        self._dispose_pending = False
        self.textures = None
        self._uniforms = None
        self._state = PrecomputeState.IDLE
        logger.debug("Atmosphere model disposed")

    # ------------------------------------------------------------------
    # Published state
    # ------------------------------------------------------------------

    def _require_textures(self) -> PrecomputedTextures:
        if self.textures is None:
            raise ModelNotInitializedError()
        return self.textures

    @property
    def uniforms(self) -> AtmosphereUniforms:
        """
        Uniforms the published LUTs were computed with, with the current
        runtime-only options applied.
        """
        self._require_textures()
        return replace(
            self._uniforms,
            constrain_camera_above_ground=bool(self.params.constrain_camera_above_ground),
            hide_ground=bool(self.params.hide_ground),
        )

    def get_shader_uniforms(self) -> dict:
        """
        Get dictionary of uniform values for shaders.

        Returns:
            Dictionary with uniform names and values (LUT length units)
        """
        self._require_textures()
        u = self.uniforms
        o = self.options if self.textures.options is None else self.textures.options
        return {
            'bottom_radius': u.bottom_radius,
            'top_radius': u.top_radius,
            'solar_irradiance': u.solar_irradiance,
            'sun_angular_radius': u.sun_angular_radius,
            'rayleigh_scattering': u.rayleigh_scattering,
            'mie_scattering': u.mie_scattering,
            'mie_extinction': u.mie_extinction,
            'mie_phase_function_g': u.mie_phase_function_g,
            'absorption_extinction': u.absorption_extinction,
            'ground_albedo': u.ground_albedo,
            'mu_s_min': u.min_cos_sun,
            'sun_radiance_to_luminance': u.sun_radiance_to_luminance,
            'sky_radiance_to_luminance': u.sky_radiance_to_luminance,
            'luminance_scale': u.luminance_scale,
            'length_unit_in_meters': u.length_unit_in_meters,
            'transmittance_texture_size': o.transmittance_size,
            'irradiance_texture_size': o.irradiance_size,
            'scattering_texture_size': o.scattering_size,
            'combined_scattering_textures': o.combined_scattering_textures,
            'higher_order_scattering_texture': o.higher_order_scattering_texture,
        }

    # ------------------------------------------------------------------
    # Runtime queries (meters, planet-centered)
    # ------------------------------------------------------------------

    def get_sky_radiance(self, camera, view_ray, shadow_length, sun_direction):
        return runtime.get_sky_radiance(
            self._require_textures(), self.uniforms, camera, view_ray, shadow_length, sun_direction
        )

    def get_sky_radiance_to_point(self, camera, point, shadow_length, sun_direction):
        return runtime.get_sky_radiance_to_point(
            self._require_textures(), self.uniforms, camera, point, shadow_length, sun_direction
        )

    def get_sun_and_sky_irradiance(self, point, normal, sun_direction):
        return runtime.get_sun_and_sky_irradiance(
            self._require_textures(), self.uniforms, point, normal, sun_direction
        )

    def get_sky_luminance(self, camera, view_ray, shadow_length, sun_direction):
        return runtime.get_sky_luminance(
            self._require_textures(), self.uniforms, camera, view_ray, shadow_length, sun_direction
        )

    def get_sky_luminance_to_point(self, camera, point, shadow_length, sun_direction):
        return runtime.get_sky_luminance_to_point(
            self._require_textures(), self.uniforms, camera, point, shadow_length, sun_direction
        )

    def get_sun_and_sky_illuminance(self, point, normal, sun_direction):
        return runtime.get_sun_and_sky_illuminance(
            self._require_textures(), self.uniforms, point, normal, sun_direction
        )

    def get_solar_luminance(self) -> np.ndarray:
        return runtime.get_solar_luminance(self.params)

    def get_sun_light_color(self, position, sun_direction, photometric: bool = True):
        textures = self._require_textures()
        return runtime.get_sun_light_color(
            textures.transmittance, self.uniforms, position, sun_direction,
            photometric=photometric, options=textures.options,
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def save_textures(self, output_dir: str) -> None:
        """Save each LUT as ``<output_dir>/<name>.bin`` (raw float32 with shape header)."""
        lut_io.save_luts_binary(output_dir, self._require_textures().as_dict())

    def load_textures(self, input_dir: str, options: Optional[PrecomputeOptions] = None) -> None:
        """
        Load LUTs written by :meth:`save_textures`.

        Args:
            input_dir: Directory holding the .bin files
            options: Layout of the stored LUTs (defaults to this model's options)
        """
        options = options or self.options
        luts = lut_io.load_luts_binary(input_dir, expected_lut_shapes(options))
        self._load(PrecomputedTextures.from_dict(luts, options))

    def save_textures_npz(self, filepath: str) -> None:
        """Save precomputed textures to a file (NumPy format)."""
        textures = self._require_textures()
        options = textures.options or self.options
        lut_io.save_luts_npz(
            filepath,
            textures.as_dict(),
            options.flat_sizes(),
            {name: getattr(options, name) for name in lut_io.NPZ_FLAG_NAMES},
        )

    def load_textures_npz(self, filepath: str) -> None:
        """Load precomputed textures from a file written by :meth:`save_textures_npz`."""
        luts, sizes, flags = lut_io.load_luts_npz(filepath)
        options = PrecomputeOptions.from_sizes(sizes, **flags)
        luts = lut_io.check_lut_shapes(filepath, luts, expected_lut_shapes(options))
        self._load(PrecomputedTextures.from_dict(luts, options))

    def save_textures_exr(self, output_dir: str, half_precision: bool = False) -> None:
        """
        Save precomputed textures as EXR files.

        3D LUTs are stored as 2D images with the depth slices tiled along x.
        """
        from ..utils import exr

        os.makedirs(output_dir, exist_ok=True)
        for name, data in self._require_textures().as_dict().items():
            exr.write_lut_exr(os.path.join(output_dir, name + ".exr"), data, half_precision)

    def load_textures_exr(self, input_dir: str, options: Optional[PrecomputeOptions] = None) -> None:
        """Load LUTs written by :meth:`save_textures_exr`."""
        from ..utils import exr

        options = options or self.options
        luts = {}
        expected = expected_lut_shapes(options)
        for name, shape in expected:
            depth = shape[0] if len(shape) == 4 else None
            luts[name] = exr.read_lut_exr(os.path.join(input_dir, name + ".exr"), depth)
        luts = lut_io.check_lut_shapes(input_dir, luts, expected)
        self._load(PrecomputedTextures.from_dict(luts, options))

    def _load(self, textures: PrecomputedTextures) -> None:
        if self._task is not None:
            raise PrecomputeInProgressError(self._task.unit_index, self._task.unit_count)
        self.options = textures.options
        self._publish(textures, self.params.uniforms())
        logger.info("Loaded atmosphere LUTs (version %d)", self._version)
