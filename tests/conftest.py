"""Shared fixtures: small LUT layouts and a once-per-session precomputed model."""

import numpy as np
import pytest

from skyscatter.core.backend import ComputeBackend
from skyscatter.core.buffers import BufferArena, TRANSMITTANCE
from skyscatter.core.functions import AtmosphereFunctions
from skyscatter.core.model import AtmosphereModel
from skyscatter.core.parameters import AtmosphereParameters, PrecomputeOptions
from skyscatter.core.precompute import PrecomputeStages

SMALL_TRANSMITTANCE_SIZE = (32, 8)
SMALL_IRRADIANCE_SIZE = (16, 4)
SMALL_SCATTERING_SIZE = (4, 8, 8, 4)

SESSION_SCATTERING_ORDERS = 3


def make_small_options(**flags) -> PrecomputeOptions:
    kwargs = dict(
        transmittance_size=SMALL_TRANSMITTANCE_SIZE,
        irradiance_size=SMALL_IRRADIANCE_SIZE,
        scattering_size=SMALL_SCATTERING_SIZE,
    )
    kwargs.update(flags)
    return PrecomputeOptions(**kwargs)


@pytest.fixture
def earth_params():
    return AtmosphereParameters.earth_default()


@pytest.fixture
def small_options():
    return make_small_options()


@pytest.fixture
def earth_functions(earth_params):
    """Atmosphere math with the default texture layout (no LUT needed)."""
    return AtmosphereFunctions(earth_params.uniforms(), PrecomputeOptions())


@pytest.fixture(scope="session")
def precomputed_model():
    """Small LUT set with three scattering orders, computed once."""
    model = AtmosphereModel(AtmosphereParameters.earth_default(), make_small_options())
    model.init(num_scattering_orders=SESSION_SCATTERING_ORDERS)
    return model


@pytest.fixture(scope="session")
def transmittance_lut():
    """Full-resolution transmittance LUT and the functions bound to it."""
    options = PrecomputeOptions(
        irradiance_size=SMALL_IRRADIANCE_SIZE,
        scattering_size=SMALL_SCATTERING_SIZE,
    )
    backend = ComputeBackend(use_gpu=False)
    arena = BufferArena(backend, options)
    functions = AtmosphereFunctions(
        AtmosphereParameters.earth_default().uniforms(), options, backend
    )
    PrecomputeStages(functions, arena).compute_transmittance()
    return functions, np.array(arena.get(TRANSMITTANCE))
