"""
Skyscatter LUT I/O - Raw binary and NumPy archive formats.

Binary layout, one file per LUT (all little-endian):
    int32 ndim
    int32 shape[ndim]
    float32 data (row-major)
"""

import logging
import os
from typing import Dict, Iterable, Optional, Sequence, Tuple

import numpy as np

from ..errors import LUTFormatError

logger = logging.getLogger(__name__)

BINARY_EXTENSION = ".bin"

_HEADER_DTYPE = np.dtype('<i4')
_DATA_DTYPE = np.dtype('<f4')

# Flags stored next to the arrays in .npz archives
_NPZ_SIZES_KEY = "sizes"
_NPZ_FLAGS_KEY = "flags"
NPZ_FLAG_NAMES = (
    "transmittance_precision_log",
    "combined_scattering_textures",
    "higher_order_scattering_texture",
)


def save_lut_binary(filepath: str, data: np.ndarray) -> None:
    """Save an array as raw float32 with an int32 shape header."""
    data = np.ascontiguousarray(data, dtype=_DATA_DTYPE)
    with open(filepath, 'wb') as f:
        f.write(np.array([data.ndim], dtype=_HEADER_DTYPE).tobytes())
        f.write(np.array(data.shape, dtype=_HEADER_DTYPE).tobytes())
        f.write(data.tobytes())


def load_lut_binary(filepath: str, expected_shape: Optional[Sequence[int]] = None) -> np.ndarray:
    """
    Load an array written by :func:`save_lut_binary`.

    Args:
        filepath: Path to the .bin file
        expected_shape: If given, the stored shape must match exactly

    Raises:
        LUTFormatError: Truncated file, bad header, or shape mismatch
    """
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"LUT file not found: {filepath}")

    with open(filepath, 'rb') as f:
        raw = f.read()

    header_size = _HEADER_DTYPE.itemsize
    if len(raw) < header_size:
        raise LUTFormatError(filepath, "file is too short for a header")
    ndim = int(np.frombuffer(raw, dtype=_HEADER_DTYPE, count=1)[0])
    if ndim < 1 or len(raw) < header_size * (1 + ndim):
        raise LUTFormatError(filepath, f"invalid rank {ndim}")

    shape = tuple(int(v) for v in np.frombuffer(raw, dtype=_HEADER_DTYPE, count=ndim, offset=header_size))
    if any(v < 0 for v in shape):
        raise LUTFormatError(filepath, f"negative extent in shape {shape}")
    if expected_shape is not None and shape != tuple(expected_shape):
        raise LUTFormatError(
            filepath, f"expected shape {tuple(expected_shape)}, got {shape}"
        )

    offset = header_size * (1 + ndim)
    count = int(np.prod(shape))
    payload = len(raw) - offset
    if payload != count * _DATA_DTYPE.itemsize:
        raise LUTFormatError(
            filepath,
            f"expected {count * _DATA_DTYPE.itemsize} data bytes for shape {shape}, got {payload}",
        )

    data = np.frombuffer(raw, dtype=_DATA_DTYPE, count=count, offset=offset)
    return data.reshape(shape).astype(np.float32)


def save_luts_binary(directory: str, luts: Dict[str, np.ndarray]) -> Dict[str, str]:
    """
    Write each LUT to ``<directory>/<name>.bin``.

    Returns:
        Mapping of LUT name to written path
    """
    os.makedirs(directory, exist_ok=True)
    paths = {}
    for name, data in luts.items():
        path = os.path.join(directory, name + BINARY_EXTENSION)
        save_lut_binary(path, data)
        logger.info("Saved %s: %s", name, path)
        paths[name] = path
    return paths


def load_luts_binary(directory: str,
                     expected: Iterable[Tuple[str, Tuple[int, ...]]]) -> Dict[str, np.ndarray]:
    """
    Read LUTs written by :func:`save_luts_binary`.

    Args:
        directory: Directory holding the .bin files
        expected: (name, shape) of every LUT to read
    """
    luts = {}
    for name, shape in expected:
        path = os.path.join(directory, name + BINARY_EXTENSION)
        luts[name] = load_lut_binary(path, shape)
        logger.debug("Loaded %s %s from %s", name, luts[name].shape, path)
    return luts


def check_lut_shapes(source: str, luts: Dict[str, np.ndarray],
                     expected: Iterable[Tuple[str, Tuple[int, ...]]]) -> Dict[str, np.ndarray]:
    """
    Keep the expected LUTs of ``luts``, checking that each exists with its shape.

    Raises:
        LUTFormatError: A LUT is missing or has the wrong shape
    """
    checked = {}
    for name, shape in expected:
        if name not in luts:
            raise LUTFormatError(source, f"missing LUT '{name}'")
        if tuple(luts[name].shape) != tuple(shape):
            raise LUTFormatError(
                source, f"LUT '{name}' has shape {tuple(luts[name].shape)}, expected {tuple(shape)}"
            )
        checked[name] = luts[name]
    return checked


def save_luts_npz(filepath: str, luts: Dict[str, np.ndarray],
                  sizes: Sequence[int], flags: Dict[str, bool]) -> None:
    """Save LUTs and the options that produced them to one compressed archive."""
    np.savez_compressed(
        filepath,
        **{name: np.asarray(data, dtype=np.float32) for name, data in luts.items()},
        **{
            _NPZ_SIZES_KEY: np.asarray(sizes, dtype=np.int32),
            _NPZ_FLAGS_KEY: np.array([bool(flags[name]) for name in NPZ_FLAG_NAMES]),
        },
    )
    logger.info("Saved textures: %s", filepath)


def load_luts_npz(filepath: str):
    """
    Read an archive written by :func:`save_luts_npz`.

    Returns:
        (luts, sizes, flags)
    """
    with np.load(filepath) as data:
        if _NPZ_SIZES_KEY not in data or _NPZ_FLAGS_KEY not in data:
            raise LUTFormatError(filepath, "archive is missing the texture options")
        sizes = tuple(int(v) for v in data[_NPZ_SIZES_KEY])
        flags = dict(zip(NPZ_FLAG_NAMES, (bool(v) for v in data[_NPZ_FLAGS_KEY])))
        luts = {
            name: np.asarray(data[name], dtype=np.float32)
            for name in data.files
            if name not in (_NPZ_SIZES_KEY, _NPZ_FLAGS_KEY)
        }
    return luts, sizes, flags
