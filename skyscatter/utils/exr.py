"""
Skyscatter EXR Utilities - Float EXR export of the LUT textures.

2D LUTs are written as-is. 3D LUTs (D, H, W, C) are tiled along x: depth
slice ``k`` occupies columns ``[k * W, (k + 1) * W)``, so a 2D texture lookup
can address them with offset u coordinates.
"""

import logging
import os
from typing import Optional

import numpy as np

from ..errors import LUTFormatError

logger = logging.getLogger(__name__)

# OpenEXR is an optional extra
try:
    import OpenEXR
    import Imath
    HAS_OPENEXR = True
except ImportError:
    HAS_OPENEXR = False

CHANNEL_NAMES = ('R', 'G', 'B', 'A')


def _require_openexr() -> None:
    if not HAS_OPENEXR:
        raise RuntimeError("OpenEXR module not available. "
                           "Install with: pip install skyscatter[exr]")


def tile_3d(data: np.ndarray) -> np.ndarray:
    """(D, H, W, C) -> (H, D * W, C), depth slices side by side."""
    depth, height, width, channels = data.shape
    return np.ascontiguousarray(
        data.transpose(1, 0, 2, 3).reshape(height, depth * width, channels)
    )


def untile_3d(tiled: np.ndarray, depth: int) -> np.ndarray:
    """Inverse of :func:`tile_3d`."""
    height, tiled_width, channels = tiled.shape
    if tiled_width % depth:
        raise ValueError(f"Tiled width {tiled_width} is not a multiple of depth {depth}")
    width = tiled_width // depth
    return np.ascontiguousarray(
        tiled.reshape(height, depth, width, channels).transpose(1, 0, 2, 3)
    )


def write_lut_exr(filepath: str, data: np.ndarray, half_precision: bool = False) -> None:
    """
    Write a 2D (H, W, C) or 3D (D, H, W, C) LUT as an EXR file.

    Args:
        filepath: Output file path
        data: LUT with 3 or 4 channels
        half_precision: Use 16-bit float (True) or 32-bit float (False)
    """
    _require_openexr()

    data = np.asarray(data, dtype=np.float32)
    if data.ndim == 4:
        data = tile_3d(data)
    if data.ndim != 3 or data.shape[2] not in (3, 4):
        raise ValueError(f"LUT must be (H, W, 3|4) or (D, H, W, 3|4), got {data.shape}")

    height, width, channels = data.shape
    if half_precision:
        pixel_type = Imath.PixelType(Imath.PixelType.HALF)
        sample_dtype = np.float16
    else:
        pixel_type = Imath.PixelType(Imath.PixelType.FLOAT)
        sample_dtype = np.float32

    header = OpenEXR.Header(width, height)
    header['channels'] = {
        name: Imath.Channel(pixel_type) for name in CHANNEL_NAMES[:channels]
    }
    channel_data = {
        name: np.ascontiguousarray(data[:, :, i]).astype(sample_dtype).tobytes()
        for i, name in enumerate(CHANNEL_NAMES[:channels])
    }

    exr_file = OpenEXR.OutputFile(filepath, header)
    try:
        exr_file.writePixels(channel_data)
    finally:
        exr_file.close()
    logger.info("Saved EXR: %s", filepath)


def read_lut_exr(filepath: str, depth: Optional[int] = None) -> np.ndarray:
    """
    Read a LUT written by :func:`write_lut_exr`.

    Args:
        filepath: Path to EXR file
        depth: Number of tiled depth slices for 3D LUTs (None for 2D)

    Returns:
        (H, W, C) or (D, H, W, C) float32 array
    """
    _require_openexr()

    if not os.path.exists(filepath):
        raise FileNotFoundError(f"EXR file not found: {filepath}")

    exr_file = OpenEXR.InputFile(filepath)
    try:
        header = exr_file.header()
        dw = header['dataWindow']
        width = dw.max.x - dw.min.x + 1
        height = dw.max.y - dw.min.y + 1

        names = [name for name in CHANNEL_NAMES if name in header['channels']]
        if names != list(CHANNEL_NAMES[:len(names)]) or len(names) < 3:
            raise LUTFormatError(filepath, f"expected RGB or RGBA channels, got {sorted(header['channels'])}")

        pt = Imath.PixelType(Imath.PixelType.FLOAT)
        planes = [
            np.frombuffer(exr_file.channel(name, pt), dtype=np.float32).reshape(height, width)
            for name in names
        ]
    finally:
        exr_file.close()

    data = np.stack(planes, axis=2)
    if depth is not None:
        try:
            data = untile_3d(data, depth)
        except ValueError as e:
            raise LUTFormatError(filepath, str(e)) from e
    return data
