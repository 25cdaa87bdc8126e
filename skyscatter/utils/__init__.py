"""
Skyscatter Utilities - LUT serialization.
"""

from .io import save_lut_binary, load_lut_binary
from .exr import HAS_OPENEXR, write_lut_exr, read_lut_exr
