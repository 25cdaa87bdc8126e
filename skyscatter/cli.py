"""Command line entry point: precompute atmosphere LUTs and write them to disk."""

import argparse
import logging
import os
import sys
from typing import List, Optional

from . import __version__
from .core import AtmosphereModel, AtmosphereParameters, PrecomputeOptions
from .core.constants import DEFAULT_GROUND_ALBEDO, DEFAULT_SCATTERING_ORDERS
from .errors import SkyscatterError

logger = logging.getLogger("skyscatter.cli")

NPZ_FILENAME = "atmosphere_luts.npz"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="skyscatter-precompute",
        description="Precompute Bruneton atmospheric scattering lookup tables.",
    )
    parser.add_argument(
        "--output", "-o",
        type=str,
        default="luts",
        help="Output directory (default: ./luts)",
    )
    parser.add_argument(
        "--format",
        choices=["binary", "npz", "exr"],
        default="binary",
        help="LUT file format (default: binary)",
    )
    parser.add_argument(
        "--orders",
        type=int,
        default=DEFAULT_SCATTERING_ORDERS,
        help=f"Number of scattering orders (default: {DEFAULT_SCATTERING_ORDERS})",
    )
    device = parser.add_mutually_exclusive_group()
    device.add_argument(
        "--gpu",
        dest="use_gpu",
        action="store_true",
        help="Precompute on the GPU with CuPy when available",
    )
    device.add_argument(
        "--cpu",
        dest="use_gpu",
        action="store_false",
        help="Precompute on the CPU with NumPy (default)",
    )
    parser.set_defaults(use_gpu=False)
    parser.add_argument(
        "--log-transmittance",
        action="store_true",
        help="Interpolate transmittance in optical depth during precomputation",
    )
    parser.add_argument(
        "--separate-mie",
        action="store_true",
        help="Write single Mie scattering to its own LUT instead of the alpha channel",
    )
    parser.add_argument(
        "--no-higher-order",
        action="store_true",
        help="Do not write the higher-order scattering LUT",
    )
    parser.add_argument(
        "--no-ozone",
        action="store_true",
        help="Disable the ozone absorption layer",
    )
    parser.add_argument(
        "--ground-albedo",
        type=float,
        default=DEFAULT_GROUND_ALBEDO,
        help=f"Ground albedo (default: {DEFAULT_GROUND_ALBEDO})",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Log per-slice progress",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser.parse_args(argv)


def build_model(args: argparse.Namespace) -> AtmosphereModel:
    params = AtmosphereParameters.from_artistic_controls(
        ground_albedo=args.ground_albedo,
        use_ozone=not args.no_ozone,
    )
    options = PrecomputeOptions(
        transmittance_precision_log=args.log_transmittance,
        combined_scattering_textures=not args.separate_mie,
        higher_order_scattering_texture=not args.no_higher_order,
    )
    return AtmosphereModel(params, options, use_gpu=args.use_gpu)


def write_textures(model: AtmosphereModel, output_dir: str, file_format: str) -> str:
    """Write the model's LUTs; returns the path written."""
    if file_format == "npz":
        os.makedirs(output_dir, exist_ok=True)
        path = os.path.join(output_dir, NPZ_FILENAME)
        model.save_textures_npz(path)
        return path
    if file_format == "exr":
        model.save_textures_exr(output_dir)
    else:
        model.save_textures(output_dir)
    return output_dir


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    def progress_callback(progress, message):
        logger.info("%s (%d%%)", message, int(progress * 100))

    try:
        model = build_model(args)
        model.init(num_scattering_orders=args.orders, progress_callback=progress_callback)
        path = write_textures(model, args.output, args.format)
    except (SkyscatterError, OSError, RuntimeError, ValueError) as e:
        logger.error("Precomputation failed: %s", e)
        return 1

    logger.info("Atmosphere LUTs saved to %s", path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
