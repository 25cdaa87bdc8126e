"""Command line tests."""

import os

import pytest

from skyscatter import cli
from skyscatter.core.model import AtmosphereModel

from conftest import make_small_options


def test_parse_defaults():
    args = cli.parse_args([])
    assert args.output == "luts"
    assert args.format == "binary"
    assert args.orders == 4
    assert args.use_gpu is False
    assert not args.log_transmittance
    assert not args.separate_mie
    assert not args.no_higher_order


def test_parse_flags():
    args = cli.parse_args([
        "-o", "out", "--format", "npz", "--orders", "2", "--gpu",
        "--log-transmittance", "--separate-mie", "--no-higher-order", "--no-ozone",
        "--ground-albedo", "0.3",
    ])
    assert args.output == "out"
    assert args.format == "npz"
    assert args.orders == 2
    assert args.use_gpu is True
    assert args.ground_albedo == 0.3

    model = cli.build_model(args)
    assert model.options.transmittance_precision_log
    assert not model.options.combined_scattering_textures
    assert not model.options.higher_order_scattering_texture
    assert model.params.ground_albedo[0] == 0.3
    assert not model.params.absorption_extinction.any()


def test_gpu_and_cpu_are_exclusive():
    with pytest.raises(SystemExit):
        cli.parse_args(["--gpu", "--cpu"])


@pytest.fixture
def small_build(monkeypatch):
    def build_model(args):
        return AtmosphereModel(options=make_small_options())

    monkeypatch.setattr(cli, "build_model", build_model)


def test_main_writes_binary_luts(small_build, tmp_path):
    output = str(tmp_path / "luts")
    assert cli.main(["--output", output, "--orders", "1"]) == 0
    assert sorted(os.listdir(output)) == [
        "higher_order_scattering.bin", "irradiance.bin", "scattering.bin", "transmittance.bin",
    ]


def test_main_writes_npz(small_build, tmp_path):
    output = str(tmp_path / "luts")
    assert cli.main(["--output", output, "--format", "npz", "--orders", "1"]) == 0
    assert os.path.isfile(os.path.join(output, cli.NPZ_FILENAME))


def test_main_reports_errors(small_build, tmp_path):
    assert cli.main(["--output", str(tmp_path), "--orders", "0"]) == 1
