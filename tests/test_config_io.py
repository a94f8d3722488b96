import os

import cv2
import numpy as np
import pandas as pd
import pytest

import run_odometry
from rgbd_odometry.config import (ITERATIONS_PER_LEVEL, OdometryOption,
                                  load_config, option_from_dict)
from rgbd_odometry.data_loaders import load_associations, load_rgbd_frame
from rgbd_odometry.exceptions import InvalidInputError
from rgbd_odometry.numerical_checks import assert_finite, check_information_psd
from synthetic_scene import make_intrinsics, render

CONFIG_TEXT = """
camera:
  width: {width}
  height: {height}
  fx: 140.0
  fy: 140.0
  cx: {cx}
  cy: {cy}
input:
  depth_scale: 5000.0
  depth_trunc: 4.0
odometry:
  iterations_per_level: [8, 6, 4]
  max_depth_difference: 0.07
  residual_formulation: hybrid
  normalize_intensity: false
"""


def _write_config(tmp_path):
    intr = make_intrinsics()
    path = tmp_path / "odometry.yaml"
    path.write_text(CONFIG_TEXT.format(width=intr.width, height=intr.height,
                                       cx=intr.cx, cy=intr.cy))
    return str(path)


def _write_frame(tmp_path, name, pose=None):
    intensity, depth = render(make_intrinsics(), pose)
    color_path = tmp_path / f"{name}.png"
    depth_path = tmp_path / f"{name}_depth.png"
    gray = np.clip(intensity * 255.0, 0, 255).astype(np.uint8)
    cv2.imwrite(str(color_path), cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR))
    cv2.imwrite(str(depth_path), np.round(depth * 5000.0).astype(np.uint16))
    return str(color_path), str(depth_path)


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

def test_default_option_is_valid():
    option = OdometryOption().validate()
    assert option.iterations_per_level == ITERATIONS_PER_LEVEL
    assert option.num_levels == 3
    assert option.residual_formulation == "hybrid"


def test_option_from_dict_converts_lists_and_rejects_unknown_keys():
    option = option_from_dict({"iterations_per_level": [5, 5], "robust_loss": "tukey"})
    assert option.iterations_per_level == (5, 5)
    with pytest.raises(InvalidInputError):
        option_from_dict({"iterations": [5]})


@pytest.mark.parametrize("kwargs", [
    {"iterations_per_level": ()},
    {"min_depth": 2.0, "max_depth": 1.0},
    {"max_depth_difference": 0.0},
    {"min_correspondence_fraction": 1.5},
    {"robust_loss": "cauchy"},
    {"depth_weight": -1.0},
    {"num_workers": 0},
    {"pyramid_levels": 2},
])
def test_option_validation_errors(kwargs):
    with pytest.raises(InvalidInputError):
        OdometryOption(**kwargs).validate()


@pytest.mark.parametrize("body", [
    "iterations_per_level: 5",
    "iterations_per_level: [10.7, 5]",
    "iterations_per_level: fast",
    "max_depth: far",
])
def test_load_config_bad_value_types_raise_invalid_input(tmp_path, body):
    path = tmp_path / "bad.yaml"
    path.write_text(f"odometry:\n  {body}\n")
    with pytest.raises(InvalidInputError):
        load_config(str(path))


def test_integral_float_budgets_are_accepted():
    option = option_from_dict({"iterations_per_level": [10.0, 5]})
    assert option.iterations_per_level == (10, 5)
    assert all(isinstance(n, int) for n in option.iterations_per_level)


def test_load_config(tmp_path):
    config = load_config(_write_config(tmp_path))
    option = config['ODOMETRY_OPTION']
    assert option.iterations_per_level == (8, 6, 4)
    assert option.max_depth_difference == 0.07
    assert config['CAMERA_INTRINSICS'] == make_intrinsics()
    assert config['DEPTH_SCALE'] == 5000.0
    assert config['DEPTH_TRUNC'] == 4.0


def test_load_config_without_camera(tmp_path):
    path = tmp_path / "minimal.yaml"
    path.write_text("odometry:\n  residual_formulation: depth\n")
    config = load_config(str(path))
    assert config['CAMERA_INTRINSICS'] is None
    assert config['ODOMETRY_OPTION'].residual_formulation == "depth"


def test_shipped_default_config_loads():
    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    config = load_config(os.path.join(root, "configs", "odometry_default.yaml"))
    assert config['ODOMETRY_OPTION'] == OdometryOption()
    assert config['CAMERA_INTRINSICS'].width == 640


# ---------------------------------------------------------------------------
# Numerical checks
# ---------------------------------------------------------------------------

def test_assert_finite(capsys):
    assert assert_finite("ok", np.eye(3))
    assert not assert_finite("bad", np.array([1.0, np.nan]))
    assert "[TRIPWIRE]" in capsys.readouterr().out
    with pytest.raises(ValueError):
        assert_finite("bad", np.array([np.inf]), raise_on_fail=True)


def test_check_information_psd():
    assert check_information_psd(np.diag([1.0, 2.0, 3.0, 4.0, 5.0, 0.0]))
    assert not check_information_psd(np.diag([1.0, 2.0, 3.0, 4.0, 5.0, -1.0]))
    asym = np.eye(6)
    asym[0, 1] = 0.5
    assert not check_information_psd(asym)


# ---------------------------------------------------------------------------
# Data loaders
# ---------------------------------------------------------------------------

def test_load_rgbd_frame(tmp_path):
    color_path, depth_path = _write_frame(tmp_path, "frame")
    frame = load_rgbd_frame(color_path, depth_path, depth_scale=5000.0, depth_trunc=4.0)
    _, depth = render(make_intrinsics())
    assert frame.shape == depth.shape
    assert np.allclose(frame.depth, depth, atol=2e-4)
    assert 0.0 <= frame.intensity.min() and frame.intensity.max() <= 1.0


def test_load_rgbd_frame_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_rgbd_frame(str(tmp_path / "nope.png"), str(tmp_path / "nope_depth.png"))


def test_load_associations(tmp_path):
    assoc = tmp_path / "assoc.txt"
    assoc.write_text("# timestamp rgb timestamp depth\n"
                     "1.0 rgb/1.png 1.01 depth/1.png\n"
                     "2.0 rgb/2.png 2.02 depth/2.png\n")
    pairs = load_associations(str(assoc))
    assert [p.t for p in pairs] == [1.0, 2.0]
    assert pairs[1].depth_path == os.path.join(str(tmp_path), "depth", "2.png")


def test_load_associations_wrong_columns(tmp_path):
    assoc = tmp_path / "assoc.txt"
    assoc.write_text("1.0 rgb/1.png\n")
    with pytest.raises(InvalidInputError):
        load_associations(str(assoc))


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def test_cli_pair_mode(tmp_path, true_motion):
    config = _write_config(tmp_path)
    sc, sd = _write_frame(tmp_path, "source")
    tc, td = _write_frame(tmp_path, "target", true_motion)
    out = tmp_path / "result.npz"
    code = run_odometry.main(["--config", config, "--source-color", sc, "--source-depth", sd,
                              "--target-color", tc, "--target-depth", td,
                              "--output", str(out)])
    assert code == run_odometry.EXIT_SUCCESS
    saved = np.load(str(out))
    assert bool(saved["success"])
    assert np.allclose(saved["transformation"][:3, 3], true_motion[:3, 3], atol=1e-2)


def test_cli_sequence_mode(tmp_path, true_motion):
    config = _write_config(tmp_path)
    frames = [_write_frame(tmp_path, "f0"), _write_frame(tmp_path, "f1", true_motion)]
    assoc = tmp_path / "assoc.txt"
    assoc.write_text("".join(f"{i}.0 {os.path.basename(c)} {i}.0 {os.path.basename(d)}\n"
                             for i, (c, d) in enumerate(frames)))
    out = tmp_path / "odometry.csv"
    code = run_odometry.main(["--config", config, "--associations", str(assoc),
                              "--output", str(out)])
    assert code == run_odometry.EXIT_SUCCESS
    df = pd.read_csv(out)
    assert len(df) == 1
    assert bool(df["success"].iloc[0])
    assert "T03" in df.columns and df["info_trace"].iloc[0] > 0


def test_cli_invalid_input(tmp_path):
    config = _write_config(tmp_path)
    assert run_odometry.main(["--config", config]) == run_odometry.EXIT_INVALID_INPUT
    missing = str(tmp_path / "missing.png")
    code = run_odometry.main(["--config", config, "--source-color", missing,
                              "--source-depth", missing, "--target-color", missing,
                              "--target-depth", missing])
    assert code == run_odometry.EXIT_INVALID_INPUT


def test_cli_bad_config_value_type(tmp_path):
    config = tmp_path / "bad.yaml"
    config.write_text("odometry:\n  iterations_per_level: 5\n")
    sc, sd = _write_frame(tmp_path, "source")
    code = run_odometry.main(["--config", str(config), "--source-color", sc,
                              "--source-depth", sd, "--target-color", sc,
                              "--target-depth", sd])
    assert code == run_odometry.EXIT_INVALID_INPUT
