import numpy as np
import pytest

from rgbd_odometry.math_utils import se3_exp
from synthetic_scene import make_intrinsics, render_frame, render_pair


@pytest.fixture
def intrinsics():
    return make_intrinsics()


@pytest.fixture
def static_frame(intrinsics):
    return render_frame(intrinsics)


@pytest.fixture
def true_motion():
    return se3_exp(np.array([0.004, -0.006, 0.003, 0.02, -0.01, 0.015]))


@pytest.fixture
def moved_pair(true_motion):
    source, target, intr = render_pair(true_motion)
    return source, target, intr, true_motion
