"""Shared fixtures for the DBRT test-suite."""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dbrt.demo import make_band_renderer
from dbrt.dbrt_config import TrackerConfig

CONFIG_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), '..', 'config')


@pytest.fixture
def truth():
    return np.array([0.1, -0.2])


@pytest.fixture
def render():
    return make_band_renderer(2, rows=12, cols_per_dim=4, empty_rows=2)


@pytest.fixture
def small_config():
    return TrackerConfig.from_dict({
        "fusion_tracker": {
            "joint_count": 2,
            "joint_rate": 100.0,
            "image_rate": 10.0,
            "joint_transition": {"joint_sigmas": 0.01, "bias_sigmas": 0.0005,
                                 "bias_factors": 1.0, "initial_angle_sigma": 0.1,
                                 "initial_bias_sigma": 0.1},
            "joint_observation": {"joint_sigmas": 0.002},
            "visual_tracker": {"particle_count": 100, "process_sigma": 0.01,
                               "initial_sigma": 0.01, "seed": 11},
            "fusion": {"blend_weights": 0.0, "visual_sigma": 0.01},
        },
    })


@pytest.fixture
def sample_config_path():
    return os.path.join(CONFIG_DIR, 'fusion_tracker.yaml')
