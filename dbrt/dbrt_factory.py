"""
Factory functions assembling trackers from a TrackerConfig.

Author: DBRT developers
License: GPL-3.0-or-later
"""

import logging
from typing import Callable, Optional

import numpy as np

from .dbrt_config import TrackerConfig
from .dbrt_emulator import RobotEmulator, SinusoidAnimator
from .dbrt_fusion import FusionTracker
from .dbrt_kinematics import KinematicsGuard
from .dbrt_observation import RangeObservationModel
from .dbrt_rotary import JointFilter, RotaryTracker
from .dbrt_visual import VisualTracker

logger = logging.getLogger(__name__)


def create_joint_filters(config: TrackerConfig):
    """One JointFilter per joint from the transition and sensor parameters."""
    t = config.joint_transition
    joint_sigmas = config.per_joint(t.joint_sigmas, "joint_transition.joint_sigmas")
    bias_sigmas = config.per_joint(t.bias_sigmas, "joint_transition.bias_sigmas")
    bias_factors = config.per_joint(t.bias_factors, "joint_transition.bias_factors")
    sensor_sigmas = config.per_joint(config.joint_observation.joint_sigmas,
                                     "joint_observation.joint_sigmas")

    return [
        JointFilter(joint_sigma=joint_sigmas[i],
                    bias_sigma=bias_sigmas[i],
                    bias_factor=bias_factors[i],
                    sensor_sigma=sensor_sigmas[i],
                    initial_angle_sigma=t.initial_angle_sigma,
                    initial_bias_sigma=t.initial_bias_sigma)
        for i in range(config.joint_count)
    ]


def create_rotary_tracker(config: TrackerConfig) -> RotaryTracker:
    """Gaussian filter bank tracking the joints from encoder measurements."""
    return RotaryTracker(create_joint_filters(config), default_dt=1.0 / config.joint_rate)


def create_visual_tracker(config: TrackerConfig,
                          render: Callable[[np.ndarray], np.ndarray],
                          kinematics: Optional[KinematicsGuard] = None) -> VisualTracker:
    """Particle filter scoring rendered hypotheses against depth images."""
    v = config.visual_tracker
    return VisualTracker(
        render=render,
        observation_model=RangeObservationModel(v.observation),
        state_dim=config.state_dim,
        n_particles=v.particle_count,
        process_sigma=v.process_sigma,
        initial_sigma=v.initial_sigma,
        resample_threshold=v.resample_threshold,
        occlusion_margin=v.occlusion_margin,
        downsampling_factor=v.downsampling_factor,
        estimate_mode=v.estimate_mode,
        kinematics=kinematics,
        rng_seed=v.seed,
    )


def create_fusion_tracker(config: TrackerConfig,
                          render: Callable[[np.ndarray], np.ndarray],
                          kinematics: Optional[KinematicsGuard] = None) -> FusionTracker:
    """Rotary + visual trackers wired into one FusionTracker."""
    f = config.fusion
    tracker = FusionTracker(
        create_rotary_tracker(config),
        create_visual_tracker(config, render, kinematics),
        blend_weights=config.per_joint(f.blend_weights, "fusion.blend_weights"),
        visual_bias_correction=f.visual_bias_correction,
        visual_sigma=f.visual_sigma,
        image_dt=1.0 / config.image_rate,
        shutdown_timeout=f.shutdown_timeout,
        kinematics=kinematics,
    )
    logger.info("Created fusion tracker: %d joints, state dim %d, %d particles",
                config.joint_count, config.state_dim, config.visual_tracker.particle_count)
    return tracker


def create_robot_emulator(config: TrackerConfig,
                          render: Callable[[np.ndarray], np.ndarray],
                          kinematics: Optional[KinematicsGuard] = None) -> RobotEmulator:
    """Emulated robot from the ``robot_emulator`` parameters."""
    e = config.emulator
    initial_state = e.initial_state if e.initial_state is not None else np.zeros(config.state_dim)
    animator = None
    if e.animated_joints:
        animator = SinusoidAnimator(e.animated_joints, amplitude=e.amplitude)
    return RobotEmulator(
        render=render,
        initial_state=initial_state,
        joint_count=config.joint_count,
        animator=animator,
        joint_rate=e.joint_sensor_rate,
        image_rate=e.visual_sensor_rate,
        dilation=e.dilation,
        visual_sensor_delay=e.visual_sensor_delay,
        joint_noise_sigma=e.joint_noise_sigma,
        joint_biases=config.per_joint(e.joint_biases, "robot_emulator.joint_biases"),
        kinematics=kinematics,
        rng_seed=e.seed,
    )
