"""DBRT: depth-based robot tracking by asynchronous encoder / depth-image fusion.

Joint encoders feed a factorized Kalman filter bank (one angle + bias filter
per joint); depth images feed a particle filter scored with a range-sensor
likelihood that models occlusion; a FusionTracker combines both streams into
one immutable snapshot.

Quick Start::

    from dbrt import load_config, create_fusion_tracker
    config = load_config("config/fusion_tracker.yaml")
    fusion = create_fusion_tracker(config, render)
    fusion.initialize(initial_configuration)
    fusion.run()
    # sensor callbacks -> fusion.joints_observation_callback / image_observation_callback
    state = fusion.current_state()

Author: DBRT developers
License: GPL-3.0-or-later
"""

__version__ = "0.3.0"
__license__ = "GPL-3.0-or-later"

from .dbrt_errors import (
    DbrtError,
    ConfigurationError,
    DimensionMismatchError,
    NumericalError,
    DegenerateFilterError,
    ObservationUnavailableError,
)
from .dbrt_observation import RangeModelParameters, RangeObservationModel
from .dbrt_rotary import JointBelief, JointFilter, RotaryTracker
from .dbrt_visual import Particle, ParticleSet, VisualTracker
from .dbrt_kinematics import KinematicsGuard
from .dbrt_fusion import FusedState, FusionTracker, StreamStatistics
from .dbrt_config import (
    TrackerConfig,
    JointTransitionConfig,
    JointSensorConfig,
    VisualTrackerConfig,
    FusionConfig,
    EmulatorConfig,
    load_config,
)
from .dbrt_emulator import RobotAnimator, SinusoidAnimator, RobotEmulator
from .dbrt_factory import (
    create_joint_filters,
    create_rotary_tracker,
    create_visual_tracker,
    create_fusion_tracker,
    create_robot_emulator,
)

__all__ = [
    "__version__",
    # Errors
    "DbrtError", "ConfigurationError", "DimensionMismatchError", "NumericalError",
    "DegenerateFilterError", "ObservationUnavailableError",
    # Observation model
    "RangeModelParameters", "RangeObservationModel",
    # Trackers
    "JointBelief", "JointFilter", "RotaryTracker",
    "Particle", "ParticleSet", "VisualTracker",
    "KinematicsGuard", "FusedState", "FusionTracker", "StreamStatistics",
    # Configuration
    "TrackerConfig", "JointTransitionConfig", "JointSensorConfig",
    "VisualTrackerConfig", "FusionConfig", "EmulatorConfig", "load_config",
    # Emulation
    "RobotAnimator", "SinusoidAnimator", "RobotEmulator",
    # Factories
    "create_joint_filters", "create_rotary_tracker", "create_visual_tracker",
    "create_fusion_tracker", "create_robot_emulator",
]
