"""
DBRT Configuration
==================

Dataclass configuration tree loaded from YAML. Parameter names follow the
tracker's parameter files::

    fusion_tracker:
      joint_count: 7
      joint_transition:
        joint_sigmas: 0.01      # scalar broadcasts to every joint
        bias_sigmas: 0.001
        bias_factors: 1.0
      joint_observation:
        joint_sigmas: [0.005, 0.005, ...]
      visual_tracker:
        particle_count: 200
        observation:
          tail_weight: 0.01
          ...
    robot_emulator:
      joint_sensor_rate: 1000.0
      ...

Author: DBRT developers
License: GPL-3.0-or-later
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import numpy as np
import yaml

from .dbrt_errors import ConfigurationError
from .dbrt_observation import RangeModelParameters

logger = logging.getLogger(__name__)


def per_joint(value, joint_count: int, name: str) -> np.ndarray:
    """Broadcast a scalar or check a list against the joint count."""
    arr = np.asarray(value, dtype=float)
    if arr.ndim == 0:
        return np.full(joint_count, float(arr))
    if arr.shape != (joint_count,):
        raise ConfigurationError(
            f"{name}: expected {joint_count} entries, got {arr.size}")
    return arr.copy()


@dataclass
class JointTransitionConfig:
    """Per-joint process model. Scalars or per-joint lists."""
    joint_sigmas: Any = 0.01
    bias_sigmas: Any = 0.001
    bias_factors: Any = 1.0
    initial_angle_sigma: float = 0.1
    initial_bias_sigma: float = 0.01


@dataclass
class JointSensorConfig:
    """Encoder measurement noise."""
    joint_sigmas: Any = 0.005


@dataclass
class VisualTrackerConfig:
    particle_count: int = 200
    resample_threshold: float = 0.5  # ESS / N
    process_sigma: Any = 0.05        # per state dim, per sqrt(second)
    initial_sigma: Any = 0.05
    occlusion_margin: float = 0.02   # metres
    downsampling_factor: int = 1
    estimate_mode: str = "mean"      # "mean" or "map"
    state_dim: Optional[int] = None  # defaults to joint_count
    seed: Optional[int] = None
    observation: RangeModelParameters = field(default_factory=RangeModelParameters)


@dataclass
class FusionConfig:
    blend_weights: Any = 0.0         # 0 = encoders only, 1 = visual only
    visual_bias_correction: bool = False
    visual_sigma: float = 0.02
    shutdown_timeout: float = 2.0


@dataclass
class EmulatorConfig:
    joint_sensor_rate: float = 1000.0
    visual_sensor_rate: float = 30.0
    dilation: float = 1.0
    visual_sensor_delay: float = 0.0
    joint_noise_sigma: float = 0.0
    joint_biases: Any = 0.0
    initial_state: Optional[List[float]] = None
    animated_joints: Optional[List[int]] = None
    amplitude: float = 0.1
    seed: Optional[int] = None


@dataclass
class TrackerConfig:
    """Complete configuration for a fusion tracker session."""
    joint_count: int
    joint_rate: float = 1000.0
    image_rate: float = 30.0
    joint_transition: JointTransitionConfig = field(default_factory=JointTransitionConfig)
    joint_observation: JointSensorConfig = field(default_factory=JointSensorConfig)
    visual_tracker: VisualTrackerConfig = field(default_factory=VisualTrackerConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    emulator: EmulatorConfig = field(default_factory=EmulatorConfig)

    def __post_init__(self):
        self.validate()

    @property
    def state_dim(self) -> int:
        return self.visual_tracker.state_dim or self.joint_count

    def per_joint(self, value, name: str) -> np.ndarray:
        return per_joint(value, self.joint_count, name)

    def validate(self):
        """Raise ConfigurationError on any inconsistent parameter."""
        if int(self.joint_count) <= 0:
            raise ConfigurationError(f"joint_count must be positive, got {self.joint_count}")
        if self.joint_rate <= 0.0 or self.image_rate <= 0.0:
            raise ConfigurationError("sensor rates must be positive")

        t = self.joint_transition
        if np.any(self.per_joint(t.joint_sigmas, "joint_transition.joint_sigmas") <= 0.0):
            raise ConfigurationError("joint_transition.joint_sigmas must be positive")
        if np.any(self.per_joint(t.bias_sigmas, "joint_transition.bias_sigmas") < 0.0):
            raise ConfigurationError("joint_transition.bias_sigmas must be non-negative")
        factors = self.per_joint(t.bias_factors, "joint_transition.bias_factors")
        if np.any(factors <= 0.0) or np.any(factors > 1.0):
            raise ConfigurationError("joint_transition.bias_factors must lie in (0, 1]")
        if t.initial_angle_sigma <= 0.0 or t.initial_bias_sigma < 0.0:
            raise ConfigurationError("initial joint sigmas must be positive")
        if np.any(self.per_joint(self.joint_observation.joint_sigmas,
                                 "joint_observation.joint_sigmas") <= 0.0):
            raise ConfigurationError("joint_observation.joint_sigmas must be positive")

        v = self.visual_tracker
        if v.particle_count <= 0:
            raise ConfigurationError("particle_count must be positive")
        if not 0.0 <= v.resample_threshold <= 1.0:
            raise ConfigurationError("resample_threshold must lie in [0, 1]")
        if v.downsampling_factor < 1:
            raise ConfigurationError("downsampling_factor must be >= 1")
        if v.estimate_mode not in ("mean", "map"):
            raise ConfigurationError(f"unknown estimate_mode {v.estimate_mode!r}")
        if self.state_dim < self.joint_count:
            raise ConfigurationError("visual state_dim must cover every joint")
        for name in ("process_sigma", "initial_sigma"):
            sig = np.asarray(getattr(v, name), dtype=float)
            if sig.ndim == 0:
                sig = np.full(self.state_dim, float(sig))
            if sig.shape != (self.state_dim,) or np.any(sig < 0.0):
                raise ConfigurationError(f"visual_tracker.{name} invalid: {getattr(v, name)}")

        w = self.per_joint(self.fusion.blend_weights, "fusion.blend_weights")
        if np.any(w < 0.0) or np.any(w > 1.0):
            raise ConfigurationError("fusion.blend_weights must lie in [0, 1]")
        if self.fusion.visual_sigma <= 0.0:
            raise ConfigurationError("fusion.visual_sigma must be positive")

        e = self.emulator
        if e.joint_sensor_rate <= 0.0 or e.visual_sensor_rate <= 0.0 or e.dilation <= 0.0:
            raise ConfigurationError("emulator rates and dilation must be positive")
        if e.initial_state is not None and len(e.initial_state) != self.state_dim:
            raise ConfigurationError(
                f"emulator.initial_state: expected {self.state_dim} entries, "
                f"got {len(e.initial_state)}")

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackerConfig":
        """Build from a parsed parameter tree (``fusion_tracker`` section
        optional, ``robot_emulator`` section optional)."""
        data = dict(data or {})
        tracker = dict(data.get("fusion_tracker", data))
        emulator = data.get("robot_emulator", tracker.get("robot_emulator", {}))

        visual = dict(tracker.get("visual_tracker", {}))
        observation = _build(RangeModelParameters, visual.pop("observation", {}),
                             "visual_tracker.observation")

        joint_count = tracker.get("joint_count")
        if joint_count is None and emulator.get("initial_state") is not None:
            joint_count = len(emulator["initial_state"])
        if joint_count is None:
            raise ConfigurationError("joint_count is required")

        return cls(
            joint_count=int(joint_count),
            joint_rate=float(tracker.get("joint_rate", 1000.0)),
            image_rate=float(tracker.get("image_rate", 30.0)),
            joint_transition=_build(JointTransitionConfig,
                                    tracker.get("joint_transition", {}), "joint_transition"),
            joint_observation=_build(JointSensorConfig,
                                     tracker.get("joint_observation", {}), "joint_observation"),
            visual_tracker=_build(VisualTrackerConfig, dict(visual, observation=observation),
                                  "visual_tracker"),
            fusion=_build(FusionConfig, tracker.get("fusion", {}), "fusion"),
            emulator=_build(EmulatorConfig, emulator, "robot_emulator"),
        )


def _build(cls, section: Dict[str, Any], name: str):
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        logger.warning("%s: ignoring unknown parameters %s", name, sorted(unknown))
    try:
        return cls(**{k: v for k, v in section.items() if k in known})
    except TypeError as exc:
        raise ConfigurationError(f"{name}: {exc}") from exc


def load_config(config_path: str) -> TrackerConfig:
    """Load a YAML parameter file."""
    with open(config_path, 'r') as f:
        data = yaml.safe_load(f)
    logger.info("Loaded tracker configuration from %s", config_path)
    return TrackerConfig.from_dict(data or {})
