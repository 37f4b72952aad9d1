"""
DBRT Rotary Tracker
===================

Factorized Gaussian filter bank over joint angles and encoder biases.

Each joint carries an independent two-state linear Kalman filter

    x = [angle, bias]

    predict:  angle' = angle + w_a,         w_a ~ N(0, joint_sigma^2 * dt)
              bias'  = bias_factor * bias + w_b,  w_b ~ N(0, bias_sigma^2 * dt)

    encoder:  z = angle + bias + v,         v ~ N(0, sensor_sigma^2)

Encoder readings alone cannot separate angle from bias. Until a bias-free
angle observation arrives (``update_angle``, fed from the visual tracker)
encoder corrections move the angle only and the bias keeps its prior mean;
afterwards the full gain applies. A constant reading therefore converges to
the reading minus the prior bias.

Joints are treated as conditionally independent given the kinematic chain,
which keeps the joint-rate update O(J). Shared drift across joints (e.g. a
moving base frame) is not modelled.

Author: DBRT developers
License: GPL-3.0-or-later
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .dbrt_errors import ConfigurationError, DimensionMismatchError, NumericalError

logger = logging.getLogger(__name__)

_H_ENCODER = np.array([1.0, 1.0])
_H_ANGLE = np.array([1.0, 0.0])


@dataclass(frozen=True)
class JointBelief:
    """Gaussian belief over [angle, bias]. Replaced, never mutated."""
    mean: np.ndarray        # (2,)
    covariance: np.ndarray  # (2, 2)

    @property
    def angle_mean(self) -> float:
        return float(self.mean[0])

    @property
    def bias_mean(self) -> float:
        return float(self.mean[1])

    @property
    def angle_variance(self) -> float:
        return float(self.covariance[0, 0])

    @property
    def bias_variance(self) -> float:
        return float(self.covariance[1, 1])


class JointFilter:
    """Recursive estimator of one joint's angle and encoder bias."""

    def __init__(self, joint_sigma: float, bias_sigma: float, bias_factor: float,
                 sensor_sigma: float, initial_angle_sigma: float = 0.1,
                 initial_bias_sigma: float = 0.01):
        if not joint_sigma > 0.0:
            raise ConfigurationError(f"joint process sigma must be positive, got {joint_sigma}")
        if not sensor_sigma > 0.0:
            raise ConfigurationError(f"joint sensor sigma must be positive, got {sensor_sigma}")
        if not bias_sigma >= 0.0:
            raise ConfigurationError(f"bias sigma must be non-negative, got {bias_sigma}")
        if not 0.0 < bias_factor <= 1.0:
            raise ConfigurationError(f"bias factor must lie in (0, 1], got {bias_factor}")
        if not initial_angle_sigma > 0.0 or not initial_bias_sigma >= 0.0:
            raise ConfigurationError("initial sigmas must be positive")

        self.joint_sigma = float(joint_sigma)
        self.bias_sigma = float(bias_sigma)
        self.bias_factor = float(bias_factor)
        self.sensor_sigma = float(sensor_sigma)
        self.initial_angle_sigma = float(initial_angle_sigma)
        self.initial_bias_sigma = float(initial_bias_sigma)

        self.belief = None
        self.bias_observed = False
        self.initialize(0.0)

    def initialize(self, angle: float, bias: float = 0.0):
        self.bias_observed = False
        self.belief = JointBelief(
            mean=np.array([float(angle), float(bias)]),
            covariance=np.diag([self.initial_angle_sigma ** 2,
                                self.initial_bias_sigma ** 2]),
        )

    def predict(self, dt: float):
        if dt < 0.0:
            raise ConfigurationError(f"negative time step {dt}")
        F = np.array([[1.0, 0.0], [0.0, self.bias_factor]])
        Q = np.diag([self.joint_sigma ** 2 * dt, self.bias_sigma ** 2 * dt])

        x = F @ self.belief.mean
        P = F @ self.belief.covariance @ F.T + Q
        self._commit(x, P)

    def update(self, measurement: float):
        """Correct with an encoder reading (angle + bias)."""
        self._correct(measurement, _H_ENCODER, self.sensor_sigma ** 2,
                      angle_only=not self.bias_observed)

    def update_angle(self, angle: float, sigma: float):
        """Correct with a direct, bias-free angle observation."""
        if not sigma > 0.0:
            raise ConfigurationError(f"angle observation sigma must be positive, got {sigma}")
        self._correct(angle, _H_ANGLE, sigma ** 2)
        self.bias_observed = True

    def estimate(self) -> float:
        return self.belief.angle_mean

    def _correct(self, z: float, H: np.ndarray, r: float, angle_only: bool = False):
        z = float(z)
        if not np.isfinite(z):
            raise NumericalError(f"non-finite joint measurement {z}")

        x, P = self.belief.mean, self.belief.covariance
        S = H @ P @ H + r
        K = P @ H / S
        if angle_only:
            K = K * _H_ANGLE
        x_new = x + K * (z - H @ x)

        # Joseph form stays valid for the restricted gain
        A = np.eye(2) - np.outer(K, H)
        P_new = A @ P @ A.T + r * np.outer(K, K)
        self._commit(x_new, P_new)

    def _commit(self, x: np.ndarray, P: np.ndarray):
        if not (np.all(np.isfinite(x)) and np.all(np.isfinite(P))):
            raise NumericalError("joint filter produced NaN/Inf; update rejected")
        self.belief = JointBelief(mean=x, covariance=0.5 * (P + P.T))


class RotaryTracker:
    """Bank of independent JointFilters, one per kinematic joint."""

    def __init__(self, joint_filters: Sequence[JointFilter], default_dt: float = 1e-3):
        if len(joint_filters) == 0:
            raise ConfigurationError("rotary tracker needs at least one joint")
        if default_dt <= 0.0:
            raise ConfigurationError(f"default dt must be positive, got {default_dt}")
        self.joint_filters: List[JointFilter] = list(joint_filters)
        self.default_dt = float(default_dt)

    @property
    def joint_count(self) -> int:
        return len(self.joint_filters)

    def initialize(self, angles: Sequence[float], biases: Optional[Sequence[float]] = None):
        angles = self.check_dimension(angles)
        biases = np.zeros(self.joint_count) if biases is None else self.check_dimension(biases)
        for f, angle, bias in zip(self.joint_filters, angles, biases):
            f.initialize(angle, bias)

    def update(self, measurements: Sequence[float], dt: Optional[float] = None):
        """Predict + encoder update on every joint; all-or-nothing."""
        z = self.check_dimension(measurements)
        dt = self.default_dt if dt is None else float(dt)

        def step(f, zi):
            f.predict(dt)
            f.update(zi)

        self._apply_all(step, z)

    def correct_angles(self, angles: Sequence[float], sigma: float):
        """Feed externally estimated angles back; makes encoder bias observable."""
        z = self.check_dimension(angles)
        self._apply_all(lambda f, zi: f.update_angle(zi, sigma), z)

    def current_estimate(self) -> np.ndarray:
        return np.array([f.estimate() for f in self.joint_filters])

    def current_biases(self) -> np.ndarray:
        return np.array([f.belief.bias_mean for f in self.joint_filters])

    def current_variances(self) -> np.ndarray:
        return np.array([f.belief.angle_variance for f in self.joint_filters])

    def check_dimension(self, values) -> np.ndarray:
        arr = np.asarray(values, dtype=float).ravel()
        if arr.size != self.joint_count:
            raise DimensionMismatchError(
                f"expected {self.joint_count} joint values, got {arr.size}",
                expected=self.joint_count, received=arr.size)
        return arr

    def _apply_all(self, step, z: np.ndarray):
        prior = [(f.belief, f.bias_observed) for f in self.joint_filters]
        try:
            for f, zi in zip(self.joint_filters, z):
                step(f, zi)
        except NumericalError:
            for f, (belief, observed) in zip(self.joint_filters, prior):
                f.belief = belief
                f.bias_observed = observed
            logger.warning("Rotary update rejected, prior beliefs restored")
            raise
