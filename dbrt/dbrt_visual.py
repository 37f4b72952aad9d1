"""
DBRT Visual Tracker
===================

Sequential importance resampling over the full robot configuration
(joint angles plus any extra pose dimensions). Each particle is rendered
into a predicted depth image and scored pixel-wise against the measured
image with the range observation model.

Rendering is an external capability ``render(configuration) -> depth``
returning an image of the session's fixed resolution. Non-finite or
non-positive rendered depths mean "no surface along this ray".

Author: DBRT developers
License: GPL-3.0-or-later
"""

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from .dbrt_errors import (
    ConfigurationError, DegenerateFilterError, DimensionMismatchError,
    ObservationUnavailableError,
)
from .dbrt_kinematics import KinematicsGuard
from .dbrt_observation import RangeObservationModel

logger = logging.getLogger(__name__)


@dataclass
class Particle:
    """Single configuration hypothesis."""
    state: np.ndarray
    weight: float


@dataclass
class ParticleSet:
    """(N, D) states with normalized (N,) weights."""
    states: np.ndarray
    weights: np.ndarray

    def __len__(self):
        return self.states.shape[0]

    def __iter__(self):
        for s, w in zip(self.states, self.weights):
            yield Particle(state=s.copy(), weight=float(w))


class VisualTracker:
    """
    Particle filter over full-body configuration scored against depth images.

    Args:
        render: configuration -> predicted depth image
        observation_model: per-pixel range likelihood
        state_dim: configuration dimension
        n_particles: fixed particle count
        process_sigma: diffusion std per dimension per sqrt(second)
        initial_sigma: spread used by initialize / reinitialize
        resample_threshold: resample when ESS < threshold * N
        occlusion_margin: pixel counts as occluded when the reading is this
            much nearer than the rendered surface
        downsampling_factor: image stride applied to observed and rendered
        estimate_mode: "mean" (weighted mean) or "map" (best particle)
        kinematics: optional guard; rendering then runs in its critical section
        rng_seed: seed for reproducibility
    """

    def __init__(self, render: Callable[[np.ndarray], np.ndarray],
                 observation_model: RangeObservationModel,
                 state_dim: int,
                 n_particles: int = 200,
                 process_sigma=0.05,
                 initial_sigma=0.05,
                 resample_threshold: float = 0.5,
                 occlusion_margin: float = 0.02,
                 downsampling_factor: int = 1,
                 estimate_mode: str = "mean",
                 kinematics: Optional[KinematicsGuard] = None,
                 rng_seed: Optional[int] = None):
        if n_particles <= 0 or state_dim <= 0:
            raise ConfigurationError("particle count and state dimension must be positive")
        if estimate_mode not in ("mean", "map"):
            raise ConfigurationError(f"unknown estimate mode {estimate_mode!r}")
        if downsampling_factor < 1:
            raise ConfigurationError("downsampling factor must be >= 1")

        self.render = render
        self.observation_model = observation_model
        self.dim_x = int(state_dim)
        self.n_particles = int(n_particles)
        self.q_std = self._per_dim(process_sigma, "process_sigma")
        self.initial_std = self._per_dim(initial_sigma, "initial_sigma")
        self.resample_threshold = float(resample_threshold)
        self.occlusion_margin = float(occlusion_margin)
        self.downsampling_factor = int(downsampling_factor)
        self.estimate_mode = estimate_mode
        self.kinematics = kinematics
        self.rng = np.random.default_rng(rng_seed)

        self.particles = np.zeros((self.n_particles, self.dim_x))
        self.weights = np.ones(self.n_particles) / self.n_particles
        self.resample_count = 0
        self._initialized = False

    def _per_dim(self, value, name: str) -> np.ndarray:
        arr = np.asarray(value, dtype=float)
        if arr.ndim == 0:
            arr = np.full(self.dim_x, float(arr))
        if arr.shape != (self.dim_x,) or np.any(arr < 0.0):
            raise ConfigurationError(f"{name} must be non-negative with {self.dim_x} entries")
        return arr

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, state, spread=None):
        """Sample particles around ``state`` with uniform weights."""
        state = np.asarray(state, dtype=float).ravel()
        if state.size != self.dim_x:
            raise DimensionMismatchError(
                f"expected state of dimension {self.dim_x}, got {state.size}",
                expected=self.dim_x, received=state.size)
        std = self.initial_std if spread is None else self._per_dim(spread, "spread")

        self.particles = state + self.rng.normal(0.0, 1.0, (self.n_particles, self.dim_x)) * std
        self.weights = np.ones(self.n_particles) / self.n_particles
        self._initialized = True

    def reinitialize(self, state):
        """Recover from degeneracy around a trusted estimate."""
        logger.info("Reinitializing %d particles around last known estimate", self.n_particles)
        self.initialize(state)

    def predict(self, dt: float):
        """Diffuse every particle independently."""
        if dt < 0.0:
            raise ConfigurationError(f"negative time step {dt}")
        noise = self.rng.normal(0.0, 1.0, (self.n_particles, self.dim_x))
        self.particles = self.particles + noise * self.q_std * np.sqrt(dt)

    def update(self, depth_image: np.ndarray) -> float:
        """Reweight particles against a measured depth image.

        Returns:
            Effective sample size ratio (ESS / N) after the update.
        """
        if not self._initialized:
            raise ConfigurationError("visual tracker used before initialize()")

        observed = self._downsample(np.asarray(depth_image, dtype=float))

        log_likelihoods = np.empty(self.n_particles)
        for i in range(self.n_particles):
            predicted = self._predict_image(self.particles[i], observed.shape)
            occluded = observed < predicted - self.occlusion_margin
            log_likelihoods[i] = self.observation_model.log_likelihood(
                observed, predicted, occluded)

        with np.errstate(divide='ignore'):
            log_w = np.log(self.weights) + log_likelihoods
        log_w[~np.isfinite(log_w)] = -np.inf

        max_lw = np.max(log_w)
        if not np.isfinite(max_lw):
            # Weights untouched: still normalized, never NaN
            raise DegenerateFilterError(
                "all particle weights collapsed to zero")

        w = np.exp(log_w - max_lw)
        self.weights = w / np.sum(w)

        ess_ratio = self.effective_sample_size() / self.n_particles
        if ess_ratio < self.resample_threshold:
            self._resample()
            logger.debug("Resampled particles (ESS ratio %.3f)", ess_ratio)
        return ess_ratio

    def _downsample(self, image: np.ndarray) -> np.ndarray:
        f = self.downsampling_factor
        if f == 1:
            return image
        return image[::f, ::f] if image.ndim >= 2 else image[::f]

    def image_shape(self, state) -> tuple:
        """Full-resolution shape of the image rendered for ``state``."""
        return self._render(np.asarray(state, dtype=float)).shape

    def _render(self, state: np.ndarray) -> np.ndarray:
        try:
            if self.kinematics is not None:
                rendered = self.kinematics.run_exclusive(self.render, state)
            else:
                rendered = self.render(state)
        except Exception as exc:
            raise ObservationUnavailableError(f"render failed: {exc}") from exc
        return np.asarray(rendered, dtype=float)

    def _predict_image(self, state: np.ndarray, shape) -> np.ndarray:
        predicted = self._downsample(self._render(state))
        if predicted.shape != shape:
            raise DimensionMismatchError(
                f"rendered depth {predicted.shape} does not match observed {shape}",
                expected=shape, received=predicted.shape)
        return np.where(np.isfinite(predicted) & (predicted > 0.0), predicted, np.inf)

    def _resample(self):
        indices = self._systematic_resample()
        self.particles = self.particles[indices]
        self.weights = np.ones(self.n_particles) / self.n_particles
        self.resample_count += 1

    def _systematic_resample(self) -> np.ndarray:
        """Low-variance systematic resampling."""
        cumsum = np.cumsum(self.weights)
        cumsum[-1] = 1.0

        u0 = self.rng.random() / self.n_particles
        u = u0 + np.arange(self.n_particles) / self.n_particles

        return np.searchsorted(cumsum, u)

    def effective_sample_size(self) -> float:
        return 1.0 / np.sum(self.weights ** 2)

    def current_estimate(self) -> np.ndarray:
        if self.estimate_mode == "map":
            return self.particles[np.argmax(self.weights)].copy()
        return np.sum(self.particles * self.weights[:, np.newaxis], axis=0)

    def particle_set(self) -> ParticleSet:
        return ParticleSet(states=self.particles.copy(), weights=self.weights.copy())

    def restore(self, snapshot: ParticleSet):
        """Roll back to a snapshot taken with ``particle_set``."""
        self.particles = snapshot.states.copy()
        self.weights = snapshot.weights.copy()

    def particles_list(self) -> List[Particle]:
        return list(self.particle_set())
