"""
DBRT Robot Emulator
===================

Simulated robot producing joint-encoder measurements and rendered depth
images at independent rates, for exercising the fusion tracker without
hardware.

- ``dilation`` slows simulated time relative to wall time
- ``visual_sensor_delay`` renders images from the state that many
  simulated seconds in the past
- encoders report ``angle + bias + N(0, joint_noise_sigma^2)``

Author: DBRT developers
License: GPL-3.0-or-later
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, List, Optional, Sequence

import numpy as np

from .dbrt_errors import ConfigurationError
from .dbrt_kinematics import KinematicsGuard

logger = logging.getLogger(__name__)

_TIME_EPS = 1e-9


class RobotAnimator:
    """Strategy moving the emulated robot between sensor ticks."""

    def animate(self, current: np.ndarray, dt: float, dilation: float) -> np.ndarray:
        raise NotImplementedError


class SinusoidAnimator(RobotAnimator):
    """Drives selected state entries with a slow sinusoidal velocity."""

    def __init__(self, indices: Sequence[int], amplitude: float = 0.1):
        self.indices = np.asarray(list(indices), dtype=int)
        self.amplitude = float(amplitude)
        self.t = 0.0

    def animate(self, current, dt, dilation):
        self.t += dt
        nxt = np.array(current, dtype=float)
        nxt[self.indices] += self.amplitude * dt / dilation * np.sin(self.t / dilation)
        return nxt


class RobotEmulator:
    """
    Emulated robot with a joint sensor and a depth camera.

    Args:
        render: configuration -> depth image
        initial_state: full configuration (joints first)
        joint_count: number of encoder-measured joints
        animator: motion strategy, static robot if None
        joint_rate: encoder rate (Hz, simulated time)
        image_rate: camera rate (Hz, simulated time)
        dilation: wall seconds per simulated second
        visual_sensor_delay: image latency (simulated seconds)
        joint_noise_sigma: encoder noise std
        joint_biases: encoder offsets, scalar or per joint
        kinematics: optional guard; rendering runs in its critical section
        rng_seed: seed for encoder noise
    """

    def __init__(self, render: Callable[[np.ndarray], np.ndarray],
                 initial_state: Sequence[float],
                 joint_count: Optional[int] = None,
                 animator: Optional[RobotAnimator] = None,
                 joint_rate: float = 1000.0,
                 image_rate: float = 30.0,
                 dilation: float = 1.0,
                 visual_sensor_delay: float = 0.0,
                 joint_noise_sigma: float = 0.0,
                 joint_biases=0.0,
                 kinematics: Optional[KinematicsGuard] = None,
                 rng_seed: Optional[int] = None):
        state = np.asarray(initial_state, dtype=float).ravel()
        joint_count = state.size if joint_count is None else int(joint_count)
        if not 0 < joint_count <= state.size:
            raise ConfigurationError(f"invalid joint count {joint_count} for state of size {state.size}")
        if joint_rate <= 0.0 or image_rate <= 0.0 or dilation <= 0.0:
            raise ConfigurationError("sensor rates and dilation must be positive")
        if visual_sensor_delay < 0.0 or joint_noise_sigma < 0.0:
            raise ConfigurationError("delay and noise must be non-negative")

        biases = np.asarray(joint_biases, dtype=float)
        self.joint_biases = np.full(joint_count, float(biases)) if biases.ndim == 0 else biases
        if self.joint_biases.shape != (joint_count,):
            raise ConfigurationError(f"joint_biases must have {joint_count} entries")

        self.render = render
        self.joint_count = joint_count
        self.animator = animator
        self.joint_rate = float(joint_rate)
        self.image_rate = float(image_rate)
        self.dilation = float(dilation)
        self.visual_sensor_delay = float(visual_sensor_delay)
        self.joint_noise_sigma = float(joint_noise_sigma)
        self.kinematics = kinematics
        self.rng = np.random.default_rng(rng_seed)

        self._lock = threading.Lock()
        self._state = state
        self._time = 0.0
        # (time, state) pairs spanning at least visual_sensor_delay
        self._history = deque([(0.0, state.copy())])
        self._next_joint_time = 1.0 / self.joint_rate
        self._next_image_time = 1.0 / self.image_rate

        self._joint_callbacks: List[Callable] = []
        self._image_callbacks: List[Callable] = []

        self._stop = threading.Event()
        self._resumed = threading.Event()
        self._resumed.set()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Callback registration
    # ------------------------------------------------------------------

    def joint_sensor_callback(self, callback: Callable[[np.ndarray, float], None]):
        self._joint_callbacks.append(callback)

    def image_sensor_callback(self, callback: Callable[[np.ndarray, float], None]):
        self._image_callbacks.append(callback)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> np.ndarray:
        with self._lock:
            return self._state.copy()

    @property
    def time(self) -> float:
        with self._lock:
            return self._time

    @property
    def is_paused(self) -> bool:
        return not self._resumed.is_set()

    def step(self, dt: float):
        """Advance simulated time by ``dt`` and emit every due measurement."""
        self._advance(dt)
        while True:
            with self._lock:
                joint_due = self._next_joint_time <= self._time + _TIME_EPS
            if not joint_due:
                break
            self._emit_joints()
        while True:
            with self._lock:
                image_due = self._next_image_time <= self._time + _TIME_EPS
            if not image_due:
                break
            self._emit_image()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self):
        if self._threads:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._joint_loop, name="emulator-joints", daemon=True),
            threading.Thread(target=self._image_loop, name="emulator-image", daemon=True),
        ]
        for t in self._threads:
            t.start()
        logger.info("Robot emulator running (joints %.0f Hz, images %.0f Hz, dilation %.1f)",
                    self.joint_rate, self.image_rate, self.dilation)

    def pause(self):
        self._resumed.clear()
        logger.info("Robot emulator paused")

    def resume(self):
        self._resumed.set()
        logger.info("Robot emulator resumed")

    def toggle_pause(self):
        if self.is_paused:
            self.resume()
        else:
            self.pause()

    def shutdown(self, timeout: float = 2.0):
        self._stop.set()
        self._resumed.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []
        logger.info("Robot emulator shut down")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _advance(self, dt: float):
        with self._lock:
            if self.animator is not None:
                self._state = self.animator.animate(self._state, dt, self.dilation)
            self._time += dt
            self._history.append((self._time, self._state.copy()))
            horizon = self._time - self.visual_sensor_delay + _TIME_EPS
            while len(self._history) > 1 and self._history[1][0] <= horizon:
                self._history.popleft()

    def _emit_joints(self):
        with self._lock:
            t = self._time
            self._next_joint_time += 1.0 / self.joint_rate
            z = self._state[:self.joint_count] + self.joint_biases
        if self.joint_noise_sigma > 0.0:
            z = z + self.rng.normal(0.0, self.joint_noise_sigma, self.joint_count)
        for callback in self._joint_callbacks:
            callback(z, t)

    def _emit_image(self):
        with self._lock:
            self._next_image_time += 1.0 / self.image_rate
            t_capture = max(self._time - self.visual_sensor_delay, 0.0)
            state = self._history[0][1]
            for t_hist, s in self._history:
                if t_hist <= t_capture + _TIME_EPS:
                    state = s
            state = state.copy()

        if self.kinematics is not None:
            image = self.kinematics.run_exclusive(self.render, state)
        else:
            image = self.render(state)
        for callback in self._image_callbacks:
            callback(np.asarray(image, dtype=float), t_capture)

    def _joint_loop(self):
        period = 1.0 / self.joint_rate
        while not self._stop.is_set():
            if not self._resumed.wait(timeout=0.1):
                continue
            started = time.monotonic()
            try:
                self._advance(period)
                self._emit_joints()
            except Exception:
                logger.exception("Joint sensor tick failed")
            self._stop.wait(max(period * self.dilation - (time.monotonic() - started), 0.0))

    def _image_loop(self):
        period = 1.0 / self.image_rate
        while not self._stop.is_set():
            if not self._resumed.wait(timeout=0.1):
                continue
            started = time.monotonic()
            try:
                self._emit_image()
            except Exception:
                logger.exception("Image sensor tick failed")
            self._stop.wait(max(period * self.dilation - (time.monotonic() - started), 0.0))
