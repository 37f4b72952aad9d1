"""
DBRT Fusion Tracker
===================

Coordinates the joint-rate RotaryTracker and the frame-rate VisualTracker
and publishes one immutable FusedState snapshot.

Threading:
  - one worker per stream, fed through a single-slot queue; a newer
    measurement replaces an unprocessed one (backpressure by drop)
  - each tracker has its own lock, so the two producers never wait on each
    other's filter updates
  - the FusedState buffer is swapped copy-on-write under a short lock
  - lock order is visual -> joints -> state
  - malformed joint vectors and images of the wrong resolution are
    rejected on the calling thread before anything is queued
  - measurements still queued at shutdown count as dropped

Fusion policy (per joint j, weight w_j in [0, 1]):

    fused_j = rotary_j + w_j * (visual_j - rotary_j)

w_j = 0 keeps the encoder estimate authoritative. With visual bias
correction enabled the visual estimate is also fed back to the joint
filters as a bias-free angle observation.

Author: DBRT developers
License: GPL-3.0-or-later
"""

import logging
import queue
import threading
import time
import warnings
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import numpy as np

from .dbrt_errors import (
    ConfigurationError, DbrtError, DegenerateFilterError, DimensionMismatchError,
    ObservationUnavailableError,
)
from .dbrt_kinematics import KinematicsGuard
from .dbrt_rotary import RotaryTracker
from .dbrt_visual import VisualTracker

logger = logging.getLogger(__name__)

JOINTS = "joints"
IMAGE = "image"

_SHUTDOWN = object()


def _frozen(values) -> Optional[np.ndarray]:
    if values is None:
        return None
    arr = np.array(values, dtype=float)
    arr.setflags(write=False)
    return arr


@dataclass(frozen=True)
class FusedState:
    """Immutable fused snapshot; arrays are read-only."""
    joint_angles: np.ndarray
    rotary_angles: np.ndarray
    visual_state: Optional[np.ndarray]
    timestamp: float
    source: str
    sequence: int

    @property
    def joint_count(self) -> int:
        return self.joint_angles.shape[0]


@dataclass
class StreamStatistics:
    processed: int = 0
    dropped: int = 0
    rejected: int = 0
    last_timestamp: Optional[float] = None


class FusionTracker:
    """
    Asynchronous multi-rate fusion of encoder and depth-image trackers.

    Usage::

        fusion = FusionTracker(rotary, visual, blend_weights=0.0)
        fusion.initialize(initial_configuration)
        fusion.run()
        robot.joint_sensor_callback(fusion.joints_observation_callback)
        robot.image_sensor_callback(fusion.image_observation_callback)
        ...
        state = fusion.current_state()
        fusion.shutdown()

    Before ``run()`` (or after ``shutdown()``) callbacks are processed
    synchronously on the calling thread.
    """

    def __init__(self, rotary_tracker: RotaryTracker, visual_tracker: VisualTracker,
                 blend_weights=0.0,
                 visual_bias_correction: bool = False,
                 visual_sigma: float = 0.02,
                 image_dt: float = 1.0 / 30.0,
                 shutdown_timeout: float = 2.0,
                 kinematics: Optional[KinematicsGuard] = None,
                 clock: Callable[[], float] = time.monotonic):
        joint_count = rotary_tracker.joint_count
        if visual_tracker.dim_x < joint_count:
            raise ConfigurationError(
                f"visual state dimension {visual_tracker.dim_x} smaller than "
                f"joint count {joint_count}")
        weights = np.asarray(blend_weights, dtype=float)
        if weights.ndim == 0:
            weights = np.full(joint_count, float(weights))
        if weights.shape != (joint_count,) or np.any(weights < 0.0) or np.any(weights > 1.0):
            raise ConfigurationError(f"blend weights must be {joint_count} values in [0, 1]")
        if visual_sigma <= 0.0 or image_dt <= 0.0:
            raise ConfigurationError("visual_sigma and image_dt must be positive")

        self.rotary_tracker = rotary_tracker
        self.visual_tracker = visual_tracker
        self.blend_weights = weights
        self.visual_bias_correction = bool(visual_bias_correction)
        self.visual_sigma = float(visual_sigma)
        self.image_dt = float(image_dt)
        self.shutdown_timeout = float(shutdown_timeout)
        self.kinematics = kinematics
        self.clock = clock

        self._joints_lock = threading.Lock()
        self._visual_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._shape_lock = threading.Lock()

        self._last_joint_time = None
        self._last_image_time = None
        self._image_shape = None
        self._sequence = 0
        self._state = FusedState(
            joint_angles=_frozen(rotary_tracker.current_estimate()),
            rotary_angles=_frozen(rotary_tracker.current_estimate()),
            visual_state=None,
            timestamp=self.clock(),
            source="initial",
            sequence=0,
        )

        self._queues = {JOINTS: queue.Queue(maxsize=1), IMAGE: queue.Queue(maxsize=1)}
        self._stats: Dict[str, StreamStatistics] = {
            JOINTS: StreamStatistics(), IMAGE: StreamStatistics()}
        self._threads = []
        self._stop = threading.Event()
        self._paused = threading.Event()
        self._running = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def joint_count(self) -> int:
        return self.rotary_tracker.joint_count

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused.is_set()

    def initialize(self, state, timestamp: Optional[float] = None):
        """Initialize both trackers from a full configuration."""
        state = np.asarray(state, dtype=float).ravel()
        with self._visual_lock:
            self.visual_tracker.initialize(state)
            visual = self.visual_tracker.current_estimate()
            self._latch_resolution(state)
            with self._joints_lock:
                self.rotary_tracker.initialize(state[:self.joint_count])
                self._last_joint_time = None
                self._last_image_time = None
                self._publish("initial", self._now(timestamp),
                              rotary=self.rotary_tracker.current_estimate(),
                              visual=visual)
        logger.info("Fusion tracker initialized with %d joints, %d particles",
                    self.joint_count, self.visual_tracker.n_particles)

    def current_state(self) -> FusedState:
        with self._state_lock:
            return self._state

    def joints_observation_callback(self, measurement, timestamp: Optional[float] = None) -> bool:
        """Ingest an encoder vector. Returns False when dropped (paused)."""
        if self.is_paused:
            self._count(JOINTS, dropped=1)
            return False
        # Reject malformed vectors on the caller's thread
        try:
            z = self.rotary_tracker.check_dimension(measurement)
        except DbrtError:
            self._count(JOINTS, rejected=1)
            raise
        t = self._now(timestamp)
        if self._offer(JOINTS, (z, t)):
            return True
        self._process_joints(z, t)
        return True

    def image_observation_callback(self, depth_image, timestamp: Optional[float] = None) -> bool:
        """Ingest a depth image. Returns False when dropped (paused)."""
        if self.is_paused:
            self._count(IMAGE, dropped=1)
            return False
        image = np.asarray(depth_image, dtype=float)
        try:
            self._check_resolution(image.shape)
        except DbrtError:
            self._count(IMAGE, rejected=1)
            raise
        t = self._now(timestamp)
        if self._offer(IMAGE, (image, t)):
            return True
        return self._process_image(image, t)

    def run(self):
        """Start the joint and image worker threads."""
        with self._lifecycle_lock:
            if self._running:
                return
            self._stop.clear()
            for stream in self._queues:
                self._drain(stream)
            self._threads = [
                threading.Thread(target=self._worker, args=(JOINTS, self._process_joints),
                                 name="dbrt-joints", daemon=True),
                threading.Thread(target=self._worker, args=(IMAGE, self._process_image),
                                 name="dbrt-image", daemon=True),
            ]
            self._running = True
            for t in self._threads:
                t.start()
        logger.info("Fusion tracker running")

    def shutdown(self):
        """Cancel pending work and join the workers. Idempotent."""
        with self._lifecycle_lock:
            if not self._running:
                return
            self._running = False
            self._stop.set()
            for stream, q in self._queues.items():
                self._drain(stream)
                q.put_nowait(_SHUTDOWN)
            for t in self._threads:
                t.join(timeout=self.shutdown_timeout)
                if t.is_alive():
                    logger.warning("Worker %s did not stop within %.1fs",
                                   t.name, self.shutdown_timeout)
            self._threads = []
        logger.info("Fusion tracker shut down")

    def pause(self):
        self._paused.set()
        logger.info("Fusion tracker paused")

    def resume(self):
        self._paused.clear()
        logger.info("Fusion tracker resumed")

    def link_poses(self) -> Any:
        """Forward kinematics of the current fused joint angles."""
        if self.kinematics is None:
            raise ConfigurationError("no kinematics attached to the fusion tracker")
        return self.kinematics.forward_kinematics(self.current_state().joint_angles)

    def get_statistics(self) -> Dict[str, Dict[str, Any]]:
        with self._stats_lock:
            return {name: dict(vars(s)) for name, s in self._stats.items()}

    def __enter__(self):
        self.run()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    # ------------------------------------------------------------------
    # Stream processing
    # ------------------------------------------------------------------

    def _process_joints(self, z: np.ndarray, t: float) -> bool:
        with self._joints_lock:
            dt = None if self._last_joint_time is None else max(t - self._last_joint_time, 0.0)
            try:
                self.rotary_tracker.update(z, dt)
            except DbrtError:
                self._count(JOINTS, rejected=1)
                raise
            self._last_joint_time = t
            self._publish(JOINTS, t, rotary=self.rotary_tracker.current_estimate())
        self._count(JOINTS, processed=1, timestamp=t)
        return True

    def _process_image(self, image: np.ndarray, t: float) -> bool:
        with self._visual_lock:
            if not self.visual_tracker.initialized:
                self.visual_tracker.initialize(self._visual_anchor())

            dt = self.image_dt if self._last_image_time is None \
                else max(t - self._last_image_time, 0.0)
            snapshot = self.visual_tracker.particle_set()
            try:
                self.visual_tracker.predict(dt)
                self.visual_tracker.update(image)
            except ObservationUnavailableError as exc:
                self.visual_tracker.restore(snapshot)
                self._count(IMAGE, rejected=1)
                logger.warning("Skipping image update: %s", exc)
                return False
            except DegenerateFilterError as exc:
                warnings.warn(f"visual tracker degenerate, reinitializing: {exc}",
                              RuntimeWarning)
                logger.warning("Visual tracker degenerate; reinitializing around joint estimate")
                self.visual_tracker.reinitialize(self._visual_anchor())
                self._count(IMAGE, rejected=1)
                return False
            except DbrtError:
                self.visual_tracker.restore(snapshot)
                self._count(IMAGE, rejected=1)
                raise

            visual = self.visual_tracker.current_estimate()

            if self.visual_bias_correction:
                with self._joints_lock:
                    try:
                        self.rotary_tracker.correct_angles(visual[:self.joint_count],
                                                           self.visual_sigma)
                    except DbrtError:
                        self.visual_tracker.restore(snapshot)
                        self._count(IMAGE, rejected=1)
                        raise
                    self._publish(IMAGE, t, rotary=self.rotary_tracker.current_estimate(),
                                  visual=visual)
            else:
                self._publish(IMAGE, t, visual=visual)
            self._last_image_time = t
        self._count(IMAGE, processed=1, timestamp=t)
        return True

    def _visual_anchor(self) -> np.ndarray:
        """Visual state with joints replaced by the current encoder estimate."""
        anchor = self.visual_tracker.current_estimate()
        current = self.current_state()
        if current.visual_state is not None:
            anchor = np.array(current.visual_state)
        anchor[:self.joint_count] = current.rotary_angles
        return anchor

    def _publish(self, source: str, t: float, rotary=None, visual=None):
        with self._state_lock:
            previous = self._state
            rotary = previous.rotary_angles if rotary is None else rotary
            visual = previous.visual_state if visual is None else visual
            self._sequence += 1
            self._state = FusedState(
                joint_angles=_frozen(self._blend(np.asarray(rotary), visual)),
                rotary_angles=_frozen(rotary),
                visual_state=_frozen(visual),
                timestamp=t,
                source=source,
                sequence=self._sequence,
            )

    def _blend(self, rotary: np.ndarray, visual) -> np.ndarray:
        if visual is None:
            return rotary.copy()
        visual_joints = np.asarray(visual)[:self.joint_count]
        return rotary + self.blend_weights * (visual_joints - rotary)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _worker(self, stream: str, handler: Callable):
        q = self._queues[stream]
        while not self._stop.is_set():
            try:
                item = q.get(timeout=0.1)
            except queue.Empty:
                continue
            if item is _SHUTDOWN:
                break
            try:
                handler(*item)
            except DbrtError as exc:
                logger.warning("%s update rejected: %s", stream, exc)
            except Exception:
                logger.exception("Unexpected failure in %s worker", stream)
                self._count(stream, rejected=1)

    def _offer(self, stream: str, item) -> bool:
        """Hand ``item`` to the stream worker. False when no worker is running."""
        with self._lifecycle_lock:
            if not self._running:
                return False
            q = self._queues[stream]
            try:
                q.put_nowait(item)
                return True
            except queue.Full:
                pass
            # Coalesce: newest measurement wins
            try:
                q.get_nowait()
                self._count(stream, dropped=1)
            except queue.Empty:
                pass
            q.put_nowait(item)
            return True

    def _latch_resolution(self, state: np.ndarray):
        try:
            shape = self.visual_tracker.image_shape(state)
        except ObservationUnavailableError as exc:
            logger.warning("Could not render initial configuration, image size unknown: %s", exc)
            shape = None
        with self._shape_lock:
            self._image_shape = shape

    def _check_resolution(self, shape):
        """First image fixes the session resolution unless initialize() rendered one."""
        with self._shape_lock:
            if self._image_shape is None:
                self._image_shape = shape
                return
            expected = self._image_shape
        if shape != expected:
            raise DimensionMismatchError(
                f"depth image {shape} does not match session resolution {expected}",
                expected=expected, received=shape)

    def _drain(self, stream: str):
        """Discard queued work; cancelled measurements count as dropped."""
        q = self._queues[stream]
        cancelled = 0
        while True:
            try:
                item = q.get_nowait()
            except queue.Empty:
                break
            if item is not _SHUTDOWN:
                cancelled += 1
        if cancelled:
            self._count(stream, dropped=cancelled)

    def _now(self, timestamp: Optional[float]) -> float:
        return self.clock() if timestamp is None else float(timestamp)

    def _count(self, stream: str, processed: int = 0, dropped: int = 0,
               rejected: int = 0, timestamp: Optional[float] = None):
        with self._stats_lock:
            s = self._stats[stream]
            s.processed += processed
            s.dropped += dropped
            s.rejected += rejected
            if timestamp is not None:
                s.last_timestamp = timestamp
