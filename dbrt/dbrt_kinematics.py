"""Lock-guarded access to the shared robot kinematics.

Forward kinematics implementations (URDF chains and the like) keep mutable
per-configuration state, and both the renderer and pose consumers apply a
configuration before reading link poses. Every such access goes through one
KinematicsGuard.

Author: DBRT developers
License: GPL-3.0-or-later
"""

import threading
from contextlib import contextmanager
from typing import Any, Callable

import numpy as np


class KinematicsGuard:
    """Owns a forward-kinematics capability behind a re-entrant lock.

    Args:
        forward_kinematics: callable ``configuration -> link_poses``
    """

    def __init__(self, forward_kinematics: Callable[[np.ndarray], Any]):
        self._forward_kinematics = forward_kinematics
        self._lock = threading.RLock()

    def forward_kinematics(self, configuration) -> Any:
        with self._lock:
            return self._forward_kinematics(np.asarray(configuration, dtype=float))

    def run_exclusive(self, fn: Callable, *args, **kwargs) -> Any:
        """Run ``fn`` inside the kinematics critical section."""
        with self._lock:
            return fn(*args, **kwargs)

    @contextmanager
    def locked(self):
        with self._lock:
            yield self
