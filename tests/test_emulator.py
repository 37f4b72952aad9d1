"""
Tests for the DBRT robot emulator
=================================
pytest tests/test_emulator.py -v
"""

import time

import numpy as np
import pytest

from dbrt.dbrt_emulator import RobotEmulator, SinusoidAnimator
from dbrt.dbrt_errors import ConfigurationError
from dbrt.dbrt_factory import create_fusion_tracker


class Recorder:
    def __init__(self):
        self.values = []
        self.times = []

    def __call__(self, value, t):
        self.values.append(np.array(value))
        self.times.append(t)


def _robot(render, **overrides):
    params = dict(render=render, initial_state=[0.1, -0.2], joint_rate=100.0,
                  image_rate=10.0)
    params.update(overrides)
    return RobotEmulator(**params)


class TestStepping:
    def test_measurement_rates(self, render):
        robot = _robot(render)
        joints, images = Recorder(), Recorder()
        robot.joint_sensor_callback(joints)
        robot.image_sensor_callback(images)
        for _ in range(20):
            robot.step(0.01)
        assert len(joints.values) == 20
        assert len(images.values) == 2
        np.testing.assert_allclose(joints.times, np.arange(1, 21) * 0.01)
        assert images.values[0].shape == (12, 8)

    def test_biased_encoders(self, render):
        robot = _robot(render, joint_biases=[0.05, -0.03])
        joints = Recorder()
        robot.joint_sensor_callback(joints)
        robot.step(0.01)
        np.testing.assert_allclose(joints.values[0], [0.15, -0.23])

    def test_noise_is_reproducible(self, render):
        a = _robot(render, joint_noise_sigma=0.01, rng_seed=5)
        b = _robot(render, joint_noise_sigma=0.01, rng_seed=5)
        ra, rb = Recorder(), Recorder()
        a.joint_sensor_callback(ra)
        b.joint_sensor_callback(rb)
        for _ in range(5):
            a.step(0.01)
            b.step(0.01)
        np.testing.assert_array_equal(np.array(ra.values), np.array(rb.values))
        assert not np.allclose(ra.values[0], [0.1, -0.2])

    def test_animator_moves_selected_joints(self, render):
        robot = _robot(render, animator=SinusoidAnimator([0], amplitude=1.0))
        for _ in range(50):
            robot.step(0.01)
        assert robot.state[0] != pytest.approx(0.1)
        assert robot.state[1] == pytest.approx(-0.2)
        assert robot.time == pytest.approx(0.5)

    def test_delayed_images(self, render):
        robot = _robot(render, animator=SinusoidAnimator([0, 1], amplitude=1.0),
                       visual_sensor_delay=0.05)
        states = {}
        images = Recorder()
        robot.joint_sensor_callback(lambda z, t: states.setdefault(round(t, 6), robot.state))
        robot.image_sensor_callback(images)
        for _ in range(20):
            robot.step(0.01)

        np.testing.assert_allclose(images.times, [0.05, 0.15])
        for image, t in zip(images.values, images.times):
            np.testing.assert_allclose(image, render(states[round(t, 6)]))

    def test_delay_holds_for_fine_steps(self, render):
        """Steps shorter than the joint period keep the full image latency."""
        robot = _robot(render, animator=SinusoidAnimator([0, 1], amplitude=1.0),
                       visual_sensor_delay=0.05)
        trajectory = [(0.0, robot.state)]
        images = Recorder()
        robot.image_sensor_callback(images)
        for _ in range(200):
            robot.step(0.001)
            trajectory.append((robot.time, robot.state))

        np.testing.assert_allclose(images.times, [0.05, 0.15], atol=1e-9)
        for image, t in zip(images.values, images.times):
            captured = [s for ts, s in trajectory if ts <= t + 1e-9][-1]
            np.testing.assert_allclose(image, render(captured))
            assert not np.allclose(image, render(robot.state))

    def test_extra_state_dimensions(self, render):
        robot = _robot(render, initial_state=[0.1, -0.2], joint_count=1)
        joints = Recorder()
        robot.joint_sensor_callback(joints)
        robot.step(0.01)
        assert joints.values[0].shape == (1,)


class TestValidation:
    @pytest.mark.parametrize("kwargs", [
        {"joint_rate": 0.0},
        {"image_rate": -1.0},
        {"dilation": 0.0},
        {"visual_sensor_delay": -0.1},
        {"joint_count": 3},
        {"joint_biases": [0.1, 0.2, 0.3]},
    ])
    def test_invalid(self, render, kwargs):
        with pytest.raises(ConfigurationError):
            _robot(render, **kwargs)


class TestLifecycle:
    def test_toggle_pause(self, render):
        robot = _robot(render)
        assert not robot.is_paused
        robot.toggle_pause()
        assert robot.is_paused
        robot.toggle_pause()
        assert not robot.is_paused

    def test_run_and_shutdown(self, render):
        robot = _robot(render, joint_rate=200.0, image_rate=20.0)
        joints, images = Recorder(), Recorder()
        robot.joint_sensor_callback(joints)
        robot.image_sensor_callback(images)
        robot.run()
        time.sleep(0.3)
        robot.shutdown()
        assert len(joints.values) > 0
        assert len(images.values) > 0
        count = len(joints.values)
        time.sleep(0.05)
        assert len(joints.values) == count


class TestEmulatedSession:
    def test_fusion_follows_robot(self, small_config, render):
        robot = _robot(render, animator=SinusoidAnimator([0, 1], amplitude=0.1),
                       joint_noise_sigma=0.002, rng_seed=1)
        fusion = create_fusion_tracker(small_config, render)
        fusion.initialize(robot.state, timestamp=0.0)
        robot.joint_sensor_callback(fusion.joints_observation_callback)
        robot.image_sensor_callback(fusion.image_observation_callback)

        for _ in range(200):
            robot.step(0.01)

        state = fusion.current_state()
        np.testing.assert_allclose(state.joint_angles, robot.state, atol=0.03)
        stats = fusion.get_statistics()
        assert stats["joints"]["processed"] == 200
        assert stats["image"]["processed"] == 20
