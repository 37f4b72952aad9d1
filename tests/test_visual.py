"""
Tests for the DBRT visual (particle filter) tracker
===================================================
pytest tests/test_visual.py -v
"""

import numpy as np
import pytest

from dbrt.dbrt_errors import (
    ConfigurationError, DegenerateFilterError, DimensionMismatchError,
    ObservationUnavailableError,
)
from dbrt.dbrt_kinematics import KinematicsGuard
from dbrt.dbrt_observation import RangeObservationModel
from dbrt.dbrt_visual import Particle, ParticleSet, VisualTracker
from dbrt.demo import make_band_renderer


class CollapsedModel(RangeObservationModel):
    """Assigns zero likelihood to every hypothesis."""

    def log_likelihood(self, observed, predicted, occluded):
        return -np.inf


class CountingGuard(KinematicsGuard):
    def __init__(self):
        super().__init__(lambda q: q)
        self.calls = 0

    def run_exclusive(self, fn, *args, **kwargs):
        self.calls += 1
        return super().run_exclusive(fn, *args, **kwargs)


def _tracker(render, **overrides):
    params = dict(render=render, observation_model=RangeObservationModel(), state_dim=2,
                  n_particles=200, process_sigma=0.01, initial_sigma=0.05, rng_seed=3)
    params.update(overrides)
    return VisualTracker(**params)


class TestConstruction:
    @pytest.mark.parametrize("kwargs", [
        {"n_particles": 0},
        {"state_dim": 0},
        {"estimate_mode": "median"},
        {"downsampling_factor": 0},
        {"process_sigma": [0.1, 0.1, 0.1]},
        {"initial_sigma": -0.1},
    ])
    def test_invalid(self, render, kwargs):
        with pytest.raises(ConfigurationError):
            _tracker(render, **kwargs)

    def test_update_requires_initialize(self, render, truth):
        tracker = _tracker(render)
        assert not tracker.initialized
        with pytest.raises(ConfigurationError):
            tracker.update(render(truth))


class TestFilterStep:
    def test_initialize(self, render, truth):
        tracker = _tracker(render)
        tracker.initialize(truth)
        assert tracker.initialized
        assert tracker.particles.shape == (200, 2)
        np.testing.assert_allclose(tracker.weights, 1.0 / 200)
        assert tracker.effective_sample_size() == pytest.approx(200.0)

    def test_initialize_wrong_dimension(self, render):
        with pytest.raises(DimensionMismatchError):
            _tracker(render).initialize([0.1, 0.2, 0.3])

    def test_predict_diffuses(self, render, truth):
        tracker = _tracker(render)
        tracker.initialize(truth, spread=0.0)
        tracker.predict(1.0)
        assert tracker.particles.shape == (200, 2)
        assert np.std(tracker.particles[:, 0]) == pytest.approx(0.01, rel=0.3)

    def test_weights_normalized_after_update(self, render, truth):
        tracker = _tracker(render, resample_threshold=0.0)
        tracker.initialize(truth)
        for _ in range(3):
            tracker.predict(0.1)
            tracker.update(render(truth))
            assert len(tracker.weights) == 200
            assert np.sum(tracker.weights) == pytest.approx(1.0)
            assert np.all(tracker.weights >= 0.0)
            assert np.all(np.isfinite(tracker.weights))

    def test_resampling_resets_weights(self, render, truth):
        tracker = _tracker(render, resample_threshold=0.5)
        tracker.initialize(truth)
        ess = tracker.update(render(truth))
        assert ess < 0.5
        assert tracker.resample_count == 1
        assert tracker.particles.shape == (200, 2)
        np.testing.assert_allclose(tracker.weights, 1.0 / 200)

    def test_converges_to_truth(self, render, truth):
        tracker = _tracker(render)
        tracker.initialize(truth + np.array([0.03, -0.03]))
        observed = render(truth)
        for _ in range(15):
            tracker.predict(0.1)
            tracker.update(observed)
        assert np.abs(tracker.current_estimate() - truth).max() < 0.02

    def test_map_estimate_is_a_particle(self, render, truth):
        tracker = _tracker(render, estimate_mode="map", resample_threshold=0.0)
        tracker.initialize(truth)
        tracker.update(render(truth))
        best = tracker.current_estimate()
        assert any(np.array_equal(best, p) for p in tracker.particles)

    def test_missing_pixels_are_ignored(self, render, truth):
        tracker = _tracker(render, resample_threshold=0.0)
        tracker.initialize(truth)
        observed = render(truth)
        observed[5:7, :] = np.nan
        tracker.update(observed)
        assert np.sum(tracker.weights) == pytest.approx(1.0)

    def test_downsampling(self, truth):
        render = make_band_renderer(2, rows=16, cols_per_dim=6)
        tracker = _tracker(render, downsampling_factor=2, resample_threshold=0.0)
        tracker.initialize(truth)
        tracker.update(render(truth))
        assert np.sum(tracker.weights) == pytest.approx(1.0)


class TestFailures:
    def test_degenerate_weights_untouched(self, render, truth):
        tracker = _tracker(render, observation_model=CollapsedModel())
        tracker.initialize(truth)
        before = tracker.weights.copy()
        with pytest.raises(DegenerateFilterError):
            tracker.update(render(truth))
        np.testing.assert_array_equal(tracker.weights, before)
        assert not np.any(np.isnan(tracker.weights))

    def test_render_failure(self, truth):
        def broken(_):
            raise RuntimeError("GPU lost")

        tracker = _tracker(broken)
        tracker.initialize(truth)
        with pytest.raises(ObservationUnavailableError):
            tracker.update(np.ones((12, 8)))

    def test_shape_mismatch(self, render, truth):
        tracker = _tracker(render)
        tracker.initialize(truth)
        with pytest.raises(DimensionMismatchError):
            tracker.update(np.ones((5, 5)))

    def test_snapshot_restore(self, render, truth):
        tracker = _tracker(render)
        tracker.initialize(truth)
        snapshot = tracker.particle_set()
        tracker.predict(1.0)
        tracker.restore(snapshot)
        np.testing.assert_array_equal(tracker.particles, snapshot.states)
        np.testing.assert_array_equal(tracker.weights, snapshot.weights)


class TestKinematicsAccess:
    def test_render_runs_under_guard(self, render, truth):
        guard = CountingGuard()
        tracker = _tracker(render, n_particles=20, kinematics=guard)
        tracker.initialize(truth)
        tracker.update(render(truth))
        assert guard.calls == 20


class TestParticleSet:
    def test_iteration(self, render, truth):
        tracker = _tracker(render, n_particles=10)
        tracker.initialize(truth)
        pset = tracker.particle_set()
        assert isinstance(pset, ParticleSet)
        assert len(pset) == 10
        particles = tracker.particles_list()
        assert all(isinstance(p, Particle) for p in particles)
        assert sum(p.weight for p in particles) == pytest.approx(1.0)

    def test_snapshot_is_a_copy(self, render, truth):
        tracker = _tracker(render, n_particles=10)
        tracker.initialize(truth)
        pset = tracker.particle_set()
        pset.states[:] = 99.0
        assert not np.any(tracker.particles == 99.0)
