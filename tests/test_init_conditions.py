"""Tests for initial condition generation."""

import unittest

import numpy as np

from flock_sim3d.core.init_conditions import create_random_flock, sample_unit_vectors
from flock_sim3d.params import FlockParams


class TestRandomFlock(unittest.TestCase):
    """Tests for the uniform random flock."""

    def test_agent_count_and_bounds(self) -> None:
        """Positions should fill the cube [-h, h]^3."""
        params = FlockParams(domain_half_extent=12.5).clamp()
        flock = create_random_flock(params, np.random.default_rng(0), 1000)

        self.assertEqual(flock.pos.shape, (1000, 3))
        self.assertEqual(flock.vel.shape, (1000, 3))
        self.assertTrue(np.all(np.abs(flock.pos) <= 12.5))
        # spread over the whole cube, not a corner of it
        self.assertLess(float(flock.pos.min()), -10.0)
        self.assertGreater(float(flock.pos.max()), 10.0)

    def test_agents_start_at_rest_by_default(self) -> None:
        flock = create_random_flock(FlockParams().clamp(), np.random.default_rng(0), 10)
        np.testing.assert_array_equal(flock.vel, np.zeros((10, 3)))

    def test_initial_speed(self) -> None:
        """Velocities should have random directions and speed below initial_speed."""
        params = FlockParams(initial_speed=2.0).clamp()
        flock = create_random_flock(params, np.random.default_rng(1), 500)

        speeds = np.linalg.norm(flock.vel, axis=1)
        self.assertTrue(np.all(speeds < 2.0))
        self.assertGreater(float(speeds.max()), 1.0)
        # no preferred direction
        mean_dir = (flock.vel / speeds[:, None]).mean(axis=0)
        self.assertLess(float(np.linalg.norm(mean_dir)), 0.2)

    def test_same_seed_same_flock(self) -> None:
        params = FlockParams(initial_speed=1.0).clamp()
        a = create_random_flock(params, np.random.default_rng(9), 50)
        b = create_random_flock(params, np.random.default_rng(9), 50)
        np.testing.assert_array_equal(a.pos, b.pos)
        np.testing.assert_array_equal(a.vel, b.vel)


class TestUnitVectors(unittest.TestCase):
    def test_unit_length(self) -> None:
        vectors = sample_unit_vectors(np.random.default_rng(2), 200)
        np.testing.assert_allclose(np.linalg.norm(vectors, axis=1), np.ones(200), rtol=1e-12)
