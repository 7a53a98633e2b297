"""Tests for the three flocking rules, the speed clamp and the wrap."""

import unittest

import numpy as np

from flock_sim3d.params import FlockParams
from flock_sim3d.physics.rules import accumulate_rules, clamp_speed, integrate_positions


def _all_pairs(pos: np.ndarray, vel: np.ndarray, params: FlockParams) -> np.ndarray:
    n = pos.shape[0]
    owner = np.repeat(np.arange(n), n)
    nbr = np.tile(np.arange(n), n)
    out = np.empty_like(vel)
    return accumulate_rules(pos, vel, owner, pos[nbr], vel[nbr], params, out)


class TestRules(unittest.TestCase):
    def _params(self, **overrides) -> FlockParams:
        values = dict(r1=5.0, r2=3.0, r3=5.0, k1=0.0, k2=0.0, k3=0.0, max_speed=1e6)
        values.update(overrides)
        return FlockParams(**values).clamp()

    def test_no_pairs_leaves_velocity(self) -> None:
        pos = np.array([[1.0, 2.0, 3.0]])
        vel = np.array([[0.1, -0.2, 0.3]])
        out = np.empty_like(vel)
        empty = np.zeros(0, dtype=np.int64)
        accumulate_rules(pos, vel, empty, pos[empty], vel[empty], self._params(k1=1.0, k2=1.0, k3=1.0), out)
        np.testing.assert_array_equal(out, vel)

    def test_lone_agent_counts_itself(self) -> None:
        pos = np.array([[0.0, 0.0, 0.0]])
        vel = np.array([[0.1, 0.0, 0.0]])
        out = _all_pairs(pos, vel, self._params(k1=1.0, k2=1.0, k3=0.1))

        # cohesion and separation vanish against itself, alignment adds k3 * vA
        self.assertAlmostEqual(float(out[0, 0]), 0.11, places=12)
        self.assertAlmostEqual(float(out[0, 1]), 0.0, places=12)

    def test_cohesion_pulls_toward_centroid(self) -> None:
        pos = np.array([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0]])
        vel = np.zeros((2, 3))
        out = _all_pairs(pos, vel, self._params(k1=0.5))

        # centroid of both agents is x=1
        self.assertAlmostEqual(float(out[0, 0]), 0.5, places=12)
        self.assertAlmostEqual(float(out[1, 0]), -0.5, places=12)

    def test_separation_pushes_apart(self) -> None:
        pos = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        vel = np.zeros((2, 3))
        out = _all_pairs(pos, vel, self._params(k2=0.1))

        self.assertAlmostEqual(float(out[0, 0]), -0.1, places=12)
        self.assertAlmostEqual(float(out[1, 0]), 0.1, places=12)

    def test_alignment_uses_mean_velocity(self) -> None:
        pos = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        vel = np.array([[0.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        out = _all_pairs(pos, vel, self._params(k3=0.1))

        self.assertAlmostEqual(float(out[0, 1]), 0.05, places=12)
        self.assertAlmostEqual(float(out[1, 1]), 1.05, places=12)

    def test_distance_equal_to_radius_is_excluded(self) -> None:
        pos = np.array([[0.0, 0.0, 0.0], [3.0, 0.0, 0.0]])
        vel = np.zeros((2, 3))
        out = _all_pairs(pos, vel, self._params(r1=3.0, r2=3.0, r3=3.0, k1=1.0, k2=1.0, k3=1.0))
        np.testing.assert_array_equal(out, np.zeros((2, 3)))

    def test_result_is_speed_clamped(self) -> None:
        pos = np.array([[0.0, 0.0, 0.0], [0.5, 0.0, 0.0]])
        vel = np.array([[5.0, 0.0, 0.0], [5.0, 0.0, 0.0]])
        out = _all_pairs(pos, vel, self._params(k3=1.0, max_speed=2.0))
        speeds = np.linalg.norm(out, axis=1)
        np.testing.assert_allclose(speeds, [2.0, 2.0], rtol=1e-12)


class TestClampSpeed(unittest.TestCase):
    def test_fast_velocity_is_rescaled(self) -> None:
        vel = np.array([[3.0, 4.0, 0.0], [0.1, 0.0, 0.0]])
        clamp_speed(vel, 1.0)

        np.testing.assert_allclose(vel[0], [0.6, 0.8, 0.0], rtol=1e-12)
        np.testing.assert_array_equal(vel[1], [0.1, 0.0, 0.0])

    def test_direction_is_preserved(self) -> None:
        rng = np.random.default_rng(5)
        vel = rng.normal(size=(100, 3)) * 10.0
        before = vel / np.linalg.norm(vel, axis=1)[:, None]
        clamp_speed(vel, 1.5)

        speeds = np.linalg.norm(vel, axis=1)
        self.assertTrue(np.all(speeds <= 1.5 + 1e-9))
        np.testing.assert_allclose(vel / speeds[:, None], before, atol=1e-12)


class TestIntegratePositions(unittest.TestCase):
    def test_euler_step(self) -> None:
        pos = np.array([[1.0, 2.0, 3.0]])
        vel = np.array([[0.5, -1.0, 0.0]])
        out = np.empty_like(pos)
        integrate_positions(pos, vel, 2.0, 100.0, out)
        np.testing.assert_allclose(out, [[2.0, 0.0, 3.0]])

    def test_agent_on_boundary_at_rest_stays(self) -> None:
        pos = np.array([[100.0, -100.0, 0.0]])
        vel = np.zeros((1, 3))
        out = np.empty_like(pos)
        integrate_positions(pos, vel, 0.2, 100.0, out)
        np.testing.assert_array_equal(out, pos)

    def test_wrap_keeps_overflow(self) -> None:
        pos = np.array([[99.5, -99.5, 0.0]])
        vel = np.array([[1.0, -1.0, 0.0]])
        out = np.empty_like(pos)
        integrate_positions(pos, vel, 1.0, 100.0, out)

        self.assertAlmostEqual(float(out[0, 0]), -99.5, places=12)
        self.assertAlmostEqual(float(out[0, 1]), 99.5, places=12)
        self.assertEqual(float(out[0, 2]), 0.0)
