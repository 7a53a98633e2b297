import unittest

import numpy as np

from flock_sim3d.params import FlockParams
from flock_sim3d.physics.grid import (
    EMPTY_CELL,
    UniformGrid,
    compute_indices,
    identify_cell_start_end,
    rearrange_coherent,
)
from flock_sim3d.physics.solvers import (
    BruteForceSolver,
    GridCoherentSolver,
    GridIndirectSolver,
    gather_block_pairs,
)
from flock_sim3d.physics.sorting import ArgsortKeyValueSorter


def _index(pos: np.ndarray, grid: UniformGrid):
    n = pos.shape[0]
    perm = np.empty(n, dtype=np.int32)
    keys = np.empty(n, dtype=np.int32)
    compute_indices(pos, grid, perm, keys)
    ArgsortKeyValueSorter().sort_by_key(keys, perm)
    start = np.empty(grid.cell_count, dtype=np.int32)
    end = np.empty(grid.cell_count, dtype=np.int32)
    identify_cell_start_end(keys, start, end)
    return perm, start, end


class TestSolverAgreement(unittest.TestCase):
    def setUp(self) -> None:
        self.params = FlockParams(
            r1=5.0, r2=3.0, r3=5.0, k1=0.01, k2=0.1, k3=0.1, max_speed=1.0, domain_half_extent=20.0
        ).clamp()
        self.grid = UniformGrid.from_params(self.params)
        rng = np.random.default_rng(7)
        self.pos = rng.uniform(-20.0, 20.0, size=(50, 3))
        self.vel = rng.uniform(-0.5, 0.5, size=(50, 3))

    def _brute(self) -> np.ndarray:
        out = np.empty_like(self.vel)
        BruteForceSolver(tile_size=16).compute(self.pos, self.vel, self.params, out)
        return out

    def _indirect(self) -> np.ndarray:
        perm, start, end = _index(self.pos, self.grid)
        out = np.empty_like(self.vel)
        GridIndirectSolver().compute(
            self.pos, self.vel, self.params, out,
            grid=self.grid, cell_start=start, cell_end=end, permutation=perm,
        )
        return out

    def test_grid_indirect_matches_brute_force(self) -> None:
        np.testing.assert_allclose(self._indirect(), self._brute(), atol=1e-4)

    def test_coherent_matches_indirect_per_agent(self) -> None:
        perm, start, end = _index(self.pos, self.grid)
        cpos = np.empty_like(self.pos)
        cvel = np.empty_like(self.vel)
        rearrange_coherent(perm, self.pos, self.vel, cpos, cvel)
        out = np.empty_like(self.vel)
        GridCoherentSolver().compute(cpos, cvel, self.params, out, grid=self.grid, cell_start=start, cell_end=end)

        # slot s holds agent perm[s]
        by_agent = np.empty_like(out)
        by_agent[perm] = out
        np.testing.assert_allclose(by_agent, self._indirect(), atol=1e-12)

    def test_brute_force_tile_size_does_not_matter(self) -> None:
        out = np.empty_like(self.vel)
        BruteForceSolver(tile_size=1000).compute(self.pos, self.vel, self.params, out)
        np.testing.assert_allclose(out, self._brute(), atol=1e-12)

    def test_brute_force_records_timing(self) -> None:
        solver = BruteForceSolver()
        self.assertIsNone(solver.last_compute_ms)
        solver.compute(self.pos, self.vel, self.params, np.empty_like(self.vel))
        self.assertIsNotNone(solver.last_compute_ms)


class TestNeighborCells(unittest.TestCase):
    def setUp(self) -> None:
        self.params = FlockParams(r1=5.0, r2=5.0, r3=5.0, k1=0.1, k2=0.1, k3=0.1, max_speed=10.0).clamp()
        self.grid = UniformGrid.from_params(self.params)

    def _indirect(self, pos: np.ndarray, vel: np.ndarray) -> tuple[np.ndarray, int]:
        perm, start, end = _index(pos, self.grid)
        solver = GridIndirectSolver()
        out = np.empty_like(vel)
        solver.compute(pos, vel, self.params, out, grid=self.grid, cell_start=start, cell_end=end, permutation=perm)
        return out, solver.last_pair_count

    def test_neighbors_across_cell_boundary(self) -> None:
        # x=0 is a cell boundary for cell_width 10, grid_min -110
        self.assertEqual(self.grid.cell_id_of(-1.0, 0.0, 0.0) + 1, self.grid.cell_id_of(1.0, 0.0, 0.0))
        pos = np.array([[-1.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        vel = np.zeros((2, 3))
        out, pairs = self._indirect(pos, vel)

        self.assertEqual(pairs, 4)
        brute = np.empty_like(vel)
        BruteForceSolver().compute(pos, vel, self.params, brute)
        np.testing.assert_allclose(out, brute, atol=1e-12)
        self.assertLess(float(out[0, 0]), 0.0)
        self.assertGreater(float(out[1, 0]), 0.0)

    def test_both_grid_variants_find_pair_just_inside_radius(self) -> None:
        pos = np.array([[-2.45, 0.0, 0.0], [2.45, 0.0, 0.0]])
        vel = np.zeros((2, 3))
        indirect, pairs = self._indirect(pos, vel)
        self.assertEqual(pairs, 4)

        perm, start, end = _index(pos, self.grid)
        cpos = np.empty_like(pos)
        cvel = np.empty_like(vel)
        rearrange_coherent(perm, pos, vel, cpos, cvel)
        solver = GridCoherentSolver()
        out = np.empty_like(vel)
        solver.compute(cpos, cvel, self.params, out, grid=self.grid, cell_start=start, cell_end=end)
        coherent = np.empty_like(out)
        coherent[perm] = out

        self.assertEqual(solver.last_pair_count, 4)
        np.testing.assert_allclose(coherent, indirect, atol=1e-12)
        self.assertGreater(float(np.abs(indirect).max()), 0.0)

    def test_distance_equal_to_radius_is_not_a_neighbor(self) -> None:
        pos = np.array([[0.0, 0.0, 0.0], [5.0, 0.0, 0.0]])
        vel = np.zeros((2, 3))
        out, _ = self._indirect(pos, vel)
        np.testing.assert_array_equal(out, np.zeros((2, 3)))

        pos[1, 0] = 4.9
        out, _ = self._indirect(pos, vel)
        self.assertGreater(float(np.abs(out).max()), 0.0)

    def test_block_past_high_edge_is_skipped(self) -> None:
        grid = UniformGrid(cell_width=1.0, side=2, grid_min=0.0)
        start = np.full(grid.cell_count, EMPTY_CELL, dtype=np.int32)
        end = np.full(grid.cell_count, EMPTY_CELL, dtype=np.int32)
        start[7], end[7] = 0, 1

        owner, slot = gather_block_pairs(np.array([[1, 1, 1]]), grid, start, end)
        np.testing.assert_array_equal(owner, [0])
        np.testing.assert_array_equal(slot, [0])

    def test_empty_cells_yield_no_pairs(self) -> None:
        grid = UniformGrid(cell_width=1.0, side=4, grid_min=0.0)
        start = np.full(grid.cell_count, EMPTY_CELL, dtype=np.int32)
        end = np.full(grid.cell_count, EMPTY_CELL, dtype=np.int32)
        owner, slot = gather_block_pairs(np.zeros((3, 3), dtype=np.int64), grid, start, end)
        self.assertEqual(owner.shape, (0,))
        self.assertEqual(slot.shape, (0,))
