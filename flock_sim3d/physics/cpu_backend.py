from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from flock_sim3d.physics import grid as grid_ops
from flock_sim3d.physics.rules import integrate_positions
from flock_sim3d.physics.solvers import BruteForceSolver, GridCoherentSolver, GridIndirectSolver

if TYPE_CHECKING:
    from flock_sim3d.params import FlockParams
    from flock_sim3d.physics.grid import UniformGrid


class CPUFlock:
    """Every pass as one vectorized numpy sweep.

    A pass returns only once its output arrays are fully written, which gives
    the barrier between passes for free.
    """

    name = "cpu"

    def __init__(self, *, batch_size: int = 128) -> None:
        self.batch_size = int(batch_size)
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.brute_force = BruteForceSolver(tile_size=self.batch_size)
        self.scattered = GridIndirectSolver()
        self.coherent = GridCoherentSolver()

    def compute_indices(
        self,
        pos: np.ndarray,
        grid: "UniformGrid",
        array_indices: np.ndarray,
        grid_indices: np.ndarray,
    ) -> None:
        grid_ops.compute_indices(pos, grid, array_indices, grid_indices)

    def identify_cell_start_end(
        self,
        sorted_grid_indices: np.ndarray,
        cell_start: np.ndarray,
        cell_end: np.ndarray,
    ) -> None:
        grid_ops.identify_cell_start_end(sorted_grid_indices, cell_start, cell_end)

    def rearrange(
        self,
        permutation: np.ndarray,
        pos: np.ndarray,
        vel: np.ndarray,
        coherent_pos: np.ndarray,
        coherent_vel: np.ndarray,
    ) -> None:
        grid_ops.rearrange_coherent(permutation, pos, vel, coherent_pos, coherent_vel)

    def update_velocity_brute_force(
        self, pos: np.ndarray, vel: np.ndarray, params: "FlockParams", out: np.ndarray
    ) -> None:
        self.brute_force.compute(pos, vel, params, out)

    def update_velocity_scattered(
        self,
        pos: np.ndarray,
        vel: np.ndarray,
        params: "FlockParams",
        out: np.ndarray,
        *,
        grid: "UniformGrid",
        cell_start: np.ndarray,
        cell_end: np.ndarray,
        permutation: np.ndarray,
    ) -> None:
        self.scattered.compute(
            pos, vel, params, out,
            grid=grid, cell_start=cell_start, cell_end=cell_end, permutation=permutation,
        )

    def update_velocity_coherent(
        self,
        coherent_pos: np.ndarray,
        coherent_vel: np.ndarray,
        params: "FlockParams",
        out: np.ndarray,
        *,
        grid: "UniformGrid",
        cell_start: np.ndarray,
        cell_end: np.ndarray,
    ) -> None:
        self.coherent.compute(
            coherent_pos, coherent_vel, params, out,
            grid=grid, cell_start=cell_start, cell_end=cell_end,
        )

    def update_position(
        self, pos: np.ndarray, vel: np.ndarray, *, dt: float, half_extent: float, out: np.ndarray
    ) -> None:
        integrate_positions(pos, vel, dt, half_extent, out)
