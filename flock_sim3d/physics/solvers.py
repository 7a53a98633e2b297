"""
Velocity solvers for the flocking update.

This module provides three ways of finding each agent's candidate neighbors;
all of them feed the same rule evaluation (rules.accumulate_rules):
- Brute force: every agent against every agent, O(N^2)
- Grid indirect: 2x2x2 cell block, slots resolved through the permutation
- Grid coherent: 2x2x2 cell block, slots index slot-ordered buffers directly

Example:
    >>> solver = GridIndirectSolver()
    >>> solver.compute(pos, vel, params, out, grid=grid, cell_start=start,
    ...                cell_end=end, permutation=perm)
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

import numpy as np

from flock_sim3d.physics.grid import BLOCK_OFFSETS, EMPTY_CELL
from flock_sim3d.physics.rules import accumulate_rules

if TYPE_CHECKING:
    from flock_sim3d.params import FlockParams
    from flock_sim3d.physics.grid import UniformGrid


def gather_block_pairs(
    base: np.ndarray,
    grid: "UniformGrid",
    cell_start: np.ndarray,
    cell_end: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Enumerate (owner, slot) pairs for the 2x2x2 block above each search base.

    Cells past the high edge of the grid are skipped (no wraparound), so an
    agent near that edge searches fewer than 8 cells. Empty cells are
    skipped through the EMPTY_CELL sentinel.

    Args:
        base: (N, 3) low corner of each agent's block, from grid.search_base
        grid: Grid the bucket table was built on
        cell_start, cell_end: Bucket table

    Returns:
        (owner, slot) int64 arrays of equal length, grouped by block offset
    """
    n = base.shape[0]
    side = grid.side
    agents = np.arange(n, dtype=np.int64)
    owners: list[np.ndarray] = []
    slots: list[np.ndarray] = []

    for offset in BLOCK_OFFSETS:
        coords = base + offset
        inside = np.all(coords < side, axis=1)
        cell = grid.cell_id(np.minimum(coords, side - 1))
        start = cell_start[cell].astype(np.int64)
        end = cell_end[cell].astype(np.int64)
        counts = np.where(inside & (start != EMPTY_CELL), end - start, 0)
        total = int(counts.sum())
        if total == 0:
            continue

        # Expand each agent's [start, end) into one pair per slot.
        run_begin = np.cumsum(counts) - counts
        step_in_run = np.arange(total, dtype=np.int64) - np.repeat(run_begin, counts)
        owners.append(np.repeat(agents, counts))
        slots.append(np.repeat(start, counts) + step_in_run)

    if not owners:
        empty = np.zeros(0, dtype=np.int64)
        return empty, empty.copy()
    return np.concatenate(owners), np.concatenate(slots)


class VelocitySolver:
    """
    Abstract base interface for velocity solvers.

    Subclasses differ only in how candidate neighbors are enumerated.
    """

    name = "abstract"

    def compute(
        self,
        pos: np.ndarray,
        vel: np.ndarray,
        params: "FlockParams",
        out: np.ndarray,
        **kwargs,
    ) -> np.ndarray:
        """
        Write the new velocity of every agent into ``out``.

        ``pos``/``vel`` are read-only snapshots; ``out`` must not alias them.
        """
        raise NotImplementedError


class BruteForceSolver(VelocitySolver):
    """
    Every agent against every agent (self included), O(N^2).

    Agents are processed in tiles so the pair arrays stay at tile_size * N.
    """

    name = "brute_force"

    def __init__(self, tile_size: int = 128):
        self.tile_size = tile_size
        self.last_compute_ms: float | None = None

    def compute(
        self,
        pos: np.ndarray,
        vel: np.ndarray,
        params: "FlockParams",
        out: np.ndarray,
        **kwargs,
    ) -> np.ndarray:
        t0 = time.perf_counter()
        n = pos.shape[0]
        tile = max(1, self.tile_size)
        everyone = np.arange(n, dtype=np.int64)

        for i0 in range(0, n, tile):
            i1 = min(n, i0 + tile)
            owner = np.repeat(np.arange(i1 - i0, dtype=np.int64), n)
            nbr = np.tile(everyone, i1 - i0)
            accumulate_rules(pos[i0:i1], vel[i0:i1], owner, pos[nbr], vel[nbr], params, out[i0:i1])

        self.last_compute_ms = (time.perf_counter() - t0) * 1000.0
        return out


class GridIndirectSolver(VelocitySolver):
    """
    Uniform-grid search reading the original, agent-ordered buffers.

    Each slot found in a bucket is mapped to an agent through the
    permutation table before its state is read.
    """

    name = "grid_indirect"

    def __init__(self) -> None:
        self.last_pair_count: int = 0
        self.last_compute_ms: float | None = None

    def compute(
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
        **kwargs,
    ) -> np.ndarray:
        t0 = time.perf_counter()
        owner, slot = gather_block_pairs(grid.search_base(pos), grid, cell_start, cell_end)
        nbr = permutation[slot]
        accumulate_rules(pos, vel, owner, pos[nbr], vel[nbr], params, out)
        self.last_pair_count = int(owner.shape[0])
        self.last_compute_ms = (time.perf_counter() - t0) * 1000.0
        return out


class GridCoherentSolver(VelocitySolver):
    """
    Uniform-grid search over slot-ordered (coherent) buffers.

    ``pos``/``vel`` here are the rearranged copies: slot s holds the agent
    the permutation put there, so slots index the buffers directly. Output
    is in slot order as well.
    """

    name = "grid_coherent"

    def __init__(self) -> None:
        self.last_pair_count: int = 0
        self.last_compute_ms: float | None = None

    def compute(
        self,
        pos: np.ndarray,
        vel: np.ndarray,
        params: "FlockParams",
        out: np.ndarray,
        *,
        grid: "UniformGrid",
        cell_start: np.ndarray,
        cell_end: np.ndarray,
        **kwargs,
    ) -> np.ndarray:
        t0 = time.perf_counter()
        owner, slot = gather_block_pairs(grid.search_base(pos), grid, cell_start, cell_end)
        accumulate_rules(pos, vel, owner, pos[slot], vel[slot], params, out)
        self.last_pair_count = int(owner.shape[0])
        self.last_compute_ms = (time.perf_counter() - t0) * 1000.0
        return out
