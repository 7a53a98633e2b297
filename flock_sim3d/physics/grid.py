"""
Uniform grid spatial index for the flocking neighbor search.

The grid covers the cubic domain [-h, +h]^3 with cells twice as wide as the
largest interaction radius. Every neighbor of an agent is then at most half a
cell away on each axis, so a 2x2x2 block of cells is enough to find all of
them, provided the block is anchored on the cell boundary nearest below the
agent (floor(u - 0.5) in cell units) rather than on the cell containing it.

Each step the index is rebuilt from scratch:
1. compute_indices: per agent, the id of the cell that contains it
2. (sort the (cell id, agent index) pairs by cell id, see sorting.py)
3. identify_cell_start_end: per cell, the [start, end) slot range in the
   sorted order, or EMPTY_CELL
4. rearrange_coherent (coherent variant only): copy agent state into slot
   order so neighbor visits become direct indexing

Example:
    >>> grid = UniformGrid.from_radii(5.0, 3.0, 5.0, half_extent=100.0)
    >>> grid.side, grid.cell_width
    (22, 10.0)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from flock_sim3d.params import FlockParams


EMPTY_CELL = -1

# x varies fastest, matching the cell id layout x + y*side + z*side^2
BLOCK_OFFSETS = np.array(
    [(dx, dy, dz) for dz in (0, 1) for dy in (0, 1) for dx in (0, 1)],
    dtype=np.int64,
)


@dataclass(frozen=True, slots=True)
class UniformGrid:
    """
    Implicit cubic lattice covering the simulation domain.

    Attributes:
        cell_width: Edge length of one cell (2x the largest radius)
        side: Number of cells along each axis
        grid_min: World-space coordinate of the low corner of cell (0, 0, 0),
                  identical on all three axes
    """
    cell_width: float
    side: int
    grid_min: float

    @classmethod
    def from_radii(cls, *radii: float, half_extent: float) -> "UniformGrid":
        cell_width = 2.0 * max(radii)
        half_side = int(half_extent / cell_width) + 1
        return cls(
            cell_width=cell_width,
            side=2 * half_side,
            grid_min=-cell_width * half_side,
        )

    @classmethod
    def from_params(cls, params: "FlockParams") -> "UniformGrid":
        return cls.from_radii(params.r1, params.r2, params.r3, half_extent=params.domain_half_extent)

    @property
    def inv_cell_width(self) -> float:
        return 1.0 / self.cell_width

    @property
    def cell_count(self) -> int:
        return self.side * self.side * self.side

    def cell_coords(self, positions: np.ndarray, *, shift: float = 0.0) -> np.ndarray:
        """Integer cell coordinates, clamped into the grid.

        shift=0.0 gives the cell containing each position; shift=0.5 gives the
        low corner of the 2x2x2 block searched for its neighbors.
        """
        u = (positions - self.grid_min) * self.inv_cell_width - shift
        coords = np.floor(u).astype(np.int64)
        np.clip(coords, 0, self.side - 1, out=coords)
        return coords

    def search_base(self, positions: np.ndarray) -> np.ndarray:
        return self.cell_coords(positions, shift=0.5)

    def cell_id(self, coords: np.ndarray) -> np.ndarray:
        side = self.side
        return coords[..., 0] + coords[..., 1] * side + coords[..., 2] * (side * side)

    def cell_id_of(self, x: float, y: float, z: float) -> int:
        """Id of the (clamped) cell containing the point (x, y, z)."""
        coords = []
        for v in (x, y, z):
            c = math.floor((v - self.grid_min) * self.inv_cell_width)
            coords.append(min(self.side - 1, max(0, c)))
        return coords[0] + coords[1] * self.side + coords[2] * self.side * self.side


def compute_indices(
    positions: np.ndarray,
    grid: UniformGrid,
    array_indices: np.ndarray,
    grid_indices: np.ndarray,
) -> None:
    """Label every agent with its own index and the id of its cell."""
    n = positions.shape[0]
    array_indices[:] = np.arange(n, dtype=array_indices.dtype)
    grid_indices[:] = grid.cell_id(grid.cell_coords(positions))


def identify_cell_start_end(
    sorted_grid_indices: np.ndarray,
    cell_start: np.ndarray,
    cell_end: np.ndarray,
) -> None:
    """Fill the bucket table from cell ids sorted ascending.

    Both tables are reset to EMPTY_CELL first: cells are recomputed from
    scratch every step and an entry left over from a previous step would
    point at another cell's agents.
    """
    cell_start.fill(EMPTY_CELL)
    cell_end.fill(EMPTY_CELL)
    n = sorted_grid_indices.shape[0]
    if n == 0:
        return

    keys = sorted_grid_indices
    first = np.ones(n, dtype=bool)
    first[1:] = keys[1:] != keys[:-1]
    last = np.ones(n, dtype=bool)
    last[:-1] = keys[:-1] != keys[1:]

    slots = np.arange(n, dtype=cell_start.dtype)
    cell_start[keys[first]] = slots[first]
    cell_end[keys[last]] = slots[last] + 1


def rearrange_coherent(
    permutation: np.ndarray,
    positions: np.ndarray,
    velocities: np.ndarray,
    coherent_positions: np.ndarray,
    coherent_velocities: np.ndarray,
) -> None:
    """Copy agent state into slot order: slot s receives agent permutation[s]."""
    np.take(positions, permutation, axis=0, out=coherent_positions)
    np.take(velocities, permutation, axis=0, out=coherent_velocities)


def validate_buckets(
    sorted_grid_indices: np.ndarray,
    cell_start: np.ndarray,
    cell_end: np.ndarray,
) -> list[str]:
    """Check the bucket table against the sorted keys it was built from.

    Returns a list of problems, empty when every slot lies in exactly one
    cell range and the non-empty ranges tile [0, N).
    """
    issues: list[str] = []
    n = int(sorted_grid_indices.shape[0])

    occupied = np.flatnonzero(cell_start != EMPTY_CELL)
    stale = np.flatnonzero((cell_start == EMPTY_CELL) != (cell_end == EMPTY_CELL))
    for c in stale[:8]:
        issues.append(f"cell {int(c)} has only one of start/end set")

    starts = cell_start[occupied]
    ends = cell_end[occupied]
    bad = np.flatnonzero(ends <= starts)
    for k in bad[:8]:
        c = int(occupied[k])
        issues.append(f"cell {c} has empty or inverted range [{int(starts[k])}, {int(ends[k])})")

    coverage = np.zeros(n, dtype=np.int64)
    for c, s, e in zip(occupied, starts, ends):
        if s < 0 or e > n or e <= s:
            continue
        coverage[s:e] += 1
        if np.any(sorted_grid_indices[s:e] != c):
            issues.append(f"cell {int(c)} range [{int(s)}, {int(e)}) holds agents of another cell")

    gaps = int(np.count_nonzero(coverage == 0))
    overlaps = int(np.count_nonzero(coverage > 1))
    if gaps:
        issues.append(f"{gaps} slots are not covered by any cell")
    if overlaps:
        issues.append(f"{overlaps} slots are covered by more than one cell")
    return issues
