"""
Flocking rule evaluation and position integration, shared by every solver.

Rules for agent A at position pA with velocity vA, over its candidate
neighbors B (A itself included):
- cohesion:   k1 * (mean(pB for d < r1) - pA)
- separation: k2 * sum(pA - pB for d < r2)
- alignment:  k3 * mean(vB for d < r3)

The new velocity vA + cohesion + separation + alignment is clamped to
max_speed. A rule with no neighbor in range contributes zero.

Candidates are passed as flat pair arrays (owner index, neighbor state) so
the brute-force and grid solvers only differ in how they enumerate pairs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from flock_sim3d.params import FlockParams


def _segment_sum(owner: np.ndarray, values: np.ndarray, mask: np.ndarray, m: int) -> np.ndarray:
    out = np.empty((m, 3), dtype=np.float64)
    for axis in range(3):
        out[:, axis] = np.bincount(owner, weights=np.where(mask, values[:, axis], 0.0), minlength=m)
    return out


def accumulate_rules(
    self_pos: np.ndarray,
    self_vel: np.ndarray,
    owner: np.ndarray,
    nbr_pos: np.ndarray,
    nbr_vel: np.ndarray,
    params: "FlockParams",
    out: np.ndarray,
) -> np.ndarray:
    """
    Apply the three rules to M agents given P (owner, neighbor) pairs.

    Args:
        self_pos, self_vel: (M, 3) state of the agents being updated
        owner: (P,) index into self_pos of the agent each pair belongs to
        nbr_pos, nbr_vel: (P, 3) state of the candidate neighbor of each pair
        params: Radii r1..r3, scales k1..k3 and max_speed
        out: (M, 3) receives the new, speed-clamped velocities

    Returns:
        out
    """
    m = self_pos.shape[0]
    diff = self_pos[owner] - nbr_pos
    dist = np.sqrt(np.einsum("ij,ij->i", diff, diff))

    near1 = dist < params.r1
    near2 = dist < params.r2
    near3 = dist < params.r3

    count1 = np.bincount(owner, weights=near1.astype(np.float64), minlength=m)[:, None]
    count3 = np.bincount(owner, weights=near3.astype(np.float64), minlength=m)[:, None]
    center = _segment_sum(owner, nbr_pos, near1, m)
    separation = _segment_sum(owner, diff, near2, m)
    alignment = _segment_sum(owner, nbr_vel, near3, m)

    cohesion = np.zeros((m, 3), dtype=np.float64)
    np.divide(center, count1, out=cohesion, where=count1 > 0)
    np.subtract(cohesion, self_pos, out=cohesion, where=count1 > 0)

    mean_vel = np.zeros((m, 3), dtype=np.float64)
    np.divide(alignment, count3, out=mean_vel, where=count3 > 0)

    out[:] = self_vel
    out += cohesion * params.k1
    out += separation * params.k2
    out += mean_vel * params.k3
    clamp_speed(out, params.max_speed)
    return out


def clamp_speed(vel: np.ndarray, max_speed: float) -> None:
    """Rescale, in place, every velocity faster than max_speed to max_speed."""
    speed2 = np.einsum("ij,ij->i", vel, vel)
    fast = speed2 > max_speed * max_speed
    if np.any(fast):
        speed = np.sqrt(speed2[fast])
        vel[fast] *= (max_speed / speed)[:, np.newaxis]


def integrate_positions(
    pos: np.ndarray,
    vel: np.ndarray,
    dt: float,
    half_extent: float,
    out: np.ndarray,
) -> np.ndarray:
    """Euler step with a single toroidal wrap per axis.

    A coordinate that leaves [-h, +h] re-enters from the opposite face with
    its overflow kept (p - 2h above, p + 2h below). Velocities are already
    speed-clamped, so one wrap per step is enough.
    """
    np.multiply(vel, dt, out=out)
    out += pos
    span = 2.0 * half_extent
    out[out > half_extent] -= span
    out[out < -half_extent] += span
    return out
