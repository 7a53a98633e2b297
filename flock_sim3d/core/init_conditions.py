"""
Initial condition generators for the flock.

Agents start uniformly spread over the cubic domain [-h, +h]^3. Velocities
are zero unless ``initial_speed`` is positive, in which case each agent gets
a uniformly random direction and a speed drawn in [0, initial_speed).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from flock_sim3d.params import FlockParams


@dataclass(slots=True)
class InitialFlock:
    """
    Initial state for a whole flock.

    Attributes:
        pos: (N, 3) positions
        vel: (N, 3) velocities
    """
    pos: np.ndarray
    vel: np.ndarray


def sample_unit_vectors(rng: np.random.Generator, n: int) -> np.ndarray:
    """
    Sample n uniformly distributed unit vectors on the sphere.

    Args:
        rng: Random number generator instance
        n: Number of vectors

    Returns:
        (n, 3) array of unit vectors
    """
    u = rng.random(n)
    v = rng.random(n)
    theta = 2.0 * np.pi * u
    phi = np.arccos(2.0 * v - 1.0)
    sin_phi = np.sin(phi)
    return np.stack(
        [np.cos(theta) * sin_phi, np.sin(theta) * sin_phi, np.cos(phi)],
        axis=1,
    )


def create_random_flock(params: "FlockParams", rng: np.random.Generator, n: int) -> InitialFlock:
    """
    Create n agents uniformly distributed in the domain.

    Args:
        params: Simulation parameters (domain_half_extent, initial_speed)
        rng: Random number generator
        n: Number of agents

    Returns:
        InitialFlock with float64 arrays
    """
    h = float(params.domain_half_extent)
    pos = rng.uniform(-h, h, size=(n, 3))
    if params.initial_speed > 0.0:
        speed = rng.random(n) * params.initial_speed
        vel = sample_unit_vectors(rng, n) * speed[:, np.newaxis]
    else:
        vel = np.zeros((n, 3), dtype=np.float64)
    return InitialFlock(pos=pos, vel=vel)
