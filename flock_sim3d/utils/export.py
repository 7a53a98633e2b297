"""
Export utilities for flock simulation data.

This module writes the readout of a simulation to disk:
- CSV: one row per agent (id, position, optionally velocity)
- Summary: flock centroid, speed statistics and per-pass timings

Usage:
    >>> from flock_sim3d.utils.export import export_agents_csv
    >>> export_agents_csv(sim.export_positions(), sim.export_velocities(), "flock.csv")
"""

from __future__ import annotations

import csv
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from flock_sim3d.core.sim import StepTimings


@dataclass
class ExportStats:
    """Statistics from an export operation."""
    file_path: Path
    agent_count: int
    mean_speed: float
    timestamp: str


def export_agents_csv(
    positions: np.ndarray,
    velocities: np.ndarray,
    output_path: str | Path,
    *,
    include_velocity: bool = True,
    frame: int | None = None,
) -> ExportStats:
    """
    Export agent state to a CSV file.

    Rows are written in the order given, so pass agent-id ordered arrays
    (FlockSim3D.export_positions() default) for stable ids across frames.

    Args:
        positions: (N, 3) positions
        velocities: (N, 3) velocities
        output_path: Path to output CSV file
        include_velocity: Include velocity columns (vx, vy, vz)
        frame: Optional frame number to include in output

    Returns:
        ExportStats with export details
    """
    if positions.shape != velocities.shape:
        raise ValueError("positions/velocities shape mismatch")
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    header = ["id", "x", "y", "z"]
    if include_velocity:
        header.extend(["vx", "vy", "vz"])
    if frame is not None:
        header.insert(0, "frame")

    speeds = np.sqrt(np.einsum("ij,ij->i", velocities, velocities))
    mean_speed = float(speeds.mean()) if speeds.size else 0.0

    timestamp = datetime.now().isoformat()
    with open(output_path, "w", newline="") as f:
        writer = csv.writer(f)

        writer.writerow([f"# Flock 3D Export - {timestamp}"])
        writer.writerow([f"# Agents: {len(positions)}"])
        writer.writerow(header)

        for i, (p, v) in enumerate(zip(positions, velocities)):
            row: list[object] = []
            if frame is not None:
                row.append(frame)
            row.extend([i, f"{p[0]:.6f}", f"{p[1]:.6f}", f"{p[2]:.6f}"])
            if include_velocity:
                row.extend([f"{v[0]:.6f}", f"{v[1]:.6f}", f"{v[2]:.6f}"])
            writer.writerow(row)

    return ExportStats(
        file_path=output_path,
        agent_count=len(positions),
        mean_speed=mean_speed,
        timestamp=timestamp,
    )


def export_summary(
    positions: np.ndarray,
    velocities: np.ndarray,
    output_path: str | Path,
    *,
    timings: "StepTimings | None" = None,
) -> Path:
    """
    Export summary statistics to a text file.

    Args:
        positions: (N, 3) positions
        velocities: (N, 3) velocities
        output_path: Path to output file
        timings: Accumulated pass timings to append, if any

    Returns:
        Path to the created file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    n = len(positions)
    if n:
        cx, cy, cz = (float(c) for c in positions.mean(axis=0))
        speeds = np.sqrt(np.einsum("ij,ij->i", velocities, velocities))
        avg_speed = float(speeds.mean())
        max_speed = float(speeds.max())
    else:
        cx = cy = cz = 0.0
        avg_speed = max_speed = 0.0

    with open(output_path, "w") as f:
        f.write("Flock 3D Simulation Summary\n")
        f.write(f"Generated: {datetime.now().isoformat()}\n")
        f.write("\n")
        f.write(f"Agents: {n}\n")
        f.write("\n")
        f.write("Centroid:\n")
        f.write(f"  X: {cx:.4f}\n")
        f.write(f"  Y: {cy:.4f}\n")
        f.write(f"  Z: {cz:.4f}\n")
        f.write("\n")
        f.write("Velocity Statistics:\n")
        f.write(f"  Average speed: {avg_speed:.4f}\n")
        f.write(f"  Max speed: {max_speed:.4f}\n")
        if timings is not None and timings.steps:
            f.write("\n")
            f.write(f"Timings ({timings.steps} steps):\n")
            for name, ms in timings.pass_ms.items():
                f.write(f"  {name}: {ms:.3f} ms total, {ms / timings.steps:.3f} ms/step\n")
    return output_path
