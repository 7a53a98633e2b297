from __future__ import annotations

import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np

from flock_sim3d.core.errors import AllocationError, DeviceFault, FlockError, LifecycleError
from flock_sim3d.core.init_conditions import create_random_flock
from flock_sim3d.params import FlockParams
from flock_sim3d.physics.cpu_backend import CPUFlock
from flock_sim3d.physics.grid import EMPTY_CELL, UniformGrid, validate_buckets
from flock_sim3d.physics.sorting import ArgsortKeyValueSorter, KeyValueSorter, self_test_sorter


class StepVariant(str, Enum):
    BRUTE_FORCE = "brute_force"
    GRID_INDIRECT = "grid_indirect"
    GRID_COHERENT = "grid_coherent"

    @classmethod
    def parse(cls, value: "StepVariant | str") -> "StepVariant":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError:
            raise ValueError(f"unknown step variant: {value!r}") from None


class SimState(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    STEPPING = "stepping"
    TORN_DOWN = "torn_down"


@dataclass
class StepTimings:
    """Elapsed time per pass, accumulated over the run (milliseconds)."""
    steps: int = 0
    pass_ms: dict[str, float] = field(default_factory=dict)
    variant_steps: dict[str, int] = field(default_factory=dict)
    last_step_ms: float | None = None

    def add_pass(self, name: str, ms: float) -> None:
        self.pass_ms[name] = self.pass_ms.get(name, 0.0) + ms

    def add_step(self, variant: StepVariant, ms: float) -> None:
        self.steps += 1
        self.variant_steps[variant.value] = self.variant_steps.get(variant.value, 0) + 1
        self.last_step_ms = ms

    @property
    def total_ms(self) -> float:
        return sum(self.pass_ms.values())

    def mean_step_ms(self) -> float | None:
        if self.steps == 0:
            return None
        return self.total_ms / self.steps


class FlockSim3D:
    """
    Boids pipeline: owns every buffer and runs the passes of one step in order.

    Lifecycle: UNINITIALIZED -> initialize() -> READY -> step() -> READY ...
    -> teardown() -> TORN_DOWN. Any fault during a step tears the simulation
    down and propagates.

    Buffers are double-buffered (index self._current is the front). After a
    grid_coherent step the front buffers are in slot order; self._agent_ids
    maps each buffer row back to its agent id so exports can restore
    agent-id order.
    """

    def __init__(self, params: FlockParams, *, sorter: KeyValueSorter | None = None) -> None:
        self.params = params
        self.state = SimState.UNINITIALIZED
        self.grid: UniformGrid | None = None
        self.agent_count = 0
        self.timings = StepTimings()
        self.device_name = "off"
        self._sorter: KeyValueSorter = sorter if sorter is not None else ArgsortKeyValueSorter()
        self._backend: Any = None
        self._current = 0
        self._pos: list[np.ndarray] = []
        self._vel: list[np.ndarray] = []
        self._coherent_pos: np.ndarray | None = None
        self._coherent_vel: np.ndarray | None = None
        self._array_indices: np.ndarray | None = None
        self._grid_indices: np.ndarray | None = None
        self._cell_start: np.ndarray | None = None
        self._cell_end: np.ndarray | None = None
        self._agent_ids: np.ndarray | None = None

    def __enter__(self) -> "FlockSim3D":
        if self.state is SimState.UNINITIALIZED:
            self.initialize()
        return self

    def __exit__(self, *exc_info: object) -> None:
        if self.state is SimState.READY:
            self.teardown()

    # --- lifecycle ----------------------------------------------------------

    def initialize(self, agent_count: int | None = None) -> "FlockSim3D":
        self._require(SimState.UNINITIALIZED, "initialize")
        p = self.params
        n = int(p.agent_count if agent_count is None else agent_count)
        if n <= 0:
            raise ValueError("agent_count must be > 0")
        grid = UniformGrid.from_params(p)
        cells = grid.cell_count

        try:
            self._pos = [np.empty((n, 3), dtype=np.float64) for _ in range(2)]
            self._vel = [np.empty((n, 3), dtype=np.float64) for _ in range(2)]
            self._coherent_pos = np.empty((n, 3), dtype=np.float64)
            self._coherent_vel = np.empty((n, 3), dtype=np.float64)
            self._array_indices = np.empty(n, dtype=np.int32)
            self._grid_indices = np.empty(n, dtype=np.int32)
            self._cell_start = np.full(cells, EMPTY_CELL, dtype=np.int32)
            self._cell_end = np.full(cells, EMPTY_CELL, dtype=np.int32)
            self._agent_ids = np.arange(n, dtype=np.int32)
        except MemoryError as exc:
            self._release()
            raise AllocationError(f"cannot allocate buffers for {n} agents and {cells} cells") from exc

        rng = np.random.default_rng(p.seed)
        flock = create_random_flock(p, rng, n)
        self._current = 0
        self._pos[0][:] = flock.pos
        self._vel[0][:] = flock.vel

        if p.debug_checks:
            issues = self_test_sorter(self._sorter)
            if issues:
                self._release()
                raise DeviceFault("sort_by_key", "; ".join(issues))

        self._backend = self._create_backend()
        self.device_name = self._backend.name
        self.grid = grid
        self.agent_count = n
        self.timings = StepTimings()
        self.state = SimState.READY
        return self

    def teardown(self) -> None:
        self._require(SimState.READY, "teardown")
        self._release()
        self.state = SimState.TORN_DOWN

    def _create_backend(self) -> Any:
        p = self.params
        if p.device == "metal":
            try:
                from flock_sim3d.physics.metal_backend import MetalFlock

                return MetalFlock(batch_size=p.batch_size)
            except AllocationError:
                raise
            except Exception as exc:  # pragma: no cover - depends on platform
                print(f"[metal] init failed, falling back to CPU: {exc}", file=sys.stderr)
        return CPUFlock(batch_size=p.batch_size)

    def _release(self) -> None:
        release = getattr(self._backend, "release", None)
        if release is not None:
            release()
        self._backend = None
        self._pos = []
        self._vel = []
        self._coherent_pos = None
        self._coherent_vel = None
        self._array_indices = None
        self._grid_indices = None
        self._cell_start = None
        self._cell_end = None
        self._agent_ids = None

    def _require(self, state: SimState, operation: str) -> None:
        if self.state is not state:
            raise LifecycleError(f"{operation}() is not allowed in state {self.state.value}")

    # --- stepping -----------------------------------------------------------

    def step(self, dt: float | None = None, variant: StepVariant | str | None = None) -> None:
        """
        Advance every agent by one tick.

        Args:
            dt: Time step (defaults to params.dt)
            variant: brute_force | grid_indirect | grid_coherent
                     (defaults to params.variant)
        """
        self._require(SimState.READY, "step")
        chosen = StepVariant.parse(self.params.variant if variant is None else variant)
        dt = float(self.params.dt if dt is None else dt)
        if chosen is not StepVariant.BRUTE_FORCE and UniformGrid.from_params(self.params) != self.grid:
            # Cells narrower than 2 * max radius make the 2x2x2 block miss neighbors.
            raise LifecycleError(
                "radii or domain_half_extent changed after initialize(); the grid no longer matches"
            )

        self.state = SimState.STEPPING
        t0 = time.perf_counter()
        try:
            if chosen is StepVariant.BRUTE_FORCE:
                self._step_brute_force(dt)
            else:
                self._step_grid(dt, coherent=chosen is StepVariant.GRID_COHERENT)
        except BaseException:
            self._release()
            self.state = SimState.TORN_DOWN
            raise

        self._current = 1 - self._current
        self.timings.add_step(chosen, (time.perf_counter() - t0) * 1000.0)
        self.state = SimState.READY

    def run(self, steps: int, dt: float | None = None, variant: StepVariant | str | None = None) -> None:
        for _ in range(int(steps)):
            self.step(dt, variant)

    def _step_brute_force(self, dt: float) -> None:
        p = self.params
        b = self._backend
        front, back = self._current, 1 - self._current
        pos, vel = self._pos[front], self._vel[front]
        new_pos, new_vel = self._pos[back], self._vel[back]

        self._run_pass("update_velocity_brute_force", b.update_velocity_brute_force, pos, vel, p, new_vel)
        self._check_finite("update_velocity_brute_force", new_vel)
        self._run_pass(
            "update_position", b.update_position, pos, new_vel,
            dt=dt, half_extent=p.domain_half_extent, out=new_pos,
        )
        self._check_finite("update_position", new_pos)

    def _step_grid(self, dt: float, *, coherent: bool) -> None:
        p = self.params
        b = self._backend
        grid = self.grid
        front, back = self._current, 1 - self._current
        pos, vel = self._pos[front], self._vel[front]
        new_pos, new_vel = self._pos[back], self._vel[back]
        array_indices = self._array_indices
        grid_indices = self._grid_indices
        cell_start = self._cell_start
        cell_end = self._cell_end

        self._run_pass("compute_indices", b.compute_indices, pos, grid, array_indices, grid_indices)
        self._run_pass("sort_by_key", self._sorter.sort_by_key, grid_indices, array_indices)
        self._run_pass("identify_cell_start_end", b.identify_cell_start_end, grid_indices, cell_start, cell_end)
        if p.debug_checks:
            issues = validate_buckets(grid_indices, cell_start, cell_end)
            if issues:
                for issue in issues:
                    print(f"[grid] {issue}", file=sys.stderr)
                raise DeviceFault("identify_cell_start_end", f"{len(issues)} bucket table problems")

        if coherent:
            self._run_pass(
                "rearrange", b.rearrange, array_indices, pos, vel,
                self._coherent_pos, self._coherent_vel,
            )
            self._run_pass(
                "update_velocity_coherent", b.update_velocity_coherent,
                self._coherent_pos, self._coherent_vel, p, new_vel,
                grid=grid, cell_start=cell_start, cell_end=cell_end,
            )
            self._check_finite("update_velocity_coherent", new_vel)
            src_pos = self._coherent_pos
        else:
            self._run_pass(
                "update_velocity_scattered", b.update_velocity_scattered,
                pos, vel, p, new_vel,
                grid=grid, cell_start=cell_start, cell_end=cell_end, permutation=array_indices,
            )
            self._check_finite("update_velocity_scattered", new_vel)
            src_pos = pos

        self._run_pass(
            "update_position", b.update_position, src_pos, new_vel,
            dt=dt, half_extent=p.domain_half_extent, out=new_pos,
        )
        self._check_finite("update_position", new_pos)

        if coherent:
            # Buffers are now in slot order: row s holds the agent that was in row array_indices[s].
            self._agent_ids[:] = self._agent_ids[array_indices]

    def _run_pass(self, name: str, fn: Any, *args: Any, **kwargs: Any) -> None:
        t0 = time.perf_counter()
        try:
            fn(*args, **kwargs)
        except FlockError:
            raise
        except Exception as exc:
            raise DeviceFault(name, f"{type(exc).__name__}: {exc}", cause=exc) from exc
        self.timings.add_pass(name, (time.perf_counter() - t0) * 1000.0)

    @staticmethod
    def _check_finite(name: str, arr: np.ndarray) -> None:
        if not np.isfinite(arr).all():
            count = int(np.count_nonzero(~np.isfinite(arr).all(axis=1)))
            raise DeviceFault(name, f"non-finite output for {count} agents")

    # --- readout ------------------------------------------------------------

    def export_positions(self, order: str = "agent") -> np.ndarray:
        self._require(SimState.READY, "export_positions")
        return self._export(self._pos[self._current], order)

    def export_velocities(self, order: str = "agent") -> np.ndarray:
        self._require(SimState.READY, "export_velocities")
        return self._export(self._vel[self._current], order)

    @property
    def agent_ids(self) -> np.ndarray:
        """Agent id held by each buffer row (identity until a coherent step)."""
        self._require(SimState.READY, "agent_ids")
        return self._agent_ids.copy()

    def _export(self, buf: np.ndarray, order: str) -> np.ndarray:
        if order == "slot":
            return buf.copy()
        if order != "agent":
            raise ValueError(f"order must be 'agent' or 'slot', got {order!r}")
        out = np.empty_like(buf)
        out[self._agent_ids] = buf
        return out

    def validate_state(self) -> list[str]:
        self._require(SimState.READY, "validate_state")
        issues: list[str] = []
        p = self.params
        eps = 1e-6
        pos = self.export_positions()
        vel = self.export_velocities()

        finite = np.isfinite(pos).all(axis=1) & np.isfinite(vel).all(axis=1)
        for i in np.flatnonzero(~finite):
            issues.append(f"agent {int(i)} has non-finite position/velocity")

        h = float(p.domain_half_extent)
        outside = finite & (np.abs(pos) > h + eps).any(axis=1)
        for i in np.flatnonzero(outside):
            issues.append(f"agent {int(i)} out of domain bounds")

        if self.timings.steps > 0:
            speed = np.sqrt(np.einsum("ij,ij->i", vel, vel))
            fast = finite & (speed > p.max_speed * (1.0 + eps) + eps)
            for i in np.flatnonzero(fast):
                issues.append(f"agent {int(i)} faster than max_speed")

        return issues
