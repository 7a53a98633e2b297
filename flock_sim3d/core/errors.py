"""Error types raised by the flocking pipeline.

Every error here is fatal for the simulation that raised it: buffer sizes are
fixed for the run, so nothing is retried.
"""

from __future__ import annotations

import traceback


class FlockError(RuntimeError):
    """Base class for simulation failures."""


class AllocationError(FlockError):
    """Buffers for N agents or C cells could not be allocated."""


class LifecycleError(FlockError):
    """An operation was called in a state that does not allow it."""


class DeviceFault(FlockError):
    """A pass raised or produced output that cannot be trusted.

    Attributes:
        pass_name: Name of the failing pass (e.g. "identify_cell_start_end")
        location: "file:line" of the innermost frame of the cause, if any
    """

    def __init__(self, pass_name: str, detail: str, *, cause: BaseException | None = None) -> None:
        self.pass_name = pass_name
        self.location = _innermost_location(cause) if cause is not None else None
        where = f" at {self.location}" if self.location else ""
        super().__init__(f"pass '{pass_name}' failed{where}: {detail}")


def _innermost_location(exc: BaseException) -> str | None:
    frames = traceback.extract_tb(exc.__traceback__)
    if not frames:
        return None
    last = frames[-1]
    return f"{last.filename}:{last.lineno}"
