from __future__ import annotations

import math
import struct
from typing import TYPE_CHECKING, Any

import numpy as np

from flock_sim3d.core.errors import AllocationError, DeviceFault

if TYPE_CHECKING:
    from flock_sim3d.params import FlockParams
    from flock_sim3d.physics.grid import UniformGrid


# n, cell_count, side, then 14 floats; see struct Params in the shader
_PARAMS_FORMAT = "IIi14f"

KERNELS = (
    "compute_indices",
    "reset_cell_buckets",
    "identify_cell_start_end",
    "rearrange_coherent",
    "update_velocity_brute_force",
    "update_velocity_scattered",
    "update_velocity_coherent",
    "update_position",
)


class MetalFlock:
    """Flocking passes as Metal compute kernels (macOS).

    Each method uploads its inputs, dispatches one kernel over one thread per
    agent (or per cell), waits for completion and copies the result into the
    caller's numpy arrays. Device math is float32.
    """

    name = "metal"

    def __init__(self, *, batch_size: int = 128) -> None:
        try:
            from Metal import (  # type: ignore
                MTLCompileOptions,
                MTLCreateSystemDefaultDevice,
                MTLResourceStorageModeShared,
                MTLSizeMake,
            )
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("Missing Metal bindings: install pyobjc-framework-Metal.") from exc

        self._mtl = {
            "MTLResourceStorageModeShared": MTLResourceStorageModeShared,
            "MTLSizeMake": MTLSizeMake,
        }

        self.device = MTLCreateSystemDefaultDevice()
        if self.device is None:  # pragma: no cover - depends on platform
            raise RuntimeError("Metal device not available.")
        self.queue = self.device.newCommandQueue()
        if self.queue is None:  # pragma: no cover - depends on platform
            raise RuntimeError("Metal command queue unavailable.")

        self.batch_size = int(batch_size)
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")

        options = MTLCompileOptions.new()
        library, error = self.device.newLibraryWithSource_options_error_(SHADER_SOURCE, options, None)
        if library is None:  # pragma: no cover - compilation failure
            message = str(error) if error is not None else "unknown compile error"
            raise RuntimeError(f"Metal shader compile failed: {message}")

        self._pipelines: dict[str, Any] = {}
        for kernel in KERNELS:
            function = library.newFunctionWithName_(kernel)
            if function is None:  # pragma: no cover - compilation failure
                raise RuntimeError(f"Metal shader missing {kernel}.")
            pipeline, error = self.device.newComputePipelineStateWithFunction_error_(function, None)
            if pipeline is None:  # pragma: no cover - pipeline failure
                message = str(error) if error is not None else "unknown pipeline error"
                raise RuntimeError(f"Metal pipeline creation failed for {kernel}: {message}")
            max_threads = int(pipeline.maxTotalThreadsPerThreadgroup())
            if self.batch_size > max_threads:
                raise RuntimeError(
                    f"batch_size {self.batch_size} exceeds max threads per threadgroup ({max_threads}) for {kernel}."
                )
            self._pipelines[kernel] = pipeline

        self._buffers: dict[str, Any] = {}

    # --- passes -------------------------------------------------------------

    def compute_indices(
        self,
        pos: np.ndarray,
        grid: "UniformGrid",
        array_indices: np.ndarray,
        grid_indices: np.ndarray,
    ) -> None:
        n = int(pos.shape[0])
        self._upload("pos", _float4(pos))
        self._ensure_buffer("array_indices", n * 4)
        self._ensure_buffer("grid_indices", n * 4)
        params = _pack_params(n=n, grid=grid)
        self._dispatch("compute_indices", ["pos", "array_indices", "grid_indices"], params, n)
        array_indices[:] = self._read("array_indices", np.int32, n)
        grid_indices[:] = self._read("grid_indices", np.int32, n)

    def identify_cell_start_end(
        self,
        sorted_grid_indices: np.ndarray,
        cell_start: np.ndarray,
        cell_end: np.ndarray,
    ) -> None:
        n = int(sorted_grid_indices.shape[0])
        cells = int(cell_start.shape[0])
        self._upload("grid_indices", np.ascontiguousarray(sorted_grid_indices, dtype=np.int32))
        self._ensure_buffer("cell_start", cells * 4)
        self._ensure_buffer("cell_end", cells * 4)
        params = struct.pack(_PARAMS_FORMAT, n, cells, 0, *([0.0] * 14))
        self._dispatch("reset_cell_buckets", ["cell_start", "cell_end"], params, cells)
        self._dispatch("identify_cell_start_end", ["grid_indices", "cell_start", "cell_end"], params, n)
        cell_start[:] = self._read("cell_start", np.int32, cells)
        cell_end[:] = self._read("cell_end", np.int32, cells)

    def rearrange(
        self,
        permutation: np.ndarray,
        pos: np.ndarray,
        vel: np.ndarray,
        coherent_pos: np.ndarray,
        coherent_vel: np.ndarray,
    ) -> None:
        n = int(pos.shape[0])
        self._upload("array_indices", np.ascontiguousarray(permutation, dtype=np.int32))
        self._upload("pos", _float4(pos))
        self._upload("vel", _float4(vel))
        self._ensure_buffer("coherent_pos", n * 16)
        self._ensure_buffer("coherent_vel", n * 16)
        params = _pack_params(n=n)
        self._dispatch(
            "rearrange_coherent",
            ["array_indices", "pos", "vel", "coherent_pos", "coherent_vel"],
            params,
            n,
        )
        coherent_pos[:] = self._read_float4("coherent_pos", n)
        coherent_vel[:] = self._read_float4("coherent_vel", n)

    def update_velocity_brute_force(
        self, pos: np.ndarray, vel: np.ndarray, params: "FlockParams", out: np.ndarray
    ) -> None:
        n = int(pos.shape[0])
        self._upload("pos", _float4(pos))
        self._upload("vel", _float4(vel))
        self._ensure_buffer("vel_out", n * 16)
        packed = _pack_params(n=n, params=params)
        self._dispatch("update_velocity_brute_force", ["pos", "vel", "vel_out"], packed, n)
        out[:] = self._read_float4("vel_out", n)

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
        n = int(pos.shape[0])
        self._upload("pos", _float4(pos))
        self._upload("vel", _float4(vel))
        self._upload("cell_start", np.ascontiguousarray(cell_start, dtype=np.int32))
        self._upload("cell_end", np.ascontiguousarray(cell_end, dtype=np.int32))
        self._upload("array_indices", np.ascontiguousarray(permutation, dtype=np.int32))
        self._ensure_buffer("vel_out", n * 16)
        packed = _pack_params(n=n, grid=grid, params=params)
        self._dispatch(
            "update_velocity_scattered",
            ["pos", "vel", "cell_start", "cell_end", "array_indices", "vel_out"],
            packed,
            n,
        )
        out[:] = self._read_float4("vel_out", n)

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
        n = int(coherent_pos.shape[0])
        self._upload("coherent_pos", _float4(coherent_pos))
        self._upload("coherent_vel", _float4(coherent_vel))
        self._upload("cell_start", np.ascontiguousarray(cell_start, dtype=np.int32))
        self._upload("cell_end", np.ascontiguousarray(cell_end, dtype=np.int32))
        self._ensure_buffer("vel_out", n * 16)
        packed = _pack_params(n=n, grid=grid, params=params)
        self._dispatch(
            "update_velocity_coherent",
            ["coherent_pos", "coherent_vel", "cell_start", "cell_end", "vel_out"],
            packed,
            n,
        )
        out[:] = self._read_float4("vel_out", n)

    def update_position(
        self, pos: np.ndarray, vel: np.ndarray, *, dt: float, half_extent: float, out: np.ndarray
    ) -> None:
        n = int(pos.shape[0])
        self._upload("pos", _float4(pos))
        self._upload("vel", _float4(vel))
        self._ensure_buffer("pos_out", n * 16)
        packed = _pack_params(n=n, dt=dt, half_extent=half_extent)
        self._dispatch("update_position", ["pos", "vel", "pos_out"], packed, n)
        out[:] = self._read_float4("pos_out", n)

    # --- buffers and dispatch -----------------------------------------------

    def _dispatch(self, kernel: str, keys: list[str], params: bytes, count: int) -> None:
        if count <= 0:
            return
        cmd_buffer = self.queue.commandBuffer()
        encoder = cmd_buffer.computeCommandEncoder()
        encoder.setComputePipelineState_(self._pipelines[kernel])
        for index, key in enumerate(keys):
            encoder.setBuffer_offset_atIndex_(self._buffers[key], 0, index)
        param_index = len(keys)
        if hasattr(encoder, "setBytes_length_atIndex_"):
            encoder.setBytes_length_atIndex_(params, len(params), param_index)
        else:
            buf_params = self._ensure_buffer("params", len(params))
            self._memcpy(buf_params, params)
            encoder.setBuffer_offset_atIndex_(buf_params, 0, param_index)

        threads = self._mtl["MTLSizeMake"](self.batch_size, 1, 1)
        group_count = max(1, math.ceil(count / self.batch_size))
        groups = self._mtl["MTLSizeMake"](group_count, 1, 1)
        encoder.dispatchThreadgroups_threadsPerThreadgroup_(groups, threads)
        encoder.endEncoding()
        cmd_buffer.commit()
        cmd_buffer.waitUntilCompleted()

        error = cmd_buffer.error()
        if error is not None:
            raise DeviceFault(kernel, str(error))

    def _upload(self, key: str, data: np.ndarray) -> Any:
        buf = self._ensure_buffer(key, data.nbytes)
        if data.nbytes:
            self._memcpy(buf, data)
        return buf

    def _ensure_buffer(self, key: str, length: int) -> Any:
        length = max(16, int(length))
        buf = self._buffers.get(key)
        if buf is None or int(buf.length()) < length:
            buf = self.device.newBufferWithLength_options_(
                length, self._mtl["MTLResourceStorageModeShared"]
            )
            if buf is None:
                raise AllocationError(f"Metal buffer '{key}' of {length} bytes could not be allocated.")
            self._buffers[key] = buf
        return buf

    def _buffer_view(self, buf: Any, length: int) -> memoryview:
        contents = buf.contents()
        if hasattr(contents, "as_buffer"):
            try:
                view = memoryview(contents.as_buffer(length)).cast("B")
                if view.nbytes >= length:
                    return view
            except Exception:
                pass
        try:
            view = memoryview(contents).cast("B")
            if view.nbytes >= length:
                return view
        except Exception:
            pass
        raise RuntimeError(f"Unable to access MTLBuffer contents (type={type(contents)})")

    def _memcpy(self, buf: Any, data: Any) -> None:
        if isinstance(data, np.ndarray):
            src = memoryview(np.ascontiguousarray(data)).cast("B")
            view = self._buffer_view(buf, src.nbytes)
            view[: src.nbytes] = src
            return
        if isinstance(data, (bytes, bytearray)):
            view = self._buffer_view(buf, len(data))
            view[: len(data)] = data
            return
        raise TypeError(f"Unsupported buffer source: {type(data)}")

    def _read(self, key: str, dtype: Any, count: int) -> np.ndarray:
        itemsize = np.dtype(dtype).itemsize
        view = self._buffer_view(self._buffers[key], count * itemsize)
        return np.frombuffer(view[: count * itemsize], dtype=dtype, count=count)

    def _read_float4(self, key: str, n: int) -> np.ndarray:
        return self._read(key, np.float32, n * 4).reshape((n, 4))[:, :3]

    def release(self) -> None:
        self._buffers.clear()


def _float4(arr: np.ndarray) -> np.ndarray:
    n = int(arr.shape[0])
    out = np.zeros((n, 4), dtype=np.float32)
    out[:, :3] = arr
    return out


def _pack_params(
    *,
    n: int,
    grid: "UniformGrid | None" = None,
    params: "FlockParams | None" = None,
    dt: float = 0.0,
    half_extent: float = 0.0,
) -> bytes:
    side = grid.side if grid is not None else 0
    cells = grid.cell_count if grid is not None else 0
    cell_width = grid.cell_width if grid is not None else 1.0
    grid_min = grid.grid_min if grid is not None else 0.0
    if params is not None:
        rules = (params.r1, params.r2, params.r3, params.k1, params.k2, params.k3, params.max_speed)
    else:
        rules = (0.0,) * 7
    return struct.pack(
        _PARAMS_FORMAT,
        n,
        cells,
        side,
        float(cell_width),
        float(1.0 / cell_width),
        float(grid_min),
        float(grid_min),
        float(grid_min),
        *(float(v) for v in rules),
        float(half_extent),
        float(dt),
    )


SHADER_SOURCE = """
#include <metal_stdlib>
using namespace metal;

struct Params {
    uint n;
    uint cell_count;
    int side;
    float cell_width;
    float inv_cell_width;
    float grid_min_x;
    float grid_min_y;
    float grid_min_z;
    float r1;
    float r2;
    float r3;
    float k1;
    float k2;
    float k3;
    float max_speed;
    float half_extent;
    float dt;
};

struct RuleAccum {
    float3 center;
    float3 separation;
    float3 alignment;
    int n1;
    int n3;
};

inline int3 cell_coords(float3 p, constant Params& P, float shift) {
    float3 grid_min = float3(P.grid_min_x, P.grid_min_y, P.grid_min_z);
    int3 c = int3(floor((p - grid_min) * P.inv_cell_width - shift));
    return clamp(c, int3(0), int3(P.side - 1));
}

inline int cell_id(int3 c, int side) {
    return c.x + c.y * side + c.z * side * side;
}

inline void accum_reset(thread RuleAccum& acc) {
    acc.center = float3(0.0f);
    acc.separation = float3(0.0f);
    acc.alignment = float3(0.0f);
    acc.n1 = 0;
    acc.n3 = 0;
}

inline void accum_add(thread RuleAccum& acc, float3 pa, float3 pb, float3 vb, constant Params& P) {
    float d = distance(pa, pb);
    if (d < P.r1) {
        acc.center += pb;
        acc.n1 += 1;
    }
    if (d < P.r2) {
        acc.separation += pa - pb;
    }
    if (d < P.r3) {
        acc.alignment += vb;
        acc.n3 += 1;
    }
}

inline float3 accum_resolve(thread const RuleAccum& acc, float3 pa, float3 va, constant Params& P) {
    float3 v = va;
    if (acc.n1 > 0) {
        v += (acc.center / float(acc.n1) - pa) * P.k1;
    }
    v += acc.separation * P.k2;
    if (acc.n3 > 0) {
        v += (acc.alignment / float(acc.n3)) * P.k3;
    }
    float speed = length(v);
    if (speed > P.max_speed) {
        v = v * (P.max_speed / speed);
    }
    return v;
}

kernel void compute_indices(
    device const float4* pos [[buffer(0)]],
    device int* array_indices [[buffer(1)]],
    device int* grid_indices [[buffer(2)]],
    constant Params& P [[buffer(3)]],
    uint tid [[thread_position_in_grid]]
) {
    if (tid >= P.n) {
        return;
    }
    grid_indices[tid] = cell_id(cell_coords(pos[tid].xyz, P, 0.0f), P.side);
    array_indices[tid] = int(tid);
}

kernel void reset_cell_buckets(
    device int* cell_start [[buffer(0)]],
    device int* cell_end [[buffer(1)]],
    constant Params& P [[buffer(2)]],
    uint tid [[thread_position_in_grid]]
) {
    if (tid >= P.cell_count) {
        return;
    }
    cell_start[tid] = -1;
    cell_end[tid] = -1;
}

kernel void identify_cell_start_end(
    device const int* grid_indices [[buffer(0)]],
    device int* cell_start [[buffer(1)]],
    device int* cell_end [[buffer(2)]],
    constant Params& P [[buffer(3)]],
    uint tid [[thread_position_in_grid]]
) {
    if (tid >= P.n) {
        return;
    }
    int c = grid_indices[tid];
    if (tid == 0 || grid_indices[tid - 1] != c) {
        cell_start[c] = int(tid);
    }
    if (tid == P.n - 1 || grid_indices[tid + 1] != c) {
        cell_end[c] = int(tid) + 1;
    }
}

kernel void rearrange_coherent(
    device const int* array_indices [[buffer(0)]],
    device const float4* pos [[buffer(1)]],
    device const float4* vel [[buffer(2)]],
    device float4* coherent_pos [[buffer(3)]],
    device float4* coherent_vel [[buffer(4)]],
    constant Params& P [[buffer(5)]],
    uint tid [[thread_position_in_grid]]
) {
    if (tid >= P.n) {
        return;
    }
    int j = array_indices[tid];
    coherent_pos[tid] = pos[j];
    coherent_vel[tid] = vel[j];
}

kernel void update_velocity_brute_force(
    device const float4* pos [[buffer(0)]],
    device const float4* vel [[buffer(1)]],
    device float4* vel_out [[buffer(2)]],
    constant Params& P [[buffer(3)]],
    uint tid [[thread_position_in_grid]]
) {
    if (tid >= P.n) {
        return;
    }
    float3 pa = pos[tid].xyz;
    RuleAccum acc;
    accum_reset(acc);
    for (uint j = 0; j < P.n; ++j) {
        accum_add(acc, pa, pos[j].xyz, vel[j].xyz, P);
    }
    vel_out[tid] = float4(accum_resolve(acc, pa, vel[tid].xyz, P), 0.0f);
}

kernel void update_velocity_scattered(
    device const float4* pos [[buffer(0)]],
    device const float4* vel [[buffer(1)]],
    device const int* cell_start [[buffer(2)]],
    device const int* cell_end [[buffer(3)]],
    device const int* array_indices [[buffer(4)]],
    device float4* vel_out [[buffer(5)]],
    constant Params& P [[buffer(6)]],
    uint tid [[thread_position_in_grid]]
) {
    if (tid >= P.n) {
        return;
    }
    float3 pa = pos[tid].xyz;
    int3 base = cell_coords(pa, P, 0.5f);
    RuleAccum acc;
    accum_reset(acc);
    for (int dz = 0; dz < 2; ++dz) {
        for (int dy = 0; dy < 2; ++dy) {
            for (int dx = 0; dx < 2; ++dx) {
                int3 c = base + int3(dx, dy, dz);
                if (c.x >= P.side || c.y >= P.side || c.z >= P.side) {
                    continue;
                }
                int id = cell_id(c, P.side);
                int start = cell_start[id];
                if (start < 0) {
                    continue;
                }
                int end = cell_end[id];
                for (int s = start; s < end; ++s) {
                    int j = array_indices[s];
                    accum_add(acc, pa, pos[j].xyz, vel[j].xyz, P);
                }
            }
        }
    }
    vel_out[tid] = float4(accum_resolve(acc, pa, vel[tid].xyz, P), 0.0f);
}

kernel void update_velocity_coherent(
    device const float4* pos [[buffer(0)]],
    device const float4* vel [[buffer(1)]],
    device const int* cell_start [[buffer(2)]],
    device const int* cell_end [[buffer(3)]],
    device float4* vel_out [[buffer(4)]],
    constant Params& P [[buffer(5)]],
    uint tid [[thread_position_in_grid]]
) {
    if (tid >= P.n) {
        return;
    }
    float3 pa = pos[tid].xyz;
    int3 base = cell_coords(pa, P, 0.5f);
    RuleAccum acc;
    accum_reset(acc);
    for (int dz = 0; dz < 2; ++dz) {
        for (int dy = 0; dy < 2; ++dy) {
            for (int dx = 0; dx < 2; ++dx) {
                int3 c = base + int3(dx, dy, dz);
                if (c.x >= P.side || c.y >= P.side || c.z >= P.side) {
                    continue;
                }
                int id = cell_id(c, P.side);
                int start = cell_start[id];
                if (start < 0) {
                    continue;
                }
                int end = cell_end[id];
                for (int s = start; s < end; ++s) {
                    accum_add(acc, pa, pos[s].xyz, vel[s].xyz, P);
                }
            }
        }
    }
    vel_out[tid] = float4(accum_resolve(acc, pa, vel[tid].xyz, P), 0.0f);
}

kernel void update_position(
    device const float4* pos [[buffer(0)]],
    device const float4* vel [[buffer(1)]],
    device float4* pos_out [[buffer(2)]],
    constant Params& P [[buffer(3)]],
    uint tid [[thread_position_in_grid]]
) {
    if (tid >= P.n) {
        return;
    }
    float3 p = pos[tid].xyz + vel[tid].xyz * P.dt;
    float h = P.half_extent;
    p = select(p, p - 2.0f * h, p > h);
    p = select(p, p + 2.0f * h, p < -h);
    pos_out[tid] = float4(p, 0.0f);
}
"""
