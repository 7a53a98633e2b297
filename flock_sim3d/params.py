from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any


VARIANTS = ("brute_force", "grid_indirect", "grid_coherent")
DEVICES = ("cpu", "metal")


@dataclass(slots=True)
class FlockParams:
    agent_count: int = 5000
    seed: int = 1
    initial_speed: float = 0.0  # 0 = agents start at rest

    # rule 1 (cohesion), rule 2 (separation), rule 3 (alignment)
    r1: float = 5.0
    r2: float = 3.0
    r3: float = 5.0
    k1: float = 0.01
    k2: float = 0.1
    k3: float = 0.1
    max_speed: float = 1.0

    domain_half_extent: float = 100.0  # domain is [-h, +h] on every axis
    batch_size: int = 128
    dt: float = 0.2

    variant: str = "grid_coherent"  # brute_force | grid_indirect | grid_coherent
    device: str = "cpu"  # cpu | metal
    debug_checks: bool = False

    def clamp(self) -> "FlockParams":
        self.agent_count = max(1, int(self.agent_count))
        self.seed = int(self.seed)
        self.initial_speed = max(0.0, float(self.initial_speed))
        self.r1 = max(1e-6, float(self.r1))
        self.r2 = max(1e-6, float(self.r2))
        self.r3 = max(1e-6, float(self.r3))
        self.k1 = float(self.k1)
        self.k2 = float(self.k2)
        self.k3 = float(self.k3)
        self.max_speed = max(1e-6, float(self.max_speed))
        self.domain_half_extent = max(1e-3, float(self.domain_half_extent))
        self.batch_size = max(1, min(1024, int(self.batch_size)))
        self.dt = max(0.0, float(self.dt))
        self.variant = str(self.variant or "grid_coherent").strip().lower().replace("-", "_")
        if self.variant not in VARIANTS:
            self.variant = "grid_coherent"
        self.device = str(self.device or "cpu").strip().lower()
        if self.device not in DEVICES:
            self.device = "cpu"
        self.debug_checks = bool(self.debug_checks)
        return self

    @property
    def max_radius(self) -> float:
        return max(self.r1, self.r2, self.r3)

    def validate(self) -> list[str]:
        warnings: list[str] = []

        if self.max_radius > self.domain_half_extent:
            warnings.append("interaction radius exceeds the domain: the grid collapses to a single block.")
        if self.max_speed * self.dt > self.domain_half_extent:
            warnings.append("max_speed * dt exceeds domain_half_extent: one wrap per step may not be enough.")
        if self.initial_speed > self.max_speed:
            warnings.append("initial_speed is above max_speed and will be clamped on the first step.")
        if self.k1 < 0.0 or self.k3 < 0.0:
            warnings.append("negative k1/k3 turns cohesion/alignment into repulsion.")
        if self.variant == "brute_force" and self.agent_count > 20000:
            warnings.append("variant=brute_force is O(N^2): expect slow steps above 20000 agents.")
        if self.device == "metal" and self.debug_checks:
            warnings.append("debug_checks read the bucket table back from the GPU every step.")

        return warnings

    @classmethod
    def load(cls, path: str | Path) -> "FlockParams":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("The parameter file must contain a JSON object.")
        # Older configs named the rule distances/scales explicitly.
        aliases = {
            "rule1_distance": "r1",
            "rule2_distance": "r2",
            "rule3_distance": "r3",
            "rule1_scale": "k1",
            "rule2_scale": "k2",
            "rule3_scale": "k3",
            "scene_scale": "domain_half_extent",
            "block_size": "batch_size",
        }
        for old, new in aliases.items():
            if old in data and new not in data:
                data[new] = data.pop(old)
        filtered: dict[str, Any] = {k: v for k, v in data.items() if k in cls.__annotations__}
        return cls(**filtered).clamp()

    def save(self, path: str | Path) -> None:
        data = asdict(self)
        Path(path).write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
