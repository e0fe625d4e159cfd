from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Mapping


class Algorithm(str, Enum):
    MEAN = "mean"
    BIVARIATE = "bivariate"
    MULTIVARIATE = "multivariate"
    MULTIVARIATE_DESCENT = "multivariate+gradient-descent"
    CONSOLIDATED_BIVARIATE = "consolidated-bivariate"
    CONSOLIDATED_DESCENT = "consolidated-bivariate+gradient-descent"

    @classmethod
    def parse(cls, raw: "Algorithm | str") -> "Algorithm":
        if isinstance(raw, Algorithm):
            return raw
        key = str(raw).strip().lower()
        for algo in cls:
            if algo.value == key or algo.name.lower() == key:
                return algo
        raise ValueError(f"Unknown algorithm: {raw!r}")


DEFAULT_ITERATIONS = {
    Algorithm.MEAN: 0,
    Algorithm.BIVARIATE: 1,
    Algorithm.MULTIVARIATE: 3,
    Algorithm.MULTIVARIATE_DESCENT: 100,
    Algorithm.CONSOLIDATED_BIVARIATE: 0,
    Algorithm.CONSOLIDATED_DESCENT: 100,
}


@dataclass(frozen=True)
class DescentConfig:
    max_step_size: float = 1.0
    min_step_size: float = 1e-6
    max_backtracks: int = 100
    optimize_scores: bool = True

    def __post_init__(self) -> None:
        if not (float(self.max_step_size) > 0.0 and float(self.min_step_size) > 0.0):
            raise ValueError(
                f"Step sizes must be positive (max={self.max_step_size}, min={self.min_step_size})"
            )
        if float(self.min_step_size) > float(self.max_step_size):
            raise ValueError(
                f"min_step_size={self.min_step_size} exceeds max_step_size={self.max_step_size}"
            )
        if int(self.max_backtracks) < 1:
            raise ValueError(f"max_backtracks must be >= 1, got {self.max_backtracks}")

    def step_size_at(self, iteration: int, total: int) -> float:
        progress = float(iteration) / float(total) if total > 0 else 0.0
        return float(self.max_step_size) * (1.0 - progress) + float(self.min_step_size) * progress


@dataclass(frozen=True)
class ImputationConfig:
    algorithm: Algorithm = Algorithm.BIVARIATE
    iterations: int = 1
    descent: DescentConfig = field(default_factory=DescentConfig)

    def __post_init__(self) -> None:
        object.__setattr__(self, "algorithm", Algorithm.parse(self.algorithm))
        if isinstance(self.iterations, bool) or int(self.iterations) != self.iterations:
            raise ValueError(f"iterations must be an integer, got {self.iterations!r}")
        if int(self.iterations) < 0:
            raise ValueError(f"iterations must be non-negative, got {self.iterations}")
        object.__setattr__(self, "iterations", int(self.iterations))

    @property
    def key(self) -> str:
        return f"algorithm={self.algorithm.value}|iterations={self.iterations}"

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "ImputationConfig":
        algorithm = Algorithm.parse(raw.get("algorithm", Algorithm.BIVARIATE))
        iterations = raw.get("iterations")
        if iterations is None:
            iterations = DEFAULT_ITERATIONS[algorithm]
        descent_raw = dict(raw.get("descent") or {})
        unknown = sorted(set(descent_raw) - {f.name for f in fields(DescentConfig)})
        if unknown:
            raise ValueError(f"Unknown descent settings: {unknown}")
        descent = DescentConfig(**descent_raw)
        return cls(algorithm=algorithm, iterations=int(iterations), descent=descent)
