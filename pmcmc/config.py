"""Configuration for particle MCMC runs.

Settings are grouped in dataclasses and can be loaded from / saved to YAML:

    algorithm: apg
    n_iter: 500
    seed: 0
    sweep:
      n_particles: 100
      resample_method: systematic
    memory:
      absolute_threshold: 5.0e7
"""

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .utils.memory import (
    DEFAULT_ABSOLUTE_THRESHOLD,
    DEFAULT_FALLBACK_MEMORY,
    DEFAULT_MEMORY_FRACTION,
    MemoryGuard,
)
from .utils.resampling import ResampleMethod


ALGORITHMS = ("smc", "pgibbs", "pimh", "apg")


@dataclass
class SweepConfig:
    """Sweep configuration."""
    n_particles: int = 100
    resample_method: str = ResampleMethod.MULTINOMIAL.value
    compress: bool = False
    rao_blackwellize: bool = True

    def __post_init__(self):
        if self.n_particles < 1:
            raise ValueError(f"n_particles must be at least 1, got {self.n_particles}")
        # Raises ValueError for unknown schemes
        ResampleMethod(self.resample_method)


@dataclass
class MemoryGuardConfig:
    """Memory guard thresholds (bytes)."""
    enabled: bool = True
    absolute_threshold: float = DEFAULT_ABSOLUTE_THRESHOLD
    memory_fraction: float = DEFAULT_MEMORY_FRACTION
    fallback_memory: float = DEFAULT_FALLBACK_MEMORY

    def build(self) -> MemoryGuard:
        return MemoryGuard(
            absolute_threshold=self.absolute_threshold,
            memory_fraction=self.memory_fraction,
            fallback_memory=self.fallback_memory,
            enabled=self.enabled,
        )


@dataclass
class ChainConfig:
    """Top-level run configuration."""
    algorithm: str = "apg"
    n_iter: int = 100
    seed: Optional[int] = None
    progress: bool = False
    sweep: SweepConfig = field(default_factory=SweepConfig)
    memory: MemoryGuardConfig = field(default_factory=MemoryGuardConfig)

    def __post_init__(self):
        if self.algorithm not in ALGORITHMS:
            raise ValueError(f"Unknown algorithm '{self.algorithm}', expected one of {ALGORITHMS}")
        if self.n_iter < 1:
            raise ValueError(f"n_iter must be at least 1, got {self.n_iter}")


def _section(cls, values: Optional[Dict[str, Any]]):
    values = values or {}
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**values)


def config_from_dict(config: Dict[str, Any]) -> ChainConfig:
    """Convert a loaded YAML dict to a ChainConfig."""
    config = dict(config or {})
    sweep = _section(SweepConfig, config.pop("sweep", None))
    memory = _section(MemoryGuardConfig, config.pop("memory", None))
    chain = _section(ChainConfig, config)
    chain.sweep = sweep
    chain.memory = memory
    return chain


def load_config(config_path: Union[str, Path]) -> ChainConfig:
    """Load a run configuration from a YAML file."""
    with open(config_path, "r") as f:
        config = yaml.safe_load(f)
    return config_from_dict(config)


def save_config(config: ChainConfig, output_path: Union[str, Path]) -> None:
    """Save a run configuration to a YAML file."""
    with open(output_path, "w") as f:
        yaml.dump(asdict(config), f, default_flow_style=False, sort_keys=False)
