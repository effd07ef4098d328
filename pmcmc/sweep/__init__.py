"""SMC and conditional SMC sweeps."""

from .engine import (
    SweepEngine,
    SweepResult,
    pg_sweep,
    smc_sweep,
)
from .lineage import LineageRecorder, merge_widths

__all__ = [
    "SweepEngine",
    "SweepResult",
    "pg_sweep",
    "smc_sweep",
    "LineageRecorder",
    "merge_widths",
]
