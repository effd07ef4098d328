"""Core utilities for particle MCMC."""

from .resampling import (
    Resampler,
    ResampleMethod,
    resample_step,
    multinomial_resample,
    systematic_resample,
    stratified_resample,
    residual_resample,
)
from .weights import (
    check_log_weights,
    normalize_log_weights,
    normalize_weights,
    compute_ess,
    safe_logsumexp,
    function_expectation,
)
from .memory import (
    MemoryGuard,
    available_memory,
)
from .cancellation import CancellationToken

__all__ = [
    # Resampling
    "Resampler",
    "ResampleMethod",
    "resample_step",
    "multinomial_resample",
    "systematic_resample",
    "stratified_resample",
    "residual_resample",
    # Weights
    "check_log_weights",
    "normalize_log_weights",
    "normalize_weights",
    "compute_ess",
    "safe_logsumexp",
    "function_expectation",
    # Memory
    "MemoryGuard",
    "available_memory",
    # Cancellation
    "CancellationToken",
]
