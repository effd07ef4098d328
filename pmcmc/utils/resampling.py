"""Resampling utilities for particle filters.

Implements the single-step resampling oracle used by the sweeps:
- Multinomial: i.i.d. categorical draws
- Systematic: one uniform offset shared by all draws
- Stratified: one uniform draw per stratum
- Residual: deterministic floor(K * w) copies, multinomial remainder

Every scheme maps a weight vector to ancestor indices whose empirical
distribution matches the normalized weights in expectation. Indices are
0-based.
"""

from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Union

import torch
from torch import Tensor

from .weights import normalize_weights


class ResampleMethod(Enum):
    """Scheme used to draw ancestor indices."""
    MULTINOMIAL = "multinomial"
    SYSTEMATIC = "systematic"
    STRATIFIED = "stratified"
    RESIDUAL = "residual"


def _inverse_cdf(weights: Tensor, positions: Tensor) -> Tensor:
    """Map sorted uniform positions in [0, 1) to indices through the weight CDF."""
    cdf = torch.cumsum(weights, dim=0)
    cdf[-1] = 1.0
    indices = torch.searchsorted(cdf, positions, right=True)
    return torch.clamp(indices, max=weights.numel() - 1)


def multinomial_resample(
    weights: Tensor,
    n_out: int,
    generator: Optional[torch.Generator] = None,
) -> Tensor:
    """Draw n_out i.i.d. ancestors from normalized weights [K]."""
    return torch.multinomial(weights, n_out, replacement=True, generator=generator)


def systematic_resample(
    weights: Tensor,
    n_out: int,
    generator: Optional[torch.Generator] = None,
) -> Tensor:
    """Systematic resampling: positions (i + u) / n_out with a single u."""
    u = torch.rand(1, generator=generator, dtype=weights.dtype)
    positions = (torch.arange(n_out, dtype=weights.dtype) + u) / n_out
    return _inverse_cdf(weights, positions)


def stratified_resample(
    weights: Tensor,
    n_out: int,
    generator: Optional[torch.Generator] = None,
) -> Tensor:
    """Stratified resampling: positions (i + u_i) / n_out."""
    u = torch.rand(n_out, generator=generator, dtype=weights.dtype)
    positions = (torch.arange(n_out, dtype=weights.dtype) + u) / n_out
    return _inverse_cdf(weights, positions)


def residual_resample(
    weights: Tensor,
    n_out: int,
    generator: Optional[torch.Generator] = None,
) -> Tensor:
    """Residual resampling: floor(n_out * w) copies, remainder multinomial."""
    scaled = weights * n_out
    counts = torch.floor(scaled).long()
    deterministic = torch.repeat_interleave(torch.arange(weights.numel()), counts)

    n_residual = n_out - int(counts.sum())
    if n_residual <= 0:
        return deterministic[:n_out]

    residual = scaled - counts.to(scaled.dtype)
    if residual.sum() <= 0:
        residual = weights
    drawn = torch.multinomial(residual, n_residual, replacement=True, generator=generator)
    return torch.cat([deterministic, drawn])


_SCHEMES: Dict[ResampleMethod, Callable[..., Tensor]] = {
    ResampleMethod.MULTINOMIAL: multinomial_resample,
    ResampleMethod.SYSTEMATIC: systematic_resample,
    ResampleMethod.STRATIFIED: stratified_resample,
    ResampleMethod.RESIDUAL: residual_resample,
}


def resample_step(
    log_weights: Tensor,
    n_out: int,
    method: Union[str, ResampleMethod] = ResampleMethod.MULTINOMIAL,
    generator: Optional[torch.Generator] = None,
) -> Tuple[Tensor, float]:
    """Resample ancestor indices from unnormalized log weights.

    Args:
        log_weights: Unnormalized log weights [K]; -inf marks zero weight
        n_out: Number of ancestors to draw
        method: Resampling scheme
        generator: Optional random generator for reproducible draws

    Returns:
        ancestors: Indices in [0, K) [n_out]
        log_z_step: log(mean(exp(log_weights))), the step's contribution to
            the log marginal likelihood

    Raises:
        InvalidWeights: all weights zero or NaN
    """
    if isinstance(method, str):
        method = ResampleMethod(method)

    log_z_step, weights = normalize_weights(log_weights)
    if n_out == 0:
        return torch.zeros(0, dtype=torch.long), log_z_step

    # Draw on CPU in double precision so the CDF is accurate for large K
    weights = weights.detach().to(device="cpu", dtype=torch.float64)
    ancestors = _SCHEMES[method](weights, n_out, generator)
    return ancestors.long(), log_z_step


class Resampler:
    """Resampling oracle with a fixed scheme and random generator.

    Example:
        >>> resampler = Resampler("systematic", generator=torch.Generator().manual_seed(0))
        >>> ancestors, log_z_step = resampler(log_weights, n_out=16)
    """

    def __init__(
        self,
        method: Union[str, ResampleMethod] = ResampleMethod.MULTINOMIAL,
        generator: Optional[torch.Generator] = None,
    ):
        if isinstance(method, str):
            method = ResampleMethod(method)
        self.method = method
        self.generator = generator

    def __call__(self, log_weights: Tensor, n_out: int) -> Tuple[Tensor, float]:
        return resample_step(log_weights, n_out, self.method, self.generator)

    def __repr__(self) -> str:
        return f"Resampler(method={self.method.value})"
