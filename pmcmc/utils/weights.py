"""Log-space weight operations for numerical stability.

All weight operations are performed in log-space to prevent
underflow/overflow with long sequences and many particles. Weights that
cannot be normalized at all (every particle at -inf, or NaN) raise
InvalidWeights rather than silently producing NaN relative weights.
"""

from typing import Callable, Optional, Tuple, Union, TYPE_CHECKING
import math

import torch
from torch import Tensor

from ..errors import InvalidWeights, InconsistentRepresentation

if TYPE_CHECKING:
    from ..ensemble import ParticleEnsemble


def check_log_weights(log_weights: Union[Tensor, float], n_rows: int, name: str = "log_weights") -> Tensor:
    """Validate the output of a weighting function.

    Args:
        log_weights: One log weight per row (scalars allowed for one row)
        n_rows: Expected number of rows
        name: Label used in error messages

    Returns:
        1-D floating point tensor of length n_rows

    Raises:
        InconsistentRepresentation: wrong number of values
        InvalidWeights: NaN or +inf values (-inf is a valid zero weight)
    """
    log_weights = torch.as_tensor(log_weights)
    if not log_weights.is_floating_point():
        log_weights = log_weights.to(torch.get_default_dtype())
    log_weights = log_weights.reshape(-1)
    if log_weights.numel() != n_rows:
        raise InconsistentRepresentation(
            f"{name} has {log_weights.numel()} values for {n_rows} particles"
        )
    if torch.isnan(log_weights).any():
        raise InvalidWeights(f"NaN detected in {name}")
    if torch.isposinf(log_weights).any():
        raise InvalidWeights(f"+inf detected in {name}")
    return log_weights


def safe_logsumexp(
    log_weights: Tensor,
    dim: int = -1,
    keepdim: bool = False,
) -> Tensor:
    """Numerically stable logsumexp operation.

    Equivalent to torch.logsumexp but refuses results that make
    normalization impossible.

    Args:
        log_weights: Log weights tensor
        dim: Dimension to reduce
        keepdim: Whether to keep the reduced dimension

    Returns:
        Result of logsumexp operation

    Raises:
        InvalidWeights: NaN/Inf in the result (e.g. all weights -inf)
    """
    result = torch.logsumexp(log_weights, dim=dim, keepdim=keepdim)

    if torch.isnan(result).any() or torch.isinf(result).any():
        raise InvalidWeights("NaN/Inf detected in logsumexp, weights cannot be normalized")

    return result


def normalize_log_weights(log_weights: Tensor, dim: int = -1) -> Tensor:
    """Normalize log weights so that exp(log_weights).sum(dim) = 1.

    Args:
        log_weights: Unnormalized log weights [..., K]
        dim: Dimension to normalize over

    Returns:
        Normalized log weights [..., K]
    """
    log_normalizer = safe_logsumexp(log_weights, dim=dim, keepdim=True)
    return log_weights - log_normalizer


def normalize_weights(log_weights: Tensor) -> Tuple[float, Tensor]:
    """Relative weights and log mean weight by max-subtraction.

    log_mean = max + log(sum(exp(lw - max))) - log(K)

    Args:
        log_weights: Unnormalized log weights [K]

    Returns:
        log_mean_weight: log(mean(exp(log_weights))) as a float
        relative_weights: Non-negative weights summing to one [K]

    Raises:
        InvalidWeights: Empty input, or max log weight not finite
    """
    log_weights = log_weights.reshape(-1)
    if log_weights.numel() == 0:
        raise InvalidWeights("Cannot normalize an empty weight vector")

    z_max = log_weights.max()
    if not torch.isfinite(z_max):
        raise InvalidWeights(
            f"Maximum log weight is {float(z_max)}, weights cannot be normalized"
        )

    weights = torch.exp(log_weights - z_max)
    total = weights.sum()
    log_mean = float(z_max) + math.log(float(total)) - math.log(log_weights.numel())
    return log_mean, weights / total


def compute_ess(
    log_weights: Tensor,
    dim: int = -1,
    already_normalized: bool = False,
) -> Tensor:
    """Compute Effective Sample Size (ESS) from log weights.

    ESS = 1 / sum(w_i^2) where w_i are normalized weights.

    ESS = K means uniform weights (maximum diversity).
    ESS = 1 means one particle dominates (degeneracy).

    Args:
        log_weights: Log weights [..., K]
        dim: Dimension containing particles
        already_normalized: If True, skip normalization

    Returns:
        ess: Effective sample size [...]
    """
    if already_normalized:
        log_weights_norm = log_weights
    else:
        log_weights_norm = normalize_log_weights(log_weights, dim=dim)

    # log(ESS) = -log(sum(exp(2 * log_w)))
    log_sum_sq = torch.logsumexp(2.0 * log_weights_norm, dim=dim)
    return torch.exp(-log_sum_sq)


def function_expectation(
    ensemble: "ParticleEnsemble",
    f: Callable[["ParticleEnsemble"], Tensor],
    relative_weights: Optional[Tensor] = None,
) -> Tensor:
    """Weighted mean of a per-particle functional.

    mean = sum(w_i * f(x_i))

    Args:
        ensemble: Ensemble to evaluate ``f`` on
        f: Maps the ensemble to per-particle values [N] or [N, ...]
        relative_weights: Weights to use; defaults to the ensemble's own,
            then to uniform weights

    Returns:
        Expectation estimate [...] (scalar tensor for [N] values)
    """
    values = torch.as_tensor(f(ensemble))
    if values.dim() == 0 or values.shape[0] != ensemble.n_particles:
        raise InconsistentRepresentation(
            f"Expectation functional must return one value per particle "
            f"({ensemble.n_particles}), got shape {tuple(values.shape)}"
        )
    if not values.is_floating_point():
        values = values.to(torch.get_default_dtype())

    weights = relative_weights if relative_weights is not None else ensemble.relative_weights
    if weights is None:
        weights = torch.full((ensemble.n_particles,), 1.0 / ensemble.n_particles)
    weights = weights.to(dtype=values.dtype, device=values.device)

    # Expand weights for broadcasting
    while weights.dim() < values.dim():
        weights = weights.unsqueeze(-1)

    return (weights * values).sum(dim=0)
