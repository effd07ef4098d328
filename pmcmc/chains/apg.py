"""Alternate move particle Gibbs (APG).

Interleaves Particle Gibbs and PIMH transitions:
- Odd iterations (1-based): conditional SMC on the current retained
  trajectory, always kept
- Even iterations: an independent SMC sweep, Metropolis-Hastings tested
  against the previous iteration's log Z; the retained trajectory only
  changes on acceptance

The PIMH moves let the chain jump away from a retained trajectory that
conditional sweeps struggle to leave.
"""

from typing import Optional, Tuple

from ..ensemble import RetainedTrajectory
from ..model import ModelLike
from ..sweep import SweepResult
from .base import ChainResult, ParticleChain


class APGChain(ParticleChain):
    """Alternating PG / PIMH chain."""

    name = "apg"

    def _propose(
        self,
        iteration: int,
        retained: Optional[RetainedTrajectory],
    ) -> Tuple[SweepResult, bool]:
        if iteration % 2 == 1:
            return self._sweep(retained=None), True
        return self._sweep(retained=retained), False


def apg(
    model: ModelLike,
    n_particles: int,
    n_iter: int,
    initial_retained: Optional[RetainedTrajectory] = None,
    **kwargs,
) -> ChainResult:
    """Run APG for n_iter iterations.

    Args:
        model: SequentialModel, or a (sampling_functions,
            weighting_functions) pair as taken by pg_sweep
        n_particles: Particles per sweep N
        n_iter: Number of iterations
        initial_retained: Retained trajectory for the first PG iteration;
            without it the first iteration is an unconditional sweep
        **kwargs: Passed to APGChain (expectation, compress,
            rao_blackwellize, resample_method, memory_guard, generator,
            cancel, progress)

    Returns:
        ChainResult with samples, log_zs, accepted flags and expectations
    """
    return APGChain(model, n_particles, **kwargs).run(n_iter, initial_retained)
