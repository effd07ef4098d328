"""Particle independent Metropolis-Hastings (PIMH).

Every iteration proposes an entire independent SMC sweep and accepts it
with probability min(1, Z_proposed / Z_current), using the sweeps' marginal
likelihood estimates. See Andrieu et al. (2010), Particle Markov chain
Monte Carlo methods.
"""

from typing import Optional, Tuple

from ..ensemble import RetainedTrajectory
from ..model import ModelLike
from ..sweep import SweepResult
from .base import ChainResult, ParticleChain


class PIMHChain(ParticleChain):
    """PIMH chain: independent SMC proposals, Metropolis-Hastings on log Z."""

    name = "pimh"

    def _propose(
        self,
        iteration: int,
        retained: Optional[RetainedTrajectory],
    ) -> Tuple[SweepResult, bool]:
        return self._sweep(retained=None), True


def pimh(
    model: ModelLike,
    n_particles: int,
    n_iter: int,
    **kwargs,
) -> ChainResult:
    """Run PIMH for n_iter iterations.

    Args:
        model: SequentialModel, or a (sampling_functions,
            weighting_functions) pair as taken by pg_sweep
        n_particles: Particles per sweep N
        n_iter: Number of iterations
        **kwargs: Passed to PIMHChain (compress, rao_blackwellize,
            resample_method, expectation, memory_guard, generator, cancel,
            progress)

    Returns:
        ChainResult with samples, log_zs and accepted flags
    """
    return PIMHChain(model, n_particles, **kwargs).run(n_iter)
