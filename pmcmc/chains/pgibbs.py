"""Particle Gibbs (PG).

Every iteration is a conditional SMC sweep on the previous iteration's
retained trajectory. CSMC leaves the target invariant, so every iteration
is kept. The first iteration runs unconditionally when no initial retained
trajectory is supplied.
"""

from typing import Optional, Tuple

from ..ensemble import RetainedTrajectory
from ..model import ModelLike
from ..sweep import SweepResult
from .base import ChainResult, ParticleChain


class ParticleGibbsChain(ParticleChain):
    """Iterated conditional SMC."""

    name = "pgibbs"

    def _propose(
        self,
        iteration: int,
        retained: Optional[RetainedTrajectory],
    ) -> Tuple[SweepResult, bool]:
        return self._sweep(retained=retained), False


def pgibbs(
    model: ModelLike,
    n_particles: int,
    n_iter: int,
    initial_retained: Optional[RetainedTrajectory] = None,
    **kwargs,
) -> ChainResult:
    """Run Particle Gibbs for n_iter iterations.

    Args:
        model: SequentialModel, or a (sampling_functions,
            weighting_functions) pair as taken by pg_sweep
        n_particles: Particles per sweep N
        n_iter: Number of iterations
        initial_retained: Retained trajectory for the first iteration
        **kwargs: Passed to ParticleGibbsChain

    Returns:
        ChainResult; every iteration is accepted
    """
    return ParticleGibbsChain(model, n_particles, **kwargs).run(n_iter, initial_retained)
