"""Configuration-driven entry point.

Runs one of the supported algorithms on a sequential model:
- smc: a single unconditional sweep, returned as a one-sample chain
- pgibbs: Particle Gibbs
- pimh: Particle independent Metropolis-Hastings
- apg: Alternate move Particle Gibbs
"""

from typing import Callable, Optional

import torch
from torch import Tensor

from .chains import APGChain, ChainResult, ParticleGibbsChain, PIMHChain
from .config import ChainConfig
from .ensemble import ParticleEnsemble, RetainedTrajectory
from .model import ModelLike, as_model
from .sweep import SweepEngine
from .utils.cancellation import CancellationToken


_CHAINS = {
    "pgibbs": ParticleGibbsChain,
    "pimh": PIMHChain,
    "apg": APGChain,
}


def infer(
    model: ModelLike,
    config: ChainConfig,
    expectation: Optional[Callable[[ParticleEnsemble], Tensor]] = None,
    initial_retained: Optional[RetainedTrajectory] = None,
    cancel: Optional[CancellationToken] = None,
) -> ChainResult:
    """Run the algorithm named by ``config.algorithm``.

    When ``config.seed`` is set it seeds both the global torch RNG, used
    by the model's sampling functions, and the generator driving
    resampling, retained draws and acceptance tests.

    Args:
        model: SequentialModel, or a (sampling_functions,
            weighting_functions) pair
        config: Run configuration
        expectation: Optional functional evaluated on every sample
        initial_retained: Starting retained trajectory (pgibbs, apg)
        cancel: Cooperative cancellation token

    Returns:
        ChainResult
    """
    model = as_model(model)
    generator = None
    if config.seed is not None:
        # Model sampling functions draw from the global RNG
        torch.manual_seed(config.seed)
        generator = torch.Generator().manual_seed(config.seed)

    sweep = config.sweep
    if config.algorithm == "smc":
        engine = SweepEngine(
            model,
            sweep.n_particles,
            resample_method=sweep.resample_method,
            compress=sweep.compress,
            rao_blackwellize=sweep.rao_blackwellize,
            expectation=expectation,
        )
        result = engine.sweep(generator=generator, cancel=cancel)
        return ChainResult(
            samples=[result.sample],
            log_zs=torch.tensor([result.log_z], dtype=torch.float64),
            accepted=torch.ones(1, dtype=torch.bool),
            expectations=[result.expectation],
            retained=result.retained,
            compressed=sweep.compress and sweep.rao_blackwellize,
        )

    chain = _CHAINS[config.algorithm](
        model,
        sweep.n_particles,
        resample_method=sweep.resample_method,
        compress=sweep.compress,
        rao_blackwellize=sweep.rao_blackwellize,
        expectation=expectation,
        memory_guard=config.memory.build(),
        generator=generator,
        cancel=cancel,
        progress=config.progress,
    )
    if config.algorithm == "pimh":
        return chain.run(config.n_iter)
    return chain.run(config.n_iter, initial_retained)
