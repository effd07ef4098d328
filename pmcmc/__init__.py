"""Particle Markov chain Monte Carlo (PMCMC) in PyTorch.

Sequential Monte Carlo and conditional SMC sweeps over models given as
ordered sampling and weighting functions, and the Markov chains built on
them:
- **SMC**: one unconditional sweep with a marginal likelihood estimate
- **Particle Gibbs (PG)**: iterated conditional SMC
- **PIMH**: independent SMC proposals accepted on the marginal likelihood
- **APG**: PG and PIMH transitions alternating

Example:
    >>> import torch
    >>> import pmcmc
    >>>
    >>> def sample(ensemble, particle_count):
    ...     return ensemble.extend("x", torch.randn(particle_count, 1))
    >>> def weight(ensemble, particle_count):
    ...     return -0.5 * (ensemble["x"][:, -1] - 1.0) ** 2
    >>>
    >>> model = pmcmc.SequentialModel([sample] * 20, [weight] * 20)
    >>> result = pmcmc.apg(model, n_particles=64, n_iter=100)
    >>> result.log_zs, result.acceptance_rate
"""

__version__ = "0.1.0"

from .errors import (
    PMCMCError,
    InconsistentRepresentation,
    IncompleteAssignment,
    InvalidWeights,
    SweepCancelled,
    ChainAborted,
    MemoryPressureWarning,
)
from .ensemble import (
    VariableKind,
    FixedVariable,
    RaggedVariable,
    ParticleEnsemble,
    RetainedTrajectory,
    compose_ensembles,
)
from .model import ModelStep, SequentialModel, as_model
from .compression import CompressedEnsemble, compress_ensemble
from .sample import Sample, SampleKind
from .utils import (
    Resampler,
    ResampleMethod,
    resample_step,
    MemoryGuard,
    CancellationToken,
    function_expectation,
)
from .sweep import SweepEngine, SweepResult, pg_sweep, smc_sweep
from .chains import (
    ChainResult,
    PIMHChain,
    ParticleGibbsChain,
    APGChain,
    pimh,
    pgibbs,
    apg,
)
from .config import ChainConfig, SweepConfig, MemoryGuardConfig, load_config, save_config
from .infer import infer

__all__ = [
    # Errors
    "PMCMCError",
    "InconsistentRepresentation",
    "IncompleteAssignment",
    "InvalidWeights",
    "SweepCancelled",
    "ChainAborted",
    "MemoryPressureWarning",
    # Ensembles
    "VariableKind",
    "FixedVariable",
    "RaggedVariable",
    "ParticleEnsemble",
    "RetainedTrajectory",
    "compose_ensembles",
    "CompressedEnsemble",
    "compress_ensemble",
    "Sample",
    "SampleKind",
    # Model
    "ModelStep",
    "SequentialModel",
    "as_model",
    # Utilities
    "Resampler",
    "ResampleMethod",
    "resample_step",
    "MemoryGuard",
    "CancellationToken",
    "function_expectation",
    # Sweeps
    "SweepEngine",
    "SweepResult",
    "pg_sweep",
    "smc_sweep",
    # Chains
    "ChainResult",
    "PIMHChain",
    "ParticleGibbsChain",
    "APGChain",
    "pimh",
    "pgibbs",
    "apg",
    # Configuration
    "ChainConfig",
    "SweepConfig",
    "MemoryGuardConfig",
    "load_config",
    "save_config",
    "infer",
]
