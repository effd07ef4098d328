"""Particle MCMC chains: PIMH, Particle Gibbs and alternating PG/PIMH."""

from .base import (
    ChainResult,
    ParticleChain,
    metropolis_accept,
)
from .pimh import PIMHChain, pimh
from .pgibbs import ParticleGibbsChain, pgibbs
from .apg import APGChain, apg

__all__ = [
    # Base
    "ChainResult",
    "ParticleChain",
    "metropolis_accept",
    # PIMH
    "PIMHChain",
    "pimh",
    # Particle Gibbs
    "ParticleGibbsChain",
    "pgibbs",
    # APG
    "APGChain",
    "apg",
]
