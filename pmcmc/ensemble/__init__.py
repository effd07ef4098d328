"""Particle ensembles, retained trajectories and ensemble composition."""

from .ensemble import (
    ABSENT_WIDTH,
    VariableKind,
    FixedVariable,
    RaggedVariable,
    Variable,
    ParticleEnsemble,
    RetainedTrajectory,
    as_index,
    as_variable,
)
from .compose import (
    Composition,
    compose_ensembles,
    reconcile_variables,
    concat_variables,
    scatter_variable,
)

__all__ = [
    # Ensemble
    "ABSENT_WIDTH",
    "VariableKind",
    "FixedVariable",
    "RaggedVariable",
    "Variable",
    "ParticleEnsemble",
    "RetainedTrajectory",
    "as_index",
    "as_variable",
    # Composition
    "Composition",
    "compose_ensembles",
    "reconcile_variables",
    "concat_variables",
    "scatter_variable",
]
