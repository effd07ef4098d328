"""Exception and warning types raised by particle MCMC inference.

Representation and assignment problems abort the current sweep; weight
problems that make normalization impossible are raised instead of producing
NaN weights. Memory pressure is a soft signal reported through ``warnings``.
"""

from typing import Any, Optional


class PMCMCError(Exception):
    """Base class for all particle MCMC errors."""


class InconsistentRepresentation(PMCMCError, TypeError):
    """Two representations of the same variable cannot be reconciled.

    Usually points at a model definition bug: a sampling function that
    stores an unsupported value, changes the particle count, or places
    variables on different devices.
    """


class IncompleteAssignment(PMCMCError, ValueError):
    """An output row assignment does not cover every source row exactly once."""


class InvalidWeights(PMCMCError, ValueError):
    """Log weights cannot be normalized (all -inf, NaN or +inf)."""


class SweepCancelled(PMCMCError):
    """A sweep or chain was stopped through its cancellation token."""


class ChainAborted(PMCMCError):
    """A chain iteration failed.

    The samples collected before the failure are kept on ``result`` and the
    original exception is available as ``__cause__``.
    """

    def __init__(self, message: str, result: Optional[Any] = None):
        super().__init__(message)
        self.result = result


class MemoryPressureWarning(ResourceWarning):
    """Projected chain storage threatens to exhaust memory; compression enabled."""
