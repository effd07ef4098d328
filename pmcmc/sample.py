"""Samples stored by Markov chains.

A chain stores one ``Sample`` per iteration. Which kind it stores is fixed
once per chain: the full weighted ensemble, its compressed form, or only
the retained trajectory (no Rao-Blackwellization).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Union

from torch import Tensor

from .compression import CompressedEnsemble, compress_ensemble
from .ensemble import ParticleEnsemble
from .utils.weights import function_expectation


class SampleKind(Enum):
    """Representation of a stored sample."""
    ENSEMBLE = "ensemble"
    COMPRESSED = "compressed"
    RETAINED = "retained"


@dataclass(frozen=True)
class Sample:
    """One chain sample: a weighted ensemble in one of three representations."""

    kind: SampleKind
    payload: Union[ParticleEnsemble, CompressedEnsemble]

    @property
    def ensemble(self) -> ParticleEnsemble:
        """Weighted ensemble view (distinct rows for compressed samples)."""
        if self.kind == SampleKind.COMPRESSED:
            return self.payload.ensemble
        return self.payload

    @property
    def relative_weights(self) -> Tensor:
        return self.ensemble.relative_weights

    def nbytes(self) -> int:
        return self.payload.nbytes()

    def compressed(self, step_count: int) -> "Sample":
        """Compressed copy of a full-ensemble sample; other kinds unchanged."""
        if self.kind != SampleKind.ENSEMBLE:
            return self
        return Sample(SampleKind.COMPRESSED, compress_ensemble(self.payload, step_count))

    def expectation(self, f: Callable[[ParticleEnsemble], Tensor]) -> Tensor:
        return function_expectation(self.ensemble, f)
