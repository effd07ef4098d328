"""Lossless compression of weighted ensembles.

After resampling many particles are exact copies of each other. Storing
each distinct particle once, with its relative weights summed, keeps every
weighted expectation unchanged while shrinking chains of full ensembles.
"""

from dataclasses import dataclass
from typing import Dict, List, Tuple

import numpy as np
import torch
from torch import Tensor

from .ensemble import FixedVariable, ParticleEnsemble


_ABSENT_KEY = b"\x00absent"


@dataclass
class CompressedEnsemble:
    """Distinct particles of an ensemble with aggregated weights.

    Attributes:
        ensemble: One row per distinct particle; relative_weights hold the
            summed weights of all copies
        multiplicity: Number of copies of each distinct particle [U]
        n_original: Row count before compression
        step_count: Number of model steps the ensemble was built from
    """

    ensemble: ParticleEnsemble
    multiplicity: Tensor
    n_original: int
    step_count: int

    @property
    def n_unique(self) -> int:
        return self.ensemble.n_particles

    @property
    def relative_weights(self) -> Tensor:
        return self.ensemble.relative_weights

    def nbytes(self) -> int:
        return self.ensemble.nbytes() + self.multiplicity.element_size() * self.multiplicity.numel()

    def expand(self) -> ParticleEnsemble:
        """Rebuild an n_original-row ensemble; copies share their row's weight."""
        index = torch.repeat_interleave(torch.arange(self.n_unique), self.multiplicity)
        expanded = self.ensemble.take(index)
        weights = self.ensemble.relative_weights / self.multiplicity.to(self.ensemble.relative_weights.dtype)
        expanded.relative_weights = weights.index_select(0, index)
        return expanded


def _row_keys(ensemble: ParticleEnsemble) -> List[Tuple[bytes, ...]]:
    """Byte-level identity key of every particle, NaN padding included."""
    columns = []
    for name in sorted(ensemble.variables):
        variable = ensemble.variables[name]
        if isinstance(variable, FixedVariable):
            array = variable.values.detach().cpu().numpy()
            columns.append([array[i].tobytes() for i in range(array.shape[0])])
        else:
            keys = []
            for value in variable.values:
                if value is None:
                    keys.append(_ABSENT_KEY)
                else:
                    array = value.detach().cpu().numpy()
                    keys.append(str(array.dtype).encode() + np.int64(array.size).tobytes() + array.tobytes())
            columns.append(keys)
    return list(zip(*columns)) if columns else [()] * ensemble.n_particles


def compress_ensemble(ensemble: ParticleEnsemble, step_count: int) -> CompressedEnsemble:
    """Merge identical particles, summing their relative weights.

    Args:
        ensemble: Weighted ensemble (uniform weights assumed if unset)
        step_count: Number of model steps, kept as metadata

    Returns:
        CompressedEnsemble with one row per distinct particle
    """
    n = ensemble.n_particles
    weights = ensemble.relative_weights
    if weights is None:
        weights = torch.full((n,), 1.0 / max(n, 1))

    groups: Dict[Tuple[bytes, ...], int] = {}
    first_rows: List[int] = []
    inverse: List[int] = []
    for row, key in enumerate(_row_keys(ensemble)):
        group = groups.setdefault(key, len(groups))
        if group == len(first_rows):
            first_rows.append(row)
        inverse.append(group)

    inverse_index = torch.as_tensor(inverse, dtype=torch.long)
    n_unique = len(first_rows)
    aggregated = torch.zeros(n_unique, dtype=weights.dtype, device=weights.device)
    aggregated.index_add_(0, inverse_index.to(weights.device), weights)
    multiplicity = torch.bincount(inverse_index, minlength=n_unique)

    unique = ensemble.take(first_rows)
    unique.relative_weights = aggregated
    return CompressedEnsemble(unique, multiplicity, n, step_count)
