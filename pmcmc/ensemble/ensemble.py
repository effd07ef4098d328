"""Particle ensembles with named, possibly heterogeneous-width variables.

Each variable is stored as one of two representations:
- Fixed: a [N, W] tensor, the same width W for every particle
- Ragged: a list of N 1-D tensors of independent length, with ``None``
  marking a particle for which the variable is absent

Ragged storage is used once particles diverge in dimensionality, e.g. when
each particle carries a state history of its own length.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Sequence, Tuple, Union
import sys

import torch
from torch import Tensor

from ..errors import InconsistentRepresentation


# Width recorded for a particle whose ragged entry is absent
ABSENT_WIDTH = -1


class VariableKind(Enum):
    """Storage representation of an ensemble variable."""
    FIXED = "fixed"
    RAGGED = "ragged"


def as_index(indices: Union[Tensor, Sequence[int]], device: Optional[torch.device] = None) -> Tensor:
    """Convert row indices to a 1-D long tensor."""
    if isinstance(indices, Tensor):
        index = indices.reshape(-1).long()
    else:
        index = torch.as_tensor(list(indices), dtype=torch.long)
    if device is not None:
        index = index.to(device)
    return index


def _float_dtype(*dtypes: torch.dtype) -> torch.dtype:
    """Smallest common dtype that can hold NaN padding."""
    dtype = dtypes[0]
    for other in dtypes[1:]:
        dtype = torch.promote_types(dtype, other)
    if not (dtype.is_floating_point or dtype.is_complex):
        dtype = torch.get_default_dtype()
    return dtype


@dataclass
class FixedVariable:
    """Fixed-width variable: one [N, W] tensor."""

    values: Tensor
    kind: ClassVar[VariableKind] = VariableKind.FIXED

    @property
    def n_rows(self) -> int:
        return self.values.shape[0]

    @property
    def width(self) -> int:
        return self.values.shape[1]

    @property
    def dtype(self) -> torch.dtype:
        return self.values.dtype

    @property
    def device(self) -> torch.device:
        return self.values.device

    def take(self, indices: Tensor) -> "FixedVariable":
        return FixedVariable(self.values.index_select(0, indices.to(self.values.device)))

    def row_widths(self) -> int:
        return self.width

    def pad_to(self, width: int, dtype: Optional[torch.dtype] = None) -> "FixedVariable":
        """Pad columns with NaN up to ``width``, casting to ``dtype`` if given."""
        dtype = dtype or self.dtype
        if width == self.width and dtype == self.dtype:
            return self
        if width == self.width:
            return FixedVariable(self.values.to(dtype))
        padded = torch.full(
            (self.n_rows, width), float("nan"), dtype=dtype, device=self.device
        )
        padded[:, :self.width] = self.values
        return FixedVariable(padded)

    def truncate(self, widths: Union[int, Tensor]) -> "FixedVariable":
        if isinstance(widths, Tensor):
            if widths.numel() and not torch.all(widths == widths.reshape(-1)[0]):
                raise InconsistentRepresentation(
                    "Per-row widths cannot truncate a fixed-width variable"
                )
            widths = int(widths.reshape(-1)[0]) if widths.numel() else self.width
        return FixedVariable(self.values[:, :widths])

    def to_ragged(self) -> "RaggedVariable":
        return RaggedVariable(list(self.values.unbind(0)))

    def nbytes(self) -> int:
        return self.values.element_size() * self.values.numel()


@dataclass
class RaggedVariable:
    """Ragged variable: one 1-D tensor (or ``None`` when absent) per row."""

    values: List[Optional[Tensor]]
    kind: ClassVar[VariableKind] = VariableKind.RAGGED

    @classmethod
    def absent(cls, n_rows: int) -> "RaggedVariable":
        return cls([None] * n_rows)

    @property
    def n_rows(self) -> int:
        return len(self.values)

    def take(self, indices: Tensor) -> "RaggedVariable":
        return RaggedVariable([self.values[i] for i in indices.tolist()])

    def row_widths(self) -> Tensor:
        return torch.tensor(
            [ABSENT_WIDTH if v is None else v.numel() for v in self.values],
            dtype=torch.long,
        )

    def truncate(self, widths: Union[int, Tensor]) -> "RaggedVariable":
        if isinstance(widths, Tensor):
            widths = widths.reshape(-1).tolist()
        else:
            widths = [widths] * self.n_rows
        truncated = []
        for value, width in zip(self.values, widths):
            if value is None or width == ABSENT_WIDTH:
                truncated.append(None)
            else:
                truncated.append(value[:width])
        return RaggedVariable(truncated)

    def to_ragged(self) -> "RaggedVariable":
        return self

    def nbytes(self) -> int:
        total = 0
        for value in self.values:
            total += sys.getsizeof(value)
            if value is not None:
                total += value.element_size() * value.numel()
        return total


Variable = Union[FixedVariable, RaggedVariable]


def as_variable(value: Any, n_rows: Optional[int] = None, name: str = "variable") -> Variable:
    """Wrap a tensor or per-row sequence as an ensemble variable.

    Tensors become fixed-width variables ([N] is promoted to [N, 1] and
    trailing dimensions are flattened). Lists and tuples become ragged
    variables whose entries are flattened to 1-D, ``None`` entries stay absent.

    Raises:
        InconsistentRepresentation: unsupported value or wrong row count
    """
    if isinstance(value, (FixedVariable, RaggedVariable)):
        variable = value
    elif isinstance(value, Tensor):
        if value.dim() == 0:
            raise InconsistentRepresentation(
                f"{name}: scalar tensors belong in constants, not variables"
            )
        variable = FixedVariable(value.reshape(value.shape[0], -1))
    elif isinstance(value, (list, tuple)):
        entries = []
        for entry in value:
            if entry is None:
                entries.append(None)
                continue
            if isinstance(entry, (str, bytes)):
                raise InconsistentRepresentation(
                    f"{name}: ragged entries must be numeric, got {type(entry).__name__}"
                )
            try:
                entries.append(torch.as_tensor(entry).reshape(-1))
            except (TypeError, ValueError, RuntimeError) as e:
                raise InconsistentRepresentation(
                    f"{name}: cannot convert ragged entry to a tensor"
                ) from e
        variable = RaggedVariable(entries)
    else:
        raise InconsistentRepresentation(
            f"{name}: unsupported variable type {type(value).__name__}"
        )

    if n_rows is not None and variable.n_rows != n_rows:
        raise InconsistentRepresentation(
            f"{name} has {variable.n_rows} rows, ensemble has {n_rows}"
        )
    return variable


class ParticleEnsemble:
    """An ordered batch of N weighted partial trajectories.

    Attributes:
        variables: Mapping from variable name to a fixed or ragged variable
        constants: Values shared by every particle, never resampled
        relative_weights: Optional [N] non-negative weights, set by a sweep

    Example:
        >>> ensemble = ParticleEnsemble(4)
        >>> ensemble.set("x", torch.randn(4, 2))
        >>> ensemble.extend("path", [torch.randn(k) for k in (1, 2, 3, 4)])
        >>> ensemble.row_widths("path")
        tensor([1, 2, 3, 4])
    """

    def __init__(
        self,
        n_particles: int,
        variables: Optional[Dict[str, Any]] = None,
        constants: Optional[Dict[str, Any]] = None,
        relative_weights: Optional[Tensor] = None,
    ):
        if n_particles < 0:
            raise ValueError(f"n_particles must be non-negative, got {n_particles}")
        self._n_particles = n_particles
        self.variables: Dict[str, Variable] = {}
        self.constants: Dict[str, Any] = dict(constants or {})
        self.relative_weights = relative_weights
        for name, value in (variables or {}).items():
            self.set(name, value)

    @property
    def n_particles(self) -> int:
        return self._n_particles

    def __len__(self) -> int:
        return self._n_particles

    def __contains__(self, name: str) -> bool:
        return name in self.variables

    def __getitem__(self, name: str) -> Union[Tensor, List[Optional[Tensor]]]:
        return self.variables[name].values

    @property
    def variable_names(self) -> Tuple[str, ...]:
        return tuple(self.variables)

    def kind(self, name: str) -> VariableKind:
        return self.variables[name].kind

    def set(self, name: str, value: Any) -> "ParticleEnsemble":
        """Add or overwrite a variable for every particle."""
        self.variables[name] = as_variable(value, self._n_particles, name)
        return self

    def get(self, name: str, default: Any = None) -> Any:
        if name not in self.variables:
            return default
        return self.variables[name].values

    def extend(self, name: str, columns: Any) -> "ParticleEnsemble":
        """Append new entries to each particle's value of ``name``.

        A [N, k] tensor appended to a fixed variable stays fixed; anything
        else turns the variable ragged and appends per row.
        """
        if name not in self.variables:
            return self.set(name, columns)

        current = self.variables[name]
        addition = as_variable(columns, self._n_particles, name)
        if isinstance(current, FixedVariable) and isinstance(addition, FixedVariable):
            dtype = torch.promote_types(current.dtype, addition.dtype)
            self.variables[name] = FixedVariable(
                torch.cat([current.values.to(dtype), addition.values.to(dtype)], dim=1)
            )
            return self

        rows = []
        for old, new in zip(current.to_ragged().values, addition.to_ragged().values):
            if old is None:
                rows.append(new)
            elif new is None:
                rows.append(old)
            else:
                dtype = torch.promote_types(old.dtype, new.dtype)
                rows.append(torch.cat([old.to(dtype), new.to(dtype)]))
        self.variables[name] = RaggedVariable(rows)
        return self

    def row_widths(self, name: str) -> Union[int, Tensor]:
        """Width of ``name`` per particle: int if shared, [N] tensor if ragged."""
        return self.variables[name].row_widths()

    def take(self, indices: Union[Tensor, Sequence[int]]) -> "ParticleEnsemble":
        """Gather (and possibly replicate) rows; weights are dropped."""
        index = as_index(indices)
        taken = ParticleEnsemble(index.numel(), constants=self.constants)
        for name, variable in self.variables.items():
            taken.variables[name] = variable.take(index)
        return taken

    def select_row(self, index: int) -> "ParticleEnsemble":
        return self.take([index])

    def copy(self) -> "ParticleEnsemble":
        clone = ParticleEnsemble(
            self._n_particles,
            constants=self.constants,
            relative_weights=self.relative_weights,
        )
        clone.variables = dict(self.variables)
        return clone

    def nbytes(self) -> int:
        """Estimated memory footprint of the per-particle storage in bytes."""
        total = sum(variable.nbytes() for variable in self.variables.values())
        if self.relative_weights is not None:
            total += self.relative_weights.element_size() * self.relative_weights.numel()
        return total

    def __repr__(self) -> str:
        fields = ", ".join(
            f"{name}={variable.kind.value}" for name, variable in self.variables.items()
        )
        return f"ParticleEnsemble(n_particles={self._n_particles}, {fields})"


@dataclass
class RetainedTrajectory:
    """The single trajectory a conditional sweep is built around.

    Only the final value of each variable is stored, together with the
    variable names (``lineage``) and this trajectory's widths
    (``step_widths``) after every step. The state as of any earlier step is
    recovered by truncation, which is exact as long as sampling functions
    only append to a variable's value.

    Attributes:
        ensemble: Single-row ensemble holding the final values
        lineage: lineage[t] = variable names present after step t
        step_widths: step_widths[t][name] = width after step t
            (ABSENT_WIDTH when the variable was absent for this trajectory)
    """

    ensemble: ParticleEnsemble
    lineage: List[Tuple[str, ...]] = field(default_factory=list)
    step_widths: List[Dict[str, int]] = field(default_factory=list)

    def __post_init__(self):
        if self.ensemble.n_particles != 1:
            raise InconsistentRepresentation(
                f"Retained trajectory must have exactly one row, got {self.ensemble.n_particles}"
            )
        if len(self.lineage) != len(self.step_widths):
            raise InconsistentRepresentation(
                "lineage and step_widths must cover the same number of steps"
            )

    @property
    def n_steps(self) -> int:
        return len(self.lineage)

    @property
    def variables(self) -> Dict[str, Variable]:
        return self.ensemble.variables

    def state_at(self, step: int, constants: Optional[Dict[str, Any]] = None) -> ParticleEnsemble:
        """Reconstruct this trajectory as it was after ``step`` (0-based).

        Args:
            step: Step index into lineage / step_widths
            constants: Constants for the reconstructed state; defaults to
                the trajectory's own

        Returns:
            Single-row ensemble holding the truncated values
        """
        if not 0 <= step < self.n_steps:
            raise IndexError(f"step {step} outside retained lineage of {self.n_steps} steps")
        state = ParticleEnsemble(
            1, constants=self.ensemble.constants if constants is None else constants
        )
        widths = self.step_widths[step]
        for name in self.lineage[step]:
            if name not in self.ensemble.variables:
                raise InconsistentRepresentation(
                    f"Retained trajectory has no value for '{name}' recorded at step {step}"
                )
            width = widths[name]
            variable = self.ensemble.variables[name]
            if width == ABSENT_WIDTH:
                state.variables[name] = RaggedVariable.absent(1)
            else:
                state.variables[name] = variable.truncate(width)
        return state

    def as_sample(self) -> ParticleEnsemble:
        """The trajectory as a one-row ensemble with relative weight 1."""
        sample = self.ensemble.copy()
        sample.relative_weights = torch.ones(1)
        return sample
