"""Composition of two particle ensembles under an explicit row assignment.

The rows of ``ensemble_a`` followed by the rows of ``ensemble_b`` (after
optional reordering / replication) are scattered to ``output_indices`` of
the merged ensemble. Variables are reconciled pairwise:

- fixed / fixed, same width: concatenated as is
- fixed / fixed, different widths: narrower side padded with NaN
- fixed / ragged: fixed side converted to one vector per row
- present on one side only: ragged, the other side's rows marked absent
"""

from typing import Any, Dict, NamedTuple, Optional, Sequence, Tuple, Union

import torch
from torch import Tensor

from ..errors import IncompleteAssignment, InconsistentRepresentation
from .ensemble import (
    FixedVariable,
    ParticleEnsemble,
    RaggedVariable,
    Variable,
    as_index,
    as_variable,
    _float_dtype,
)


IndexLike = Union[Tensor, Sequence[int]]


class Composition(NamedTuple):
    """Result of compose_ensembles."""
    ensemble: ParticleEnsemble
    other: Optional[Union[Tensor, list]]


def reconcile_variables(
    a: Optional[Variable],
    n_a: int,
    b: Optional[Variable],
    n_b: int,
    missing: str = "absent",
) -> Tuple[Variable, Variable]:
    """Bring two variables to a common representation.

    Args:
        a, b: Variables to reconcile; ``None`` when missing on that side
        n_a, n_b: Row counts of each side
        missing: How a missing side is filled: "absent" (ragged ``None``
            rows) or "nan" (NaN rows when the present side is fixed)

    Returns:
        (a, b) with identical kind, and identical width and dtype if fixed

    Raises:
        InconsistentRepresentation: unknown variable kinds or device mismatch
    """
    for variable in (a, b):
        if variable is not None and not isinstance(variable, (FixedVariable, RaggedVariable)):
            raise InconsistentRepresentation(
                f"Unrecognized variable representation {type(variable).__name__}"
            )
    if a is None and b is None:
        raise InconsistentRepresentation("Cannot reconcile two missing variables")

    if a is None or b is None:
        present, n_missing = (b, n_a) if a is None else (a, n_b)
        if n_missing == 0:
            filler = present.take(torch.zeros(0, dtype=torch.long))
        elif missing == "nan" and isinstance(present, FixedVariable):
            filler = FixedVariable(torch.full(
                (n_missing, present.width),
                float("nan"),
                dtype=_float_dtype(present.dtype),
                device=present.device,
            ))
            present = present.pad_to(present.width, filler.dtype)
        else:
            filler = RaggedVariable.absent(n_missing)
            present = present.to_ragged()
        return (filler, present) if a is None else (present, filler)

    # An empty side takes the other side's representation
    empty = torch.zeros(0, dtype=torch.long)
    if a.n_rows == 0 and b.n_rows > 0:
        return b.take(empty), b
    if b.n_rows == 0 and a.n_rows > 0:
        return a, a.take(empty)

    if isinstance(a, FixedVariable) and isinstance(b, FixedVariable):
        if a.device != b.device:
            raise InconsistentRepresentation(
                f"Variable stored on {a.device} and {b.device}"
            )
        if a.width == b.width and a.dtype == b.dtype:
            return a, b
        width = max(a.width, b.width)
        if a.width == b.width:
            dtype = torch.promote_types(a.dtype, b.dtype)
        else:
            dtype = _float_dtype(a.dtype, b.dtype)
        return a.pad_to(width, dtype), b.pad_to(width, dtype)

    return a.to_ragged(), b.to_ragged()


def concat_variables(a: Variable, b: Variable) -> Variable:
    """Stack the rows of two reconciled variables."""
    if isinstance(a, FixedVariable) and isinstance(b, FixedVariable):
        return FixedVariable(torch.cat([a.values, b.values], dim=0))
    if isinstance(a, RaggedVariable) and isinstance(b, RaggedVariable):
        return RaggedVariable(a.values + b.values)
    raise InconsistentRepresentation(
        f"Cannot concatenate {a.kind.value} and {b.kind.value} variables"
    )


def scatter_variable(
    merged: Variable,
    output_indices: Tensor,
    n_out: int,
    dest: Optional[Variable] = None,
    missing: str = "absent",
) -> Variable:
    """Write the rows of ``merged`` to ``output_indices`` of an n_out-row variable.

    Rows not covered by ``output_indices`` come from ``dest``, or are filled
    according to ``missing`` when ``dest`` is None.
    """
    if dest is None and output_indices.numel() == n_out:
        # Full permutation: the scatter is a gather by the inverse permutation
        inverse = torch.empty_like(output_indices)
        inverse[output_indices] = torch.arange(n_out, dtype=torch.long)
        return merged.take(inverse)

    dest, merged = reconcile_variables(dest, n_out, merged, merged.n_rows, missing)
    if isinstance(dest, FixedVariable):
        values = dest.values.clone()
        values[output_indices.to(values.device)] = merged.values
        return FixedVariable(values)
    rows = list(dest.values)
    for source, target in enumerate(output_indices.tolist()):
        rows[target] = merged.values[source]
    return RaggedVariable(rows)


def _validate_assignment(
    output_indices: Tensor,
    n_out: int,
    rows_a: int,
    rows_b: int,
    count_a: int,
    count_b: int,
) -> None:
    if rows_a != count_a or rows_b != count_b:
        raise IncompleteAssignment(
            f"Inputs provide {rows_a} + {rows_b} rows, counts say {count_a} + {count_b}"
        )
    if output_indices.numel() != count_a + count_b:
        raise IncompleteAssignment(
            f"{output_indices.numel()} output indices for {count_a + count_b} source rows"
        )
    if output_indices.numel() == 0:
        return
    if output_indices.min() < 0 or output_indices.max() >= n_out:
        raise IncompleteAssignment(
            f"Output indices must lie in [0, {n_out}), got "
            f"[{int(output_indices.min())}, {int(output_indices.max())}]"
        )
    if torch.unique(output_indices).numel() != output_indices.numel():
        raise IncompleteAssignment("Output indices assign some row more than once")


def compose_ensembles(
    base: Optional[ParticleEnsemble],
    ensemble_a: ParticleEnsemble,
    ensemble_b: ParticleEnsemble,
    output_indices: IndexLike,
    count_a: int,
    count_b: int,
    reorder_a: Optional[IndexLike] = None,
    reorder_b: Optional[IndexLike] = None,
    other_a: Optional[Any] = None,
    other_b: Optional[Any] = None,
) -> Composition:
    """Merge two ensembles into one under an explicit row assignment.

    Args:
        base: Ensemble whose rows and variables are kept where not
            overwritten. When None, the output has count_a + count_b rows
            and every one of them must be assigned.
        ensemble_a, ensemble_b: Source ensembles
        output_indices: Destination row of each of the count_a + count_b
            source rows (A's rows first)
        count_a, count_b: Number of rows contributed by A and B
        reorder_a, reorder_b: Optional row gathers applied to A / B first;
            repeated indices replicate a row
        other_a, other_b: Optional auxiliary per-row arrays merged under the
            same assignment (missing fixed-width side filled with NaN);
            1-D arrays come back 1-D

    Returns:
        Composition(ensemble, other)

    Raises:
        IncompleteAssignment: counts or indices do not match
        InconsistentRepresentation: variable representations cannot be merged

    Example:
        >>> # Replicate a single retained row into 2 slots next to 3 free rows
        >>> merged = compose_ensembles(
        ...     None, free, retained, range(5), 3, 2,
        ...     reorder_a=[0, 2, 1], reorder_b=[0, 0],
        ... ).ensemble
    """
    index_a = as_index(reorder_a) if reorder_a is not None else None
    index_b = as_index(reorder_b) if reorder_b is not None else None
    rows_a = index_a.numel() if index_a is not None else ensemble_a.n_particles
    rows_b = index_b.numel() if index_b is not None else ensemble_b.n_particles
    output_indices = as_index(output_indices)

    n_out = base.n_particles if base is not None else count_a + count_b
    _validate_assignment(output_indices, n_out, rows_a, rows_b, count_a, count_b)

    if base is not None:
        constants: Dict[str, Any] = dict(base.constants)
    else:
        constants = {**ensemble_b.constants, **ensemble_a.constants}
    merged = ParticleEnsemble(n_out, constants=constants)
    if base is not None:
        merged.variables = dict(base.variables)

    names = list(dict.fromkeys(list(ensemble_a.variables) + list(ensemble_b.variables)))
    for name in names:
        var_a = ensemble_a.variables.get(name)
        var_b = ensemble_b.variables.get(name)
        if var_a is not None and index_a is not None:
            var_a = var_a.take(index_a)
        if var_b is not None and index_b is not None:
            var_b = var_b.take(index_b)

        var_a, var_b = reconcile_variables(var_a, rows_a, var_b, rows_b)
        stacked = concat_variables(var_a, var_b)
        merged.variables[name] = scatter_variable(
            stacked, output_indices, n_out, dest=merged.variables.get(name)
        )

    other = None
    if other_a is not None or other_b is not None:
        flat = all(o is None or (isinstance(o, Tensor) and o.dim() == 1) for o in (other_a, other_b))
        aux_a = as_variable(other_a, name="other_a") if other_a is not None else None
        aux_b = as_variable(other_b, name="other_b") if other_b is not None else None
        if aux_a is not None and index_a is not None:
            aux_a = aux_a.take(index_a)
        if aux_b is not None and index_b is not None:
            aux_b = aux_b.take(index_b)
        aux_a, aux_b = reconcile_variables(aux_a, rows_a, aux_b, rows_b, missing="nan")
        if aux_a.n_rows != rows_a or aux_b.n_rows != rows_b:
            raise IncompleteAssignment(
                "Auxiliary arrays must have one row per source row"
            )
        other = scatter_variable(
            concat_variables(aux_a, aux_b), output_indices, n_out, missing="nan"
        ).values
        if flat and isinstance(other, Tensor) and other.dim() == 2 and other.shape[1] == 1:
            other = other.reshape(-1)

    return Composition(merged, other)
