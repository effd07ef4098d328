"""Per-step lineage bookkeeping of a sweep.

Every step records the variable names present and the width of each
variable for every particle of that step (an int when shared by all
particles), plus the ancestor of every particle of the next step. A row of
the final ensemble is traced back through the ancestors to recover its own
widths at each step, which is all a retained trajectory needs to rebuild its
earlier states from its final values.

In a conditional sweep the rows of a step are the retained particle
(row 0) followed by the N-1 free particles.
"""

from typing import Dict, List, Tuple, Union

import torch
from torch import Tensor


Widths = Dict[str, Union[int, Tensor]]


class LineageRecorder:
    """Records names, widths and ancestry step by step."""

    def __init__(self):
        self.names: List[Tuple[str, ...]] = []
        self.widths: List[Widths] = []
        self.ancestors: List[Tensor] = []

    @property
    def n_steps(self) -> int:
        return len(self.names)

    def record_step(self, names: Tuple[str, ...], widths: Widths) -> None:
        self.names.append(tuple(names))
        self.widths.append(widths)

    def record_ancestors(self, ancestors: Tensor) -> None:
        """Ancestor row (at the last recorded step) of every row of the next step."""
        self.ancestors.append(ancestors.detach().cpu().long())

    def ancestry(self, row: int) -> List[int]:
        """Row index of ``row``'s ancestor at every step, first step first."""
        rows = [row]
        for ancestors in reversed(self.ancestors[:self.n_steps - 1]):
            rows.append(int(ancestors[rows[-1]]))
        return rows[::-1]

    def trace(self, row: int) -> Tuple[List[Tuple[str, ...]], List[Dict[str, int]]]:
        """Lineage and per-step widths of one final row.

        Returns:
            lineage: Variable names present after each step
            step_widths: Width of each variable for this row after each step
        """
        step_widths = []
        for step, ancestor in enumerate(self.ancestry(row)):
            step_widths.append({
                name: width if isinstance(width, int) else int(width[ancestor])
                for name, width in self.widths[step].items()
            })
        return list(self.names), step_widths


def merge_widths(first: Union[int, Tensor], rest: Union[int, Tensor], n_rest: int) -> Union[int, Tensor]:
    """Widths of one leading row followed by n_rest rows.

    Stays an int when every row shares the same width.
    """
    if isinstance(first, int) and isinstance(rest, int) and (first == rest or n_rest == 0):
        return first
    if isinstance(rest, int):
        rest = torch.full((n_rest,), rest, dtype=torch.long)
    if isinstance(first, Tensor):
        first = int(first.reshape(-1)[0])
    return torch.cat([torch.tensor([first], dtype=torch.long), rest.long()])
