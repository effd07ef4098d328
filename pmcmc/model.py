"""Sequential models: ordered sampling and weighting functions.

A model is a list of T steps. Step t extends every particle
(``sample``) and scores it (``log_weight``). Both receive the number of
particles they are called on explicitly, since a conditional sweep calls
them on N-1 free particles and on the single reconstructed retained
particle.

Sampling functions may overwrite variables but should only append to a
variable's value across steps: the retained trajectory's earlier states
are recovered by truncating its final values.
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Sequence, Tuple, Union

from torch import Tensor

from .ensemble import ParticleEnsemble
from .errors import InconsistentRepresentation
from .utils.weights import check_log_weights


SamplingFunction = Callable[[ParticleEnsemble, int], ParticleEnsemble]
WeightingFunction = Callable[[ParticleEnsemble, int], Tensor]


class ModelStep(ABC):
    """Abstract base class for one step of a sequential model.

    All implementations must provide:
    - sample: Extend every particle with this step's variables
    - log_weight: Log importance weight of every particle after this step

    Example:
        >>> class RandomWalk(ModelStep):
        ...     def sample(self, ensemble, particle_count):
        ...         return ensemble.extend("x", torch.randn(particle_count, 1))
        ...     def log_weight(self, ensemble, particle_count):
        ...         return -0.5 * ensemble["x"][:, -1] ** 2
        >>> model = SequentialModel.from_steps([RandomWalk() for _ in range(10)])
    """

    @abstractmethod
    def sample(self, ensemble: ParticleEnsemble, particle_count: int) -> ParticleEnsemble:
        """Extend every particle of ``ensemble``.

        Args:
            ensemble: Particles after the previous step
            particle_count: Number of particles in ``ensemble``

        Returns:
            Ensemble with the same number of particles
        """
        pass

    @abstractmethod
    def log_weight(self, ensemble: ParticleEnsemble, particle_count: int) -> Tensor:
        """Score every particle of ``ensemble``.

        Args:
            ensemble: Particles after this step's sampling
            particle_count: Number of particles in ``ensemble``

        Returns:
            log_weights: [particle_count], -inf for zero probability
        """
        pass


class SequentialModel:
    """Ordered sampling and weighting functions defining the target.

    Attributes:
        sampling_functions: One ``(ensemble, particle_count) -> ensemble`` per step
        weighting_functions: One ``(ensemble, particle_count) -> log_weights`` per step
    """

    def __init__(
        self,
        sampling_functions: Sequence[SamplingFunction],
        weighting_functions: Sequence[WeightingFunction],
    ):
        if len(sampling_functions) != len(weighting_functions):
            raise ValueError(
                f"Got {len(sampling_functions)} sampling functions and "
                f"{len(weighting_functions)} weighting functions"
            )
        if len(sampling_functions) == 0:
            raise ValueError("A sequential model needs at least one step")
        self.sampling_functions: List[SamplingFunction] = list(sampling_functions)
        self.weighting_functions: List[WeightingFunction] = list(weighting_functions)

    @classmethod
    def from_steps(cls, steps: Sequence[ModelStep]) -> "SequentialModel":
        return cls([s.sample for s in steps], [s.log_weight for s in steps])

    @property
    def n_steps(self) -> int:
        return len(self.sampling_functions)

    def __len__(self) -> int:
        return self.n_steps

    def sample(self, step: int, ensemble: ParticleEnsemble, particle_count: int) -> ParticleEnsemble:
        """Run step ``step``'s sampling function and check the row count."""
        extended = self.sampling_functions[step](ensemble, particle_count)
        if not isinstance(extended, ParticleEnsemble):
            raise InconsistentRepresentation(
                f"Sampling function {step} returned {type(extended).__name__}, "
                f"expected ParticleEnsemble"
            )
        if extended.n_particles != particle_count:
            raise InconsistentRepresentation(
                f"Sampling function {step} changed the particle count from "
                f"{particle_count} to {extended.n_particles}"
            )
        return extended

    def log_weight(self, step: int, ensemble: ParticleEnsemble, particle_count: int) -> Tensor:
        """Run step ``step``'s weighting function and validate its output."""
        log_weights = self.weighting_functions[step](ensemble, particle_count)
        return check_log_weights(log_weights, particle_count, name=f"log weights of step {step}")

    def __repr__(self) -> str:
        return f"SequentialModel(n_steps={self.n_steps})"


ModelLike = Union[
    SequentialModel,
    Tuple[Sequence[SamplingFunction], Sequence[WeightingFunction]],
]


def as_model(model: ModelLike) -> SequentialModel:
    """Accept a SequentialModel or a (sampling_functions, weighting_functions) pair.

    Example:
        >>> result = pimh((sampling_functions, weighting_functions), 100, 500)
    """
    if isinstance(model, SequentialModel):
        return model
    if isinstance(model, (tuple, list)) and len(model) == 2:
        return SequentialModel(model[0], model[1])
    raise InconsistentRepresentation(
        f"Expected a SequentialModel or a (sampling_functions, weighting_functions) "
        f"pair, got {type(model).__name__}"
    )
