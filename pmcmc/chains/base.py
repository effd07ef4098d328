"""Abstract base class for particle MCMC chains.

A chain repeatedly runs sweeps, keeps or rejects each one, and stores one
sample per iteration. Subclasses only decide what each iteration proposes:

- PIMH: an unconditional sweep, Metropolis-Hastings tested on log Z
- PG: a conditional sweep on the current retained trajectory, always kept
- APG: PG and PIMH iterations alternating

The chain owns the retained trajectory and the current log Z between
iterations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Union
import math

import torch
from torch import Tensor
from tqdm import tqdm

from ..ensemble import ParticleEnsemble, RetainedTrajectory
from ..errors import ChainAborted
from ..model import ModelLike, SequentialModel, as_model
from ..sample import Sample
from ..sweep import SweepEngine, SweepResult
from ..utils.cancellation import CancellationToken
from ..utils.memory import MemoryGuard
from ..utils.resampling import ResampleMethod


@dataclass
class ChainResult:
    """Samples and diagnostics of a chain.

    Attributes:
        samples: One sample per iteration; a rejected iteration repeats the
            previous sample
        log_zs: Log marginal likelihood of each iteration's sample [n_iter]
        accepted: Whether each iteration's proposal was kept [n_iter]
        expectations: Expectation estimate per iteration (None entries when
            no functional was supplied)
        retained: Retained trajectory after the last completed iteration
        compressed: Whether samples are stored compressed
    """
    samples: List[Sample] = field(default_factory=list)
    log_zs: Tensor = field(default_factory=lambda: torch.zeros(0, dtype=torch.float64))
    accepted: Tensor = field(default_factory=lambda: torch.zeros(0, dtype=torch.bool))
    expectations: List[Optional[Tensor]] = field(default_factory=list)
    retained: Optional[RetainedTrajectory] = None
    compressed: bool = False

    @property
    def n_iter(self) -> int:
        return len(self.samples)

    @property
    def acceptance_rate(self) -> float:
        if self.accepted.numel() == 0:
            return float("nan")
        return float(self.accepted.double().mean())

    def stacked_expectations(self) -> Tensor:
        """Expectations as one [n_iter, ...] tensor."""
        if any(mu is None for mu in self.expectations):
            raise ValueError("Chain was run without an expectation functional")
        return torch.stack(self.expectations)


def metropolis_accept(
    log_z_proposed: float,
    log_z_current: float,
    generator: Optional[torch.Generator] = None,
) -> bool:
    """Accept with probability min(1, exp(proposed - current)).

    A uniform is drawn on every call so randomness consumption does not
    depend on the outcome.
    """
    u = float(torch.rand(1, generator=generator, dtype=torch.float64))
    log_ratio = log_z_proposed - log_z_current
    if log_ratio >= 0:
        return True
    return u < math.exp(log_ratio)


class ParticleChain(ABC):
    """Particle MCMC chain driven by a SweepEngine.

    Subclasses must implement:
    - _propose: Run the sweep of one iteration and say whether it needs a
      Metropolis-Hastings test
    """

    name = "chain"

    def __init__(
        self,
        model: ModelLike,
        n_particles: int,
        resample_method: Union[str, ResampleMethod] = ResampleMethod.MULTINOMIAL,
        compress: bool = False,
        rao_blackwellize: bool = True,
        expectation: Optional[Callable[[ParticleEnsemble], Tensor]] = None,
        memory_guard: Optional[MemoryGuard] = None,
        generator: Optional[torch.Generator] = None,
        cancel: Optional[CancellationToken] = None,
        progress: bool = False,
    ):
        """Initialize the chain.

        Args:
            model: SequentialModel, or a (sampling_functions,
                weighting_functions) pair
            n_particles: Particles per sweep N
            resample_method: Resampling scheme used in every sweep
            compress: Store compressed ensembles from the start
            rao_blackwellize: Store full weighted ensembles; if False only
                the retained trajectory of each iteration
            expectation: Optional functional evaluated on every sample
            memory_guard: Heuristic switching to compressed storage after
                the first iteration (default MemoryGuard())
            generator: Random generator for resampling, retained draws and
                acceptance tests
            cancel: Token checked before every iteration and every step
            progress: Show a tqdm progress bar
        """
        self.engine = SweepEngine(
            as_model(model),
            n_particles,
            resample_method=resample_method,
            compress=compress and rao_blackwellize,
            rao_blackwellize=rao_blackwellize,
            expectation=expectation,
        )
        self.memory_guard = memory_guard if memory_guard is not None else MemoryGuard()
        self.generator = generator
        self.cancel = cancel
        self.progress = progress

    @property
    def model(self) -> SequentialModel:
        return self.engine.model

    @abstractmethod
    def _propose(
        self,
        iteration: int,
        retained: Optional[RetainedTrajectory],
    ) -> Tuple[SweepResult, bool]:
        """Run the sweep of ``iteration`` (0-based).

        Returns:
            result: The sweep's output
            needs_test: True if the result must pass a Metropolis-Hastings
                test against the previous log Z
        """
        pass

    def _sweep(self, retained: Optional[RetainedTrajectory] = None) -> SweepResult:
        return self.engine.sweep(retained=retained, generator=self.generator, cancel=self.cancel)

    def _check_memory(self, result: ChainResult, n_iter: int) -> None:
        """Switch to compressed storage if the first sample projects too large."""
        if self.engine.compress or not self.engine.rao_blackwellize:
            return
        if self.memory_guard.check(result.samples[0].nbytes(), n_iter):
            self.engine.compress = True
            result.samples[0] = result.samples[0].compressed(self.model.n_steps)
            result.compressed = True

    def run(
        self,
        n_iter: int,
        initial_retained: Optional[RetainedTrajectory] = None,
    ) -> ChainResult:
        """Run the chain for ``n_iter`` iterations.

        Args:
            n_iter: Number of iterations
            initial_retained: Retained trajectory to start from, if any

        Returns:
            ChainResult

        Raises:
            ChainAborted: an iteration failed or was cancelled; the samples
                of completed iterations are on the exception's ``result``
        """
        if n_iter < 1:
            raise ValueError(f"n_iter must be at least 1, got {n_iter}")

        result = ChainResult(
            log_zs=torch.full((n_iter,), float("nan"), dtype=torch.float64),
            accepted=torch.ones(n_iter, dtype=torch.bool),
            retained=initial_retained,
            compressed=self.engine.compress,
        )
        retained = initial_retained

        iterations = tqdm(range(n_iter), desc=self.name, disable=not self.progress)
        for iteration in iterations:
            try:
                if self.cancel is not None:
                    self.cancel.raise_if_cancelled(f"{self.name} iteration {iteration}")
                proposal, needs_test = self._propose(iteration, retained)
            except Exception as e:
                partial = ChainResult(
                    samples=result.samples,
                    log_zs=result.log_zs[:iteration],
                    accepted=result.accepted[:iteration],
                    expectations=result.expectations,
                    retained=retained,
                    compressed=result.compressed,
                )
                raise ChainAborted(
                    f"{self.name} aborted at iteration {iteration}: {e}", partial
                ) from e

            if iteration > 0 and needs_test:
                keep = metropolis_accept(
                    proposal.log_z, float(result.log_zs[iteration - 1]), self.generator
                )
            else:
                keep = True

            if keep:
                result.samples.append(proposal.sample)
                result.log_zs[iteration] = proposal.log_z
                result.expectations.append(proposal.expectation)
                retained = proposal.retained
            else:
                result.samples.append(result.samples[-1])
                result.log_zs[iteration] = result.log_zs[iteration - 1]
                result.expectations.append(result.expectations[-1])
                result.accepted[iteration] = False
            result.retained = retained

            if iteration == 0:
                self._check_memory(result, n_iter)
            if self.progress:
                iterations.set_postfix(
                    log_z=f"{float(result.log_zs[iteration]):.3f}",
                    accept=f"{float(result.accepted[:iteration + 1].double().mean()):.2f}",
                )

        return result

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.engine!r})"
