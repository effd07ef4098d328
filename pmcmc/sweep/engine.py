"""Sequential Monte Carlo sweeps for Particle Gibbs, PIMH and APG.

Without a retained trajectory a sweep is plain SMC over N particles. With
one, it is a conditional SMC (CSMC) sweep: N-1 free particles are
simulated while the retained trajectory is forced to survive every
resampling step, which makes the sweep a valid Particle Gibbs transition.

The retained trajectory's weight at step t is recomputed from its state as
of step t, rebuilt by truncating its final values to the widths recorded
for it at that step. Its intermediate states are never stored.

Both modes end by normalizing the final-step weights, accumulating the log
marginal likelihood estimate

    log Z = sum_t log(mean(exp(lw_t)))

and drawing a new retained trajectory in proportion to the final weights.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple, Union

import torch
from torch import Tensor

from ..compression import CompressedEnsemble, compress_ensemble
from ..ensemble import (
    ABSENT_WIDTH,
    ParticleEnsemble,
    RetainedTrajectory,
    compose_ensembles,
)
from ..errors import InconsistentRepresentation
from ..model import SamplingFunction, SequentialModel, WeightingFunction
from ..sample import Sample, SampleKind
from ..utils.cancellation import CancellationToken
from ..utils.resampling import ResampleMethod, Resampler
from ..utils.weights import compute_ess, normalize_weights
from .lineage import LineageRecorder, Widths, merge_widths


Compressor = Callable[[ParticleEnsemble, int], CompressedEnsemble]


@dataclass
class SweepResult:
    """Output of one sweep.

    Attributes:
        sample: Weighted ensemble, compressed ensemble, or the retained
            trajectory alone, depending on the engine's output shaping
        log_z: Log marginal likelihood estimate
        retained: Newly drawn retained trajectory
        retained_index: Row of the final ensemble it was drawn from
        expectation: Expectation functional evaluated on ``sample``, if any
        ess_history: Effective sample size of the weights at every step
        ancestry: Ancestor rows between consecutive steps
    """
    sample: Sample
    log_z: float
    retained: RetainedTrajectory
    retained_index: int = 0
    expectation: Optional[Tensor] = None
    ess_history: List[float] = field(default_factory=list)
    ancestry: List[Tensor] = field(default_factory=list)

    @property
    def ensemble(self) -> ParticleEnsemble:
        return self.sample.ensemble


class SweepEngine:
    """Runs SMC and conditional SMC sweeps over a sequential model.

    Example:
        >>> engine = SweepEngine(model, n_particles=100, resample_method="systematic")
        >>> result = engine.sweep()                            # SMC
        >>> result = engine.sweep(retained=result.retained)    # CSMC
        >>> result.log_z, result.ensemble.relative_weights
    """

    def __init__(
        self,
        model: SequentialModel,
        n_particles: int,
        resample_method: Union[str, ResampleMethod] = ResampleMethod.MULTINOMIAL,
        compress: bool = False,
        rao_blackwellize: bool = True,
        expectation: Optional[Callable[[ParticleEnsemble], Tensor]] = None,
        compressor: Compressor = compress_ensemble,
    ):
        """Initialize the sweep engine.

        Args:
            model: Ordered sampling and weighting functions
            n_particles: Number of particles N, including the retained one
            resample_method: Resampling scheme used between steps
            compress: Return compressed ensembles
            rao_blackwellize: Return the full weighted ensemble; if False
                only the new retained trajectory is returned, with weight 1
            expectation: Optional functional evaluated on every returned sample
            compressor: Compression collaborator used when ``compress`` is set
        """
        if n_particles < 1:
            raise ValueError(f"n_particles must be at least 1, got {n_particles}")
        if isinstance(resample_method, str):
            resample_method = ResampleMethod(resample_method)

        self.model = model
        self.n_particles = n_particles
        self.resample_method = resample_method
        self.compress = compress
        self.rao_blackwellize = rao_blackwellize
        self.expectation = expectation
        self.compressor = compressor

    def sweep(
        self,
        retained: Optional[RetainedTrajectory] = None,
        generator: Optional[torch.Generator] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> SweepResult:
        """Run one sweep, conditional if ``retained`` is given.

        Args:
            retained: Trajectory to condition on; None for unconditional SMC
            generator: Random generator for resampling and the retained draw
            cancel: Token checked before every step

        Returns:
            SweepResult

        Raises:
            InconsistentRepresentation: model or retained trajectory mismatch
            IncompleteAssignment: composition failure (a bug upstream)
            InvalidWeights: weights of some step cannot be normalized
            SweepCancelled: ``cancel`` was triggered
        """
        if retained is not None and retained.n_steps != self.model.n_steps:
            raise InconsistentRepresentation(
                f"Retained trajectory covers {retained.n_steps} steps, "
                f"model has {self.model.n_steps}"
            )

        conditional = retained is not None
        n_free = self.n_particles - 1 if conditional else self.n_particles
        n_steps = self.model.n_steps
        resampler = Resampler(self.resample_method, generator)
        recorder = LineageRecorder()
        ess_history: List[float] = []

        particles = ParticleEnsemble(n_free)
        log_z = 0.0
        for step in range(n_steps):
            if cancel is not None:
                cancel.raise_if_cancelled(f"step {step}")

            particles = self.model.sample(step, particles, n_free)
            log_weights = self.model.log_weight(step, particles, n_free)

            if conditional:
                state = retained.state_at(step, constants=particles.constants)
                retained_log_weight = self.model.log_weight(step, state, 1)
                log_weights = torch.cat([
                    retained_log_weight.to(dtype=log_weights.dtype, device=log_weights.device),
                    log_weights,
                ])
                recorder.record_step(*self._conditional_widths(step, particles, retained))
            else:
                recorder.record_step(
                    particles.variable_names,
                    {name: particles.row_widths(name) for name in particles.variable_names},
                )
            ess_history.append(float(compute_ess(log_weights)))

            if step == n_steps - 1:
                break

            ancestors, log_z_step = resampler(log_weights, n_free)
            log_z += log_z_step
            if conditional:
                particles, ancestors = self._conditional_resample(particles, state, ancestors)
            else:
                particles = particles.take(ancestors)
            recorder.record_ancestors(ancestors)

        if conditional:
            constants = {**retained.ensemble.constants, **particles.constants}
            particles = compose_ensembles(
                None, retained.ensemble, particles, torch.arange(self.n_particles), 1, n_free
            ).ensemble
            particles.constants = constants

        log_mean, relative_weights = normalize_weights(log_weights)
        log_z += log_mean
        particles.relative_weights = relative_weights

        retained_index, new_retained = self._draw_retained(particles, recorder, generator)
        sample = self._shape_output(particles, new_retained)
        expectation = sample.expectation(self.expectation) if self.expectation is not None else None

        return SweepResult(
            sample=sample,
            log_z=log_z,
            retained=new_retained,
            retained_index=retained_index,
            expectation=expectation,
            ess_history=ess_history,
            ancestry=recorder.ancestors,
        )

    def _conditional_widths(
        self,
        step: int,
        particles: ParticleEnsemble,
        retained: RetainedTrajectory,
    ) -> Tuple[Tuple[str, ...], Widths]:
        """Names and widths of [retained] + free rows at this step."""
        retained_names = retained.lineage[step]
        names = tuple(dict.fromkeys(particles.variable_names + retained_names))
        widths: Widths = {}
        for name in names:
            first = retained.step_widths[step][name] if name in retained_names else ABSENT_WIDTH
            rest = particles.row_widths(name) if name in particles else ABSENT_WIDTH
            widths[name] = merge_widths(first, rest, particles.n_particles)
        return names, widths

    def _conditional_resample(
        self,
        particles: ParticleEnsemble,
        state: ParticleEnsemble,
        ancestors: Tensor,
    ) -> Tuple[ParticleEnsemble, Tensor]:
        """Build the next N-1 free particles from ancestors drawn over [retained] + free.

        Ancestor 0 is the retained particle: each draw of it becomes a
        replica of its current state. Ancestor i > 0 is free particle i - 1.

        Returns:
            particles: The next free particles
            ancestors: Ancestor row of every row of the next step, retained
                row included
        """
        from_retained = ancestors == 0
        survivors = ancestors[~from_retained]
        n_replicas = int(from_retained.sum())
        n_free = particles.n_particles

        if n_replicas == 0:
            particles = particles.take(survivors - 1)
        else:
            particles = compose_ensembles(
                None,
                particles,
                state,
                torch.arange(n_free),
                survivors.numel(),
                n_replicas,
                reorder_a=survivors - 1,
                reorder_b=torch.zeros(n_replicas, dtype=torch.long),
            ).ensemble

        order = torch.cat([
            torch.zeros(1, dtype=torch.long),
            survivors,
            torch.zeros(n_replicas, dtype=torch.long),
        ])
        return particles, order

    def _draw_retained(
        self,
        particles: ParticleEnsemble,
        recorder: LineageRecorder,
        generator: Optional[torch.Generator],
    ) -> Tuple[int, RetainedTrajectory]:
        """Draw one row in proportion to its weight as the next retained trajectory."""
        weights = particles.relative_weights.detach().to(device="cpu", dtype=torch.float64)
        keep = int(torch.multinomial(weights, 1, replacement=True, generator=generator))
        lineage, step_widths = recorder.trace(keep)
        return keep, RetainedTrajectory(particles.select_row(keep), lineage, step_widths)

    def _shape_output(self, particles: ParticleEnsemble, retained: RetainedTrajectory) -> Sample:
        if not self.rao_blackwellize:
            return Sample(SampleKind.RETAINED, retained.as_sample())
        if self.compress:
            return Sample(SampleKind.COMPRESSED, self.compressor(particles, self.model.n_steps))
        return Sample(SampleKind.ENSEMBLE, particles)

    def __repr__(self) -> str:
        return (
            f"SweepEngine(n_particles={self.n_particles}, "
            f"resample_method={self.resample_method.value}, "
            f"compress={self.compress}, rao_blackwellize={self.rao_blackwellize})"
        )


def pg_sweep(
    sampling_functions: Sequence[SamplingFunction],
    weighting_functions: Sequence[WeightingFunction],
    n_particles: int,
    retained: Optional[RetainedTrajectory] = None,
    compress: bool = False,
    rao_blackwellize: bool = True,
    resample_method: Union[str, ResampleMethod] = ResampleMethod.MULTINOMIAL,
    expectation: Optional[Callable[[ParticleEnsemble], Tensor]] = None,
    generator: Optional[torch.Generator] = None,
    cancel: Optional[CancellationToken] = None,
) -> SweepResult:
    """One sweep for Particle Gibbs, PIMH and APG.

    Performs conditional SMC when ``retained`` is given, SMC otherwise.

    Args:
        sampling_functions: One sampling function per model step
        weighting_functions: One weighting function per model step
        n_particles: Number of particles N
        retained: Trajectory to condition on
        compress: Return a compressed ensemble
        rao_blackwellize: Return all particles with weights; if False only
            the new retained trajectory
        resample_method: Resampling scheme
        expectation: Optional functional evaluated on the returned sample
        generator: Random generator for resampling and the retained draw
        cancel: Cooperative cancellation token

    Returns:
        SweepResult(sample, log_z, retained, ...)
    """
    engine = SweepEngine(
        SequentialModel(sampling_functions, weighting_functions),
        n_particles,
        resample_method=resample_method,
        compress=compress,
        rao_blackwellize=rao_blackwellize,
        expectation=expectation,
    )
    return engine.sweep(retained=retained, generator=generator, cancel=cancel)


def smc_sweep(
    sampling_functions: Sequence[SamplingFunction],
    weighting_functions: Sequence[WeightingFunction],
    n_particles: int,
    **kwargs,
) -> SweepResult:
    """Unconditional SMC sweep; see pg_sweep for the keyword arguments."""
    return pg_sweep(sampling_functions, weighting_functions, n_particles, retained=None, **kwargs)
