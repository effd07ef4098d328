"""Integration tests for SMC and conditional SMC sweeps (pmcmc/sweep/engine.py).

Key Invariants Tested:
- S1: Every ensemble has N rows after every step, conditional or not
- S2: A conditional sweep with N = 1 returns the retained trajectory
  unchanged, with weight 1 and log Z the sum of its own log weights
- S3: The retained trajectory's reconstructed states reproduce the weights
  its ancestors had in the sweep that produced it
- S4: The retained trajectory occupies row 0 of a conditional sweep's output
"""

import math

import pytest
import torch

from pmcmc import (
    CancellationToken,
    InconsistentRepresentation,
    InvalidWeights,
    ParticleEnsemble,
    SampleKind,
    SequentialModel,
    SweepCancelled,
    SweepEngine,
    pg_sweep,
    smc_sweep,
)
from pmcmc.utils.weights import function_expectation


# =============================================================================
# Helpers
# =============================================================================

def _sample_spy(model, calls):
    """Model recording (step, particle_count, rows returned) per sampling call."""
    def wrap(f, step):
        def sample(ensemble, particle_count):
            out = f(ensemble, particle_count)
            calls.append((step, particle_count, out.n_particles))
            return out
        return sample
    return SequentialModel(
        [wrap(f, t) for t, f in enumerate(model.sampling_functions)],
        model.weighting_functions,
    )


def _weight_spy(model, calls):
    """Model recording (step, log_weights) per weighting call."""
    def wrap(f, step):
        def log_weight(ensemble, particle_count):
            out = f(ensemble, particle_count)
            calls.append((step, torch.as_tensor(out).clone()))
            return out
        return log_weight
    return SequentialModel(
        model.sampling_functions,
        [wrap(f, t) for t, f in enumerate(model.weighting_functions)],
    )


def _ancestor_rows(ancestry, row):
    """Row of ``row``'s ancestor at every step, first step first."""
    rows = [row]
    for ancestors in reversed(ancestry):
        rows.append(int(ancestors[rows[-1]]))
    return rows[::-1]


# =============================================================================
# Tests for unconditional sweeps
# =============================================================================

class TestUnconditionalSweep:
    """Tests for plain SMC sweeps."""

    def test_row_counts(self, make_ragged_model, n_particles, n_steps, generator):
        """Invariant S1: every step sees and returns N rows."""
        calls = []
        model = _sample_spy(make_ragged_model(n_steps), calls)
        result = SweepEngine(model, n_particles).sweep(generator=generator)

        assert [c[0] for c in calls] == list(range(n_steps))
        assert all(count == rows == n_particles for _, count, rows in calls)
        assert result.ensemble.n_particles == n_particles
        assert result.ensemble.relative_weights.shape == (n_particles,)
        assert len(result.ancestry) == n_steps - 1
        assert all(a.shape == (n_particles,) for a in result.ancestry)

    def test_weights_normalized(self, linear_gaussian, n_particles_fixed, generator):
        """Relative weights are a probability vector."""
        result = SweepEngine(linear_gaussian, n_particles_fixed).sweep(generator=generator)
        weights = result.ensemble.relative_weights
        assert torch.all(weights >= 0)
        assert float(weights.sum()) == pytest.approx(1.0)
        assert math.isfinite(result.log_z)

    def test_all_resample_methods(self, make_ragged_model, resample_method, generator):
        """Every scheme drives a complete sweep."""
        engine = SweepEngine(make_ragged_model(3), 10, resample_method=resample_method)
        result = engine.sweep(generator=generator)
        assert result.ensemble.n_particles == 10
        assert result.retained.n_steps == 3

    def test_constant_weights_log_z(self, make_constant_model, generator):
        """Equal weights make log Z exact."""
        result = SweepEngine(make_constant_model(6, -2.5), 12).sweep(generator=generator)
        assert result.log_z == pytest.approx(-15.0)

    def test_ess_history(self, linear_gaussian, n_particles_fixed, generator):
        """One ESS per step, within [1, N]."""
        result = SweepEngine(linear_gaussian, n_particles_fixed).sweep(generator=generator)
        assert len(result.ess_history) == linear_gaussian.n_steps
        assert all(1.0 - 1e-6 <= ess <= n_particles_fixed + 1e-6 for ess in result.ess_history)

    def test_retained_lineage(self, ragged, generator):
        """The new retained trajectory carries one lineage entry per step."""
        result = SweepEngine(ragged, 8).sweep(generator=generator)
        retained = result.retained
        assert retained.n_steps == ragged.n_steps
        assert retained.lineage[0] == ("x", "path")
        assert [w["x"] for w in retained.step_widths] == [1, 2, 3, 4]
        path_widths = [w["path"] for w in retained.step_widths]
        assert all(b > a for a, b in zip(path_widths, path_widths[1:]))
        assert path_widths[-1] == retained.ensemble["path"][0].numel()

    def test_retained_is_drawn_row(self, ragged, generator):
        """retained_index points at the row the trajectory was copied from."""
        result = SweepEngine(ragged, 8).sweep(generator=generator)
        row = result.retained_index
        assert torch.equal(result.retained.ensemble["x"][0], result.ensemble["x"][row])
        assert torch.equal(result.retained.ensemble["path"][0], result.ensemble["path"][row])

    def test_reproducible(self, ragged):
        """Same seeds, same sweep."""
        torch.manual_seed(0)
        first = SweepEngine(ragged, 8).sweep(generator=torch.Generator().manual_seed(5))
        torch.manual_seed(0)
        second = SweepEngine(ragged, 8).sweep(generator=torch.Generator().manual_seed(5))
        assert first.log_z == second.log_z
        assert first.retained_index == second.retained_index


# =============================================================================
# Tests for conditional sweeps
# =============================================================================

class TestConditionalSweep:
    """Tests for conditional SMC sweeps."""

    def test_row_counts(self, make_ragged_model, n_steps, generator):
        """Invariant S1: free blocks have N - 1 rows, the output N."""
        model = make_ragged_model(n_steps)
        retained = SweepEngine(model, 6).sweep(generator=generator).retained

        calls = []
        result = SweepEngine(_sample_spy(model, calls), 6).sweep(retained=retained, generator=generator)
        assert all(count == rows == 5 for _, count, rows in calls)
        assert result.ensemble.n_particles == 6
        assert all(a.shape == (6,) for a in result.ancestry)
        assert len(result.ensemble["path"]) == 6

    def test_single_particle_returns_retained(self, linear_gaussian, generator):
        """Invariant S2: N = 1 reproduces the retained trajectory."""
        retained = SweepEngine(linear_gaussian, 8).sweep(generator=generator).retained
        result = SweepEngine(linear_gaussian, 1).sweep(retained=retained, generator=generator)

        assert result.ensemble.n_particles == 1
        assert torch.equal(result.ensemble["x"], retained.ensemble["x"])
        assert result.ensemble.relative_weights.tolist() == [1.0]
        expected = sum(
            float(linear_gaussian.log_weight(t, retained.state_at(t), 1)[0])
            for t in range(linear_gaussian.n_steps)
        )
        assert result.log_z == pytest.approx(expected)
        assert torch.equal(result.retained.ensemble["x"], retained.ensemble["x"])
        assert result.retained.step_widths == retained.step_widths

    def test_single_particle_ragged(self, ragged, generator):
        """Invariant S2 with ragged variables."""
        retained = SweepEngine(ragged, 8).sweep(generator=generator).retained
        result = SweepEngine(ragged, 1).sweep(retained=retained, generator=generator)
        assert torch.equal(result.retained.ensemble["path"][0], retained.ensemble["path"][0])
        assert result.retained.step_widths == retained.step_widths

    def test_round_trip_weights(self, make_ragged_model):
        """Invariant S3: reconstructed retained weights equal the original ones."""
        torch.manual_seed(0)
        model = make_ragged_model(5)

        unconditional_calls = []
        first = SweepEngine(_weight_spy(model, unconditional_calls), 8).sweep(
            generator=torch.Generator().manual_seed(1)
        )
        rows = _ancestor_rows(first.ancestry, first.retained_index)

        conditional_calls = []
        SweepEngine(_weight_spy(model, conditional_calls), 2).sweep(
            retained=first.retained, generator=torch.Generator().manual_seed(2)
        )
        # Per step: free particles first, then the retained particle
        retained_calls = conditional_calls[1::2]

        assert len(retained_calls) == 5
        for step, ((_, original), (call_step, reconstructed)) in enumerate(
            zip(unconditional_calls, retained_calls)
        ):
            assert call_step == step
            assert reconstructed.shape == (1,)
            assert torch.allclose(reconstructed, original[rows[step]:rows[step] + 1], atol=1e-5)

    def test_retained_in_first_row(self, ragged, generator):
        """Invariant S4: the retained trajectory is row 0."""
        retained = SweepEngine(ragged, 8).sweep(generator=generator).retained
        result = SweepEngine(ragged, 8).sweep(retained=retained, generator=generator)
        assert torch.equal(result.ensemble["x"][0], retained.ensemble["x"][0])
        assert torch.equal(result.ensemble["path"][0], retained.ensemble["path"][0])

    def test_chained_conditional_sweeps(self, ragged, generator):
        """Conditional sweeps can be iterated on their own output."""
        retained = SweepEngine(ragged, 6).sweep(generator=generator).retained
        engine = SweepEngine(ragged, 6, resample_method="systematic")
        for _ in range(5):
            result = engine.sweep(retained=retained, generator=generator)
            retained = result.retained
            assert result.ensemble.n_particles == 6
            state = retained.state_at(ragged.n_steps - 1)
            assert torch.equal(state["x"], retained.ensemble["x"])

    def test_absent_entries(self, generator):
        """Variables absent for some particles survive conditioning."""
        def first_step(ensemble, particle_count):
            ensemble.set("x", torch.randn(particle_count, 1))
            ensemble.set("extra", [torch.ones(1) if i % 2 else None for i in range(particle_count)])
            return ensemble

        def second_step(ensemble, particle_count):
            return ensemble.extend("x", torch.randn(particle_count, 1))

        def weight(ensemble, particle_count):
            return -ensemble["x"][:, -1] ** 2

        model = SequentialModel([first_step, second_step], [weight, weight])
        retained = SweepEngine(model, 6).sweep(generator=generator).retained
        result = SweepEngine(model, 6).sweep(retained=retained, generator=generator)

        assert result.ensemble.n_particles == 6
        assert len(result.ensemble["extra"]) == 6
        first_extra = retained.state_at(0)["extra"][0]
        if retained.step_widths[0]["extra"] == -1:
            assert first_extra is None
        else:
            assert torch.equal(first_extra, torch.ones(1))

    def test_retained_length_mismatch(self, linear_gaussian, make_gaussian_model, generator):
        """Retained trajectories must cover every model step."""
        retained = SweepEngine(make_gaussian_model([0.0, 1.0]), 4).sweep(generator=generator).retained
        with pytest.raises(InconsistentRepresentation):
            SweepEngine(linear_gaussian, 4).sweep(retained=retained)


# =============================================================================
# Tests for output shaping
# =============================================================================

class TestOutputShaping:
    """Tests for Rao-Blackwellization, compression and expectations."""

    def test_full_ensemble(self, linear_gaussian, generator):
        result = SweepEngine(linear_gaussian, 8).sweep(generator=generator)
        assert result.sample.kind == SampleKind.ENSEMBLE

    def test_without_rao_blackwellization(self, linear_gaussian, generator):
        """Only the retained trajectory is returned, with weight 1."""
        result = SweepEngine(linear_gaussian, 8, rao_blackwellize=False).sweep(generator=generator)
        assert result.sample.kind == SampleKind.RETAINED
        assert result.ensemble.n_particles == 1
        assert result.sample.relative_weights.tolist() == [1.0]
        assert torch.equal(result.ensemble["x"], result.retained.ensemble["x"])

    def test_compressed(self, make_constant_model, generator):
        """Compressed output keeps every particle's weight."""
        result = SweepEngine(make_constant_model(3), 16, compress=True).sweep(generator=generator)
        assert result.sample.kind == SampleKind.COMPRESSED
        compressed = result.sample.payload
        assert int(compressed.multiplicity.sum()) == 16
        assert compressed.step_count == 3
        assert float(compressed.relative_weights.sum()) == pytest.approx(1.0)

    def test_expectation(self, linear_gaussian, generator):
        """The expectation is the weighted mean over the returned sample."""
        f = lambda e: e["x"][:, -1]
        result = SweepEngine(linear_gaussian, 16, expectation=f).sweep(generator=generator)
        assert result.expectation is not None
        assert torch.allclose(result.expectation, function_expectation(result.ensemble, f))

    def test_no_expectation(self, linear_gaussian, generator):
        assert SweepEngine(linear_gaussian, 4).sweep(generator=generator).expectation is None

    def test_functional_interface(self, linear_gaussian, generator):
        """pg_sweep and smc_sweep wrap the engine."""
        result = pg_sweep(
            linear_gaussian.sampling_functions,
            linear_gaussian.weighting_functions,
            8,
            generator=generator,
        )
        conditional = pg_sweep(
            linear_gaussian.sampling_functions,
            linear_gaussian.weighting_functions,
            8,
            retained=result.retained,
            rao_blackwellize=False,
            generator=generator,
        )
        assert conditional.sample.kind == SampleKind.RETAINED
        plain = smc_sweep(
            linear_gaussian.sampling_functions,
            linear_gaussian.weighting_functions,
            8,
            resample_method="stratified",
            generator=generator,
        )
        assert plain.ensemble.n_particles == 8


# =============================================================================
# Tests for failures
# =============================================================================

class TestSweepFailures:
    """Tests for error propagation and cancellation."""

    def test_invalid_particle_count(self, linear_gaussian):
        with pytest.raises(ValueError):
            SweepEngine(linear_gaussian, 0)

    def test_all_zero_weights(self, generator):
        """A step where every particle has zero weight aborts the sweep."""
        def sample(ensemble, particle_count):
            return ensemble.extend("x", torch.randn(particle_count, 1))

        def impossible(ensemble, particle_count):
            return torch.full((particle_count,), float("-inf"))

        model = SequentialModel([sample, sample], [lambda e, n: torch.zeros(n), impossible])
        with pytest.raises(InvalidWeights):
            SweepEngine(model, 4).sweep(generator=generator)

    def test_sampling_changes_row_count(self, generator):
        model = SequentialModel([lambda e, n: ParticleEnsemble(n + 1)], [lambda e, n: torch.zeros(n)])
        with pytest.raises(InconsistentRepresentation):
            SweepEngine(model, 4).sweep(generator=generator)

    def test_cancelled_before_start(self, linear_gaussian):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(SweepCancelled):
            SweepEngine(linear_gaussian, 4).sweep(cancel=token)

    def test_cancelled_between_steps(self, generator):
        """Cancellation is noticed before the next step."""
        token = CancellationToken()
        steps_run = []

        def sample(ensemble, particle_count):
            steps_run.append(len(steps_run))
            if len(steps_run) == 2:
                token.cancel()
            return ensemble.extend("x", torch.randn(particle_count, 1))

        model = SequentialModel([sample] * 5, [lambda e, n: torch.zeros(n)] * 5)
        with pytest.raises(SweepCancelled, match="step 2"):
            SweepEngine(model, 4).sweep(generator=generator, cancel=token)
        assert steps_run == [0, 1]
