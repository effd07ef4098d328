"""Shared fixtures for pmcmc test suite."""

import math
from typing import List

import pytest
import torch
from torch import Tensor

from pmcmc import ParticleEnsemble, SequentialModel


# =============================================================================
# Device Configuration
# =============================================================================

@pytest.fixture
def cpu_device() -> torch.device:
    """CPU device for explicit CPU tests."""
    return torch.device("cpu")


@pytest.fixture
def generator() -> torch.Generator:
    """Seeded generator for reproducible resampling draws."""
    return torch.Generator().manual_seed(1234)


# =============================================================================
# Dimension Fixtures (Parameterized)
# =============================================================================

@pytest.fixture(params=[1, 8, 32])
def n_particles(request) -> int:
    """Test with various particle counts."""
    return request.param


@pytest.fixture(params=[1, 5])
def n_steps(request) -> int:
    """Test with various model lengths."""
    return request.param


@pytest.fixture(params=["multinomial", "systematic", "stratified", "residual"])
def resample_method(request) -> str:
    """Test all resampling schemes."""
    return request.param


# =============================================================================
# Fixed Dimension Fixtures (Non-parameterized)
# =============================================================================

@pytest.fixture
def n_particles_fixed() -> int:
    """Fixed particle count for simpler tests."""
    return 16


@pytest.fixture
def n_steps_fixed() -> int:
    """Fixed model length for simpler tests."""
    return 4


# =============================================================================
# Tolerance Fixtures
# =============================================================================

@pytest.fixture
def tolerance() -> dict:
    """Default numerical tolerances for floating point comparisons."""
    return {"atol": 1e-5, "rtol": 1e-4}


@pytest.fixture
def loose_tolerance() -> dict:
    """Looser tolerances for stochastic operations."""
    return {"atol": 1e-3, "rtol": 1e-2}


# =============================================================================
# Toy Models (Not fixtures)
# =============================================================================

def gaussian_model(observations: List[float], noise_std: float = 1.0) -> SequentialModel:
    """Independent Gaussian steps with a closed-form evidence.

    Step t draws x_t ~ N(0, 1), appended to the fixed-width variable "x",
    and weights it by the normalized density N(y_t; x_t, noise_std^2).
    """
    def make_sample():
        def sample(ensemble: ParticleEnsemble, particle_count: int) -> ParticleEnsemble:
            return ensemble.extend("x", torch.randn(particle_count, 1, dtype=torch.float64))
        return sample

    def make_weight(y: float):
        def log_weight(ensemble: ParticleEnsemble, particle_count: int) -> Tensor:
            x = ensemble["x"][:, -1]
            return (
                -0.5 * ((y - x) / noise_std) ** 2
                - math.log(noise_std)
                - 0.5 * math.log(2 * math.pi)
            )
        return log_weight

    return SequentialModel(
        [make_sample() for _ in observations],
        [make_weight(y) for y in observations],
    )


def gaussian_log_evidence(observations: List[float], noise_std: float = 1.0) -> float:
    """log prod_t N(y_t; 0, 1 + noise_std^2) for gaussian_model."""
    variance = 1.0 + noise_std ** 2
    return sum(
        -0.5 * y ** 2 / variance - 0.5 * math.log(2 * math.pi * variance)
        for y in observations
    )


def ragged_model(n_steps: int) -> SequentialModel:
    """Model whose particles diverge in dimensionality.

    Every step appends one value to the fixed-width "x" and one or two
    values to the ragged "path" of each particle. The weight depends on the
    whole state so truncation errors show up in the weights.
    """
    def sample(ensemble: ParticleEnsemble, particle_count: int) -> ParticleEnsemble:
        lengths = torch.randint(1, 3, (particle_count,)).tolist()
        ensemble.extend("x", torch.randn(particle_count, 1))
        ensemble.extend("path", [torch.randn(k) for k in lengths])
        return ensemble

    def log_weight(ensemble: ParticleEnsemble, particle_count: int) -> Tensor:
        scale = ensemble.constants.get("scale", 0.5)
        path_terms = [float(-scale * (p.sum() ** 2) - 0.1 * p.numel()) for p in ensemble["path"]]
        return torch.tensor(path_terms) - 0.5 * ensemble["x"].sum(dim=1) ** 2

    return SequentialModel([sample] * n_steps, [log_weight] * n_steps)


def constant_weight_model(n_steps: int, log_weight: float = 0.0) -> SequentialModel:
    """Every particle gets the same log weight, so log Z = n_steps * log_weight."""
    def sample(ensemble: ParticleEnsemble, particle_count: int) -> ParticleEnsemble:
        return ensemble.extend("x", torch.randn(particle_count, 1))

    def weight(ensemble: ParticleEnsemble, particle_count: int) -> Tensor:
        return torch.full((particle_count,), log_weight)

    return SequentialModel([sample] * n_steps, [weight] * n_steps)


# =============================================================================
# Model Fixtures
# =============================================================================

@pytest.fixture
def observations() -> List[float]:
    """Observations for the Gaussian model."""
    return [0.3, -1.2, 0.8, 0.0]


@pytest.fixture
def linear_gaussian(observations) -> SequentialModel:
    """Gaussian model over the default observations."""
    return gaussian_model(observations)


@pytest.fixture
def ragged(n_steps_fixed) -> SequentialModel:
    """Ragged-growth model with a fixed number of steps."""
    return ragged_model(n_steps_fixed)


@pytest.fixture
def make_gaussian_model():
    """Factory: gaussian_model(observations, noise_std)."""
    return gaussian_model


@pytest.fixture
def log_evidence():
    """Closed-form log evidence of gaussian_model."""
    return gaussian_log_evidence


@pytest.fixture
def make_ragged_model():
    """Factory: ragged_model(n_steps)."""
    return ragged_model


@pytest.fixture
def make_constant_model():
    """Factory: constant_weight_model(n_steps, log_weight)."""
    return constant_weight_model


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: marks tests as slow")
    config.addinivalue_line("markers", "hypothesis: marks property-based tests")
