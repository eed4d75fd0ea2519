"""
Shared fixtures: small schedules and deterministic denoisers
"""

import pytest
import torch

from denoising_diffusion.diffusion import GaussianDiffusion


def zero_noise(x, t):
    """Denoiser that always predicts zero noise."""
    return torch.zeros_like(x)


def identity_noise(x, t):
    """Denoiser that predicts the input itself as the noise."""
    return x.clone()


@pytest.fixture
def zero_noise_fn():
    return zero_noise


@pytest.fixture
def small_betas():
    """T=3 schedule used for hand-computed checks"""
    return torch.tensor([0.1, 0.2, 0.3], dtype=torch.float64)


@pytest.fixture
def small_diffusion(small_betas):
    """T=3 process over (2, 3) samples in float64"""
    return GaussianDiffusion(small_betas, (2, 3), zero_noise, dtype=torch.float64)


@pytest.fixture
def image_diffusion():
    """T=20 linear-ish process over (3, 8, 8) samples"""
    betas = torch.linspace(0.01, 0.2, 20, dtype=torch.float64)
    return GaussianDiffusion(betas, (3, 8, 8), identity_noise)
