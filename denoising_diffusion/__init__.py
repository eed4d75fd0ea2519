"""Denoising Diffusion Probabilistic Models

Noise schedules, the Gaussian diffusion process (forward noising, posterior,
ancestral sampling) and the ε-prediction training objective.
"""

from .diffusion import DiffusionCoefficients, GaussianDiffusion, extract
from .losses import DiffusionLoss, p_losses
from .schedules import cosine_beta_schedule, get_beta_schedule, linear_beta_schedule

__version__ = "0.1.0"

__all__ = [
    "DiffusionCoefficients",
    "DiffusionLoss",
    "GaussianDiffusion",
    "cosine_beta_schedule",
    "extract",
    "get_beta_schedule",
    "linear_beta_schedule",
    "p_losses",
]
