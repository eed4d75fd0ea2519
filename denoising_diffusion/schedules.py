"""
β schedule builders: linear (Ho et al.) and cosine (Nichol & Dhariwal).

Every builder is a pure function of (T, hyperparameters) returning a float64
tensor of shape (T,). The coefficient cache casts to the process dtype later.
"""

import math
from typing import Callable, Dict

import torch


def _check_num_timesteps(num_timesteps: int) -> None:
    if num_timesteps <= 0:
        raise ValueError(f"num_timesteps must be positive, got {num_timesteps}")


def linear_beta_schedule(
    num_timesteps: int,
    beta_start: float = 0.0001,
    beta_end: float = 0.02
) -> torch.Tensor:
    """
    Linear β schedule from Ho et al. (2020).

    Both endpoints are rescaled by 1000 / T so that schedules of any length
    carry the same total noise as the 1000-step reference schedule.

    Args:
        num_timesteps: Number of diffusion timesteps T
        beta_start: β_1 of the 1000-step reference schedule
        beta_end: β_T of the 1000-step reference schedule

    Returns:
        β schedule of shape (T,)
    """
    _check_num_timesteps(num_timesteps)
    scale = 1000.0 / num_timesteps
    return torch.linspace(
        beta_start * scale, beta_end * scale, num_timesteps, dtype=torch.float64
    )


def cosine_beta_schedule(num_timesteps: int, s: float = 0.008) -> torch.Tensor:
    """
    Cosine β schedule from Nichol & Dhariwal (2021).

    Builds ᾱ from a cos² curve with offset s, normalizes it to start at 1,
    recovers β from consecutive ratios and clamps to [0, 0.999].

    Args:
        num_timesteps: Number of diffusion timesteps T
        s: Small offset keeping β from vanishing near t=0

    Returns:
        β schedule of shape (T,)
    """
    _check_num_timesteps(num_timesteps)
    steps = num_timesteps + 1
    t = torch.linspace(0, num_timesteps, steps, dtype=torch.float64) / num_timesteps
    alphas_cumprod = torch.cos((t + s) / (1 + s) * math.pi * 0.5) ** 2
    alphas_cumprod = alphas_cumprod / alphas_cumprod[0]
    betas = 1 - (alphas_cumprod[1:] / alphas_cumprod[:-1])
    return torch.clamp(betas, 0.0, 0.999)


SCHEDULES: Dict[str, Callable[..., torch.Tensor]] = {
    "linear": linear_beta_schedule,
    "cosine": cosine_beta_schedule,
}


def get_beta_schedule(name: str, num_timesteps: int, **kwargs) -> torch.Tensor:
    """
    Build a β schedule by name.

    Args:
        name: One of 'linear', 'cosine'
        num_timesteps: Number of timesteps
        **kwargs: Hyperparameters forwarded to the schedule function

    Returns:
        β schedule of shape (T,)
    """
    if name not in SCHEDULES:
        raise ValueError(
            f"Unknown schedule: {name}. Available: {sorted(SCHEDULES)}"
        )
    return SCHEDULES[name](num_timesteps, **kwargs)
