"""
DDPM training objective with ε-prediction: L = ||ε - ε_θ(x_t, t)||
"""

from typing import Any, Dict, Optional, Union

import torch
import torch.nn as nn
import torch.nn.functional as F
from omegaconf import DictConfig

from .diffusion import GaussianDiffusion, Timesteps

LOSS_TYPES = ("l1", "l2", "huber")


def _elementwise_loss(prediction: torch.Tensor, target: torch.Tensor, loss_type: str) -> torch.Tensor:
    if loss_type == "l1":
        return F.l1_loss(prediction, target, reduction='none')
    elif loss_type == "l2":
        return F.mse_loss(prediction, target, reduction='none')
    elif loss_type == "huber":
        return F.huber_loss(prediction, target, reduction='none', delta=1.0)
    raise ValueError(f"Unknown loss type: {loss_type}. Available: {list(LOSS_TYPES)}")


def sample_timesteps(
    diffusion: GaussianDiffusion,
    batch_size: int,
    generator: Optional[torch.Generator] = None
) -> torch.Tensor:
    """Draw t ~ U{1, ..., T} independently for each batch element."""
    return torch.randint(
        1, diffusion.num_timesteps + 1, (batch_size,),
        generator=generator, device=diffusion.device
    )


def p_losses(
    diffusion: GaussianDiffusion,
    x_start: torch.Tensor,
    timesteps: Optional[Timesteps] = None,
    noise: Optional[torch.Tensor] = None,
    loss_type: str = "l2",
    generator: Optional[torch.Generator] = None,
    reduction: str = "mean"
) -> torch.Tensor:
    """
    Noise-prediction loss for a batch of clean samples.

    Args:
        diffusion: Process holding the schedule and the denoiser
        x_start: Clean data x_0, shape (B, *data_shape)
        timesteps: Shape (B,) or int; sampled uniformly in [1, T] if None
        noise: ε, drawn from N(0, I) if None
        loss_type: 'l1', 'l2' or 'huber'
        generator: RNG for the sampled timesteps and noise
        reduction: 'mean' for a scalar, 'none' for one value per example

    Returns:
        Scalar loss, or per-example losses of shape (B,)
    """
    if loss_type not in LOSS_TYPES:
        raise ValueError(f"Unknown loss type: {loss_type}. Available: {list(LOSS_TYPES)}")
    if reduction not in ("mean", "none"):
        raise ValueError(f"Unknown reduction: {reduction}")

    batch_size = x_start.shape[0]
    if timesteps is None:
        timesteps = sample_timesteps(diffusion, batch_size, generator)
    if noise is None:
        noise = torch.randn(
            x_start.shape, generator=generator, dtype=x_start.dtype, device=x_start.device
        )

    timesteps = diffusion.as_timesteps(timesteps, batch_size)
    x_t = diffusion.q_sample(x_start, timesteps, noise)
    _, predicted_noise = diffusion.denoise(x_t, timesteps)

    # Reduce over data dimensions, keep batch
    per_example = _elementwise_loss(predicted_noise, noise, loss_type).flatten(1).mean(dim=1)
    if reduction == "none":
        return per_example
    return per_example.mean()


class DiffusionLoss(nn.Module):
    """
    DDPM simple loss as a module.

    The process is not registered as a submodule; the denoiser is, when it
    is an nn.Module, so `loss.parameters()` yields the trainable weights.
    """

    def __init__(self, diffusion: GaussianDiffusion, loss_type: str = "l2"):
        super().__init__()
        if loss_type not in LOSS_TYPES:
            raise ValueError(f"Unknown loss type: {loss_type}. Available: {list(LOSS_TYPES)}")
        self.diffusion = diffusion
        self.loss_type = loss_type
        if isinstance(diffusion.denoise_fn, nn.Module):
            self.denoise_fn = diffusion.denoise_fn

    def forward(
        self,
        x_start: torch.Tensor,
        timesteps: Optional[Timesteps] = None,
        noise: Optional[torch.Tensor] = None,
        generator: Optional[torch.Generator] = None,
        return_dict: bool = False
    ) -> Union[torch.Tensor, Dict[str, Any]]:
        """
        Args:
            x_start: clean samples [B, *data_shape]
            timesteps: [B] in [1, T], sampled uniformly if None
            noise: noise tensor, sampled from N(0, I) if None
            return_dict: also return timesteps and per-example losses

        Returns:
            loss: scalar loss value or dict with detailed losses
        """
        if timesteps is None:
            timesteps = sample_timesteps(self.diffusion, x_start.shape[0], generator)

        per_example = p_losses(
            self.diffusion, x_start, timesteps, noise,
            loss_type=self.loss_type, generator=generator, reduction="none"
        )
        loss = per_example.mean()

        if not return_dict:
            return loss

        return {
            "loss": loss,
            "per_example_loss": per_example.detach(),
            "timesteps": timesteps,
        }


def get_loss_fn(diffusion: GaussianDiffusion, loss_config: Optional[Union[Dict, DictConfig]] = None) -> DiffusionLoss:
    """Factory function to create the loss from config"""
    loss_config = loss_config or {}
    return DiffusionLoss(diffusion, loss_type=loss_config.get("loss_type", "l2"))
