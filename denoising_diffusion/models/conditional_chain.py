"""
Timestep-conditioned building blocks for noise-prediction models
"""

from typing import Optional, Sequence

import torch
import torch.nn as nn


class TimestepBlock(nn.Module):
    """
    Abstract base for any module that conditions on timesteps
    """

    def forward(self, x: torch.Tensor, timesteps: torch.Tensor) -> torch.Tensor:
        """
        Args:
            x: input tensor
            timesteps: [B] timestep indices
        Returns:
            output tensor
        """
        raise NotImplementedError


class ConditionalChain(nn.Sequential):
    """
    Sequential module that passes timesteps to TimestepBlock layers only
    """

    def forward(self, x: torch.Tensor, timesteps: Optional[torch.Tensor] = None) -> torch.Tensor:
        for layer in self:
            if isinstance(layer, TimestepBlock):
                x = layer(x, timesteps)
            else:
                x = layer(x)
        return x


class TimestepConcat(TimestepBlock):
    """Append t / T as an extra feature column to a [B, F] input."""

    def __init__(self, num_timesteps: int):
        super().__init__()
        self.num_timesteps = num_timesteps

    def forward(self, x: torch.Tensor, timesteps: torch.Tensor) -> torch.Tensor:
        t = timesteps.to(dtype=x.dtype, device=x.device).reshape(-1, 1) / self.num_timesteps
        return torch.cat([x, t], dim=-1)


class ConditionalMLP(nn.Module):
    """
    Small MLP noise predictor for low-dimensional data.

    Flattens each sample, feeds t / T alongside the features at every hidden
    layer and reshapes the output back to the sample shape.
    """

    def __init__(
        self,
        data_shape: Sequence[int],
        num_timesteps: int,
        hidden_dim: int = 64,
        num_layers: int = 3,
        activation: str = "silu"
    ):
        super().__init__()
        if num_layers < 1:
            raise ValueError(f"num_layers must be at least 1, got {num_layers}")

        self.data_shape = tuple(data_shape)
        self.num_timesteps = num_timesteps
        data_dim = 1
        for d in self.data_shape:
            data_dim *= d

        layers = []
        in_dim = data_dim
        for _ in range(num_layers):
            layers += [
                TimestepConcat(num_timesteps),
                nn.Linear(in_dim + 1, hidden_dim),
                self._get_activation(activation),
            ]
            in_dim = hidden_dim
        layers.append(nn.Linear(hidden_dim, data_dim))
        self.net = ConditionalChain(*layers)

    def _get_activation(self, name: str) -> nn.Module:
        """Get activation function by name"""
        if name.lower() in ("silu", "swish"):
            return nn.SiLU()
        elif name.lower() == "relu":
            return nn.ReLU()
        elif name.lower() == "gelu":
            return nn.GELU()
        else:
            raise ValueError(f"Unknown activation: {name}")

    def forward(self, x: torch.Tensor, timesteps: torch.Tensor) -> torch.Tensor:
        """
        Args:
            x: noised samples [B, *data_shape]
            timesteps: [B] timesteps in [1, T]
        Returns:
            predicted noise [B, *data_shape]
        """
        out = self.net(x.flatten(1), timesteps)
        return out.reshape(x.shape)
