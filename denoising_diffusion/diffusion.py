"""
Gaussian diffusion process from "Denoising Diffusion Probabilistic Models"
(Ho et al., https://arxiv.org/abs/2006.11239).

Key components:
- DiffusionCoefficients: the twelve per-timestep sequences derived from β
- extract(): per-batch gather of one coefficient, shaped for broadcasting
- GaussianDiffusion: forward process q(x_t | x_0), posterior
  q(x_{t-1} | x_t, x_0) and ancestral reverse process p(x_{t-1} | x_t)

Timesteps are 1-indexed: a valid timestep lies in [1, T]. Samples are
batch-first, shape (B, *data_shape).
"""

import logging
import numbers
from dataclasses import dataclass, fields
from typing import Callable, Iterator, Optional, Sequence, Tuple, Union

import torch
import torch.nn as nn
from tqdm import tqdm

from .utils import format_bytes

logger = logging.getLogger(__name__)

DenoiseFn = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]
Timesteps = Union[int, Sequence[int], torch.Tensor]

POSTERIOR_LOG_VARIANCE_FLOOR = 1e-20


@dataclass(frozen=True, eq=False)
class DiffusionCoefficients:
    """
    Precomputed coefficient sequences, each of shape (T,).

    Computed once from β in float64 and cast to a single dtype/device.
    """

    betas: torch.Tensor
    alphas: torch.Tensor
    alphas_cumprod: torch.Tensor
    alphas_cumprod_prev: torch.Tensor
    sqrt_alphas_cumprod: torch.Tensor
    sqrt_one_minus_alphas_cumprod: torch.Tensor
    sqrt_recip_alphas_cumprod: torch.Tensor
    sqrt_recipm1_alphas_cumprod: torch.Tensor
    posterior_variance: torch.Tensor
    posterior_log_variance_clipped: torch.Tensor
    posterior_mean_coef1: torch.Tensor
    posterior_mean_coef2: torch.Tensor

    @classmethod
    def from_betas(
        cls,
        betas: Union[Sequence[float], torch.Tensor],
        dtype: torch.dtype = torch.float32,
        device: Union[str, torch.device] = "cpu"
    ) -> "DiffusionCoefficients":
        """Derive all sequences from a β schedule."""
        betas = torch.as_tensor(betas, dtype=torch.float64).detach().cpu()

        # α = 1 - β, ᾱ = ∏α
        alphas = 1.0 - betas
        alphas_cumprod = torch.cumprod(alphas, dim=0)

        # ᾱ is non-increasing, so the endpoints bound every step
        if alphas_cumprod.numel() == 0 or alphas_cumprod[0] >= 1.0:
            raise ValueError("betas[0] must be positive, otherwise 1 - ᾱ_1 = 0 and the posterior is undefined")
        if alphas_cumprod[-1] <= 0.0:
            raise ValueError("ᾱ_T must be positive, a β of 1 leaves no signal to recover x_0 from")

        # ᾱ_0 = 1: no corruption before the first step
        alphas_cumprod_prev = torch.cat([
            torch.ones(1, dtype=torch.float64),
            alphas_cumprod[:-1]
        ])

        sqrt_alphas_cumprod = torch.sqrt(alphas_cumprod)
        sqrt_one_minus_alphas_cumprod = torch.sqrt(1.0 - alphas_cumprod)
        sqrt_recip_alphas_cumprod = 1.0 / torch.sqrt(alphas_cumprod)
        sqrt_recipm1_alphas_cumprod = torch.sqrt(1.0 / alphas_cumprod - 1.0)

        # β̃_t = β_t (1 - ᾱ_{t-1}) / (1 - ᾱ_t)
        posterior_variance = betas * (1.0 - alphas_cumprod_prev) / (1.0 - alphas_cumprod)
        posterior_log_variance_clipped = torch.log(
            torch.clamp(posterior_variance, min=POSTERIOR_LOG_VARIANCE_FLOOR)
        )

        # μ̃_t(x_t, x_0) = coef1 * x_0 + coef2 * x_t
        posterior_mean_coef1 = betas * torch.sqrt(alphas_cumprod_prev) / (1.0 - alphas_cumprod)
        posterior_mean_coef2 = (
            (1.0 - alphas_cumprod_prev) * torch.sqrt(alphas) / (1.0 - alphas_cumprod)
        )

        def cast(buf: torch.Tensor) -> torch.Tensor:
            return buf.to(dtype=dtype, device=device)

        return cls(
            betas=cast(betas),
            alphas=cast(alphas),
            alphas_cumprod=cast(alphas_cumprod),
            alphas_cumprod_prev=cast(alphas_cumprod_prev),
            sqrt_alphas_cumprod=cast(sqrt_alphas_cumprod),
            sqrt_one_minus_alphas_cumprod=cast(sqrt_one_minus_alphas_cumprod),
            sqrt_recip_alphas_cumprod=cast(sqrt_recip_alphas_cumprod),
            sqrt_recipm1_alphas_cumprod=cast(sqrt_recipm1_alphas_cumprod),
            posterior_variance=cast(posterior_variance),
            posterior_log_variance_clipped=cast(posterior_log_variance_clipped),
            posterior_mean_coef1=cast(posterior_mean_coef1),
            posterior_mean_coef2=cast(posterior_mean_coef2),
        )

    @classmethod
    def names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @property
    def num_timesteps(self) -> int:
        return self.betas.shape[0]

    @property
    def buffers_size(self) -> int:
        """Total size in bytes of all sequences."""
        return sum(
            getattr(self, name).element_size() * getattr(self, name).nelement()
            for name in self.names()
        )


def _check_integer_timesteps(timesteps: torch.Tensor) -> None:
    # Empty sequences default to a float tensor and carry no values to truncate
    if timesteps.numel() == 0:
        return
    if timesteps.dtype == torch.bool or timesteps.is_floating_point() or timesteps.is_complex():
        raise TypeError(f"timesteps must be integers, got dtype {timesteps.dtype}")


def extract(buffer: torch.Tensor, timesteps: torch.Tensor, broadcast_shape: Sequence[int]) -> torch.Tensor:
    """
    Gather buffer[t] for each batch element and reshape for broadcasting.

    Args:
        buffer: Per-timestep values, shape (T,)
        timesteps: 1-indexed timesteps in [1, T], shape (B,)
        broadcast_shape: Shape of the tensor the result multiplies, (B, ...)

    Returns:
        Tensor of shape (B, 1, ..., 1) with len(broadcast_shape) dims

    Example:
        >>> buffer = torch.tensor([0.1, 0.2, 0.3, 0.4, 0.5])  # T=5
        >>> extract(buffer, torch.tensor([1, 3, 5]), (3, 2, 2)).flatten()
        tensor([0.1000, 0.3000, 0.5000])
    """
    num_timesteps = buffer.shape[0]
    _check_integer_timesteps(timesteps)
    timesteps = timesteps.to(device=buffer.device, dtype=torch.long)
    if timesteps.dim() != 1:
        raise ValueError(f"timesteps must be 1-D, got shape {tuple(timesteps.shape)}")
    if timesteps.numel() > 0 and (timesteps.min() < 1 or timesteps.max() > num_timesteps):
        raise IndexError(
            f"Timesteps must lie in [1, {num_timesteps}], got {timesteps.tolist()}"
        )

    batch_size = timesteps.shape[0]
    out = buffer.gather(0, timesteps - 1)
    return out.reshape(batch_size, *((1,) * (len(broadcast_shape) - 1)))


class GaussianDiffusion:
    """
    A Gaussian diffusion process with an injected noise-prediction model.

    The process is immutable once constructed. The only mutable state lives
    inside `denoise_fn` (e.g. the parameters of an nn.Module).

    Args:
        betas: β schedule, shape (T,), each value in [0, 1] with β_1 > 0 and ᾱ_T > 0
        data_shape: Shape of one sample, excluding the batch axis
        denoise_fn: Callable (x_t, timesteps) -> predicted noise, same shape as x_t
        dtype: Element type of every coefficient and sampled tensor
        device: Device holding the coefficients and sampled tensors
        clip_range: Bounds applied to x̂_0 when clip_denoised is set
    """

    def __init__(
        self,
        betas: Union[Sequence[float], torch.Tensor],
        data_shape: Sequence[int],
        denoise_fn: DenoiseFn,
        dtype: torch.dtype = torch.float32,
        device: Union[str, torch.device] = "cpu",
        clip_range: Tuple[float, float] = (-1.0, 1.0)
    ):
        betas = torch.as_tensor(betas, dtype=torch.float64)
        if betas.dim() != 1 or betas.numel() == 0:
            raise ValueError(f"betas must be a non-empty 1-D sequence, got shape {tuple(betas.shape)}")
        if not torch.all(torch.isfinite(betas)):
            raise ValueError("betas must be finite")
        if torch.any(betas < 0) or torch.any(betas > 1):
            raise ValueError(
                f"betas must lie in [0, 1], got min={betas.min().item():.6g} max={betas.max().item():.6g}"
            )

        data_shape = tuple(int(d) for d in data_shape)
        if len(data_shape) == 0 or any(d <= 0 for d in data_shape):
            raise ValueError(f"data_shape must be non-empty with positive sizes, got {data_shape}")

        if not callable(denoise_fn):
            raise ValueError(f"denoise_fn must be callable, got {type(denoise_fn).__name__}")

        if not dtype.is_floating_point:
            raise ValueError(f"dtype must be a floating point type, got {dtype}")

        clip_min, clip_max = (float(v) for v in clip_range)
        if clip_min >= clip_max:
            raise ValueError(f"clip_range must satisfy min < max, got {clip_range}")

        device = torch.device(device)
        coefficients = DiffusionCoefficients.from_betas(betas, dtype=dtype, device=device)

        self.__dict__.update(
            num_timesteps=coefficients.num_timesteps,
            data_shape=data_shape,
            denoise_fn=denoise_fn,
            dtype=dtype,
            device=device,
            clip_range=(clip_min, clip_max),
            coefficients=coefficients,
        )
        logger.debug("Created %r", self)

    def __setattr__(self, name, value):
        raise AttributeError(f"{type(self).__name__} is immutable, cannot set '{name}'")

    def __delattr__(self, name):
        raise AttributeError(f"{type(self).__name__} is immutable, cannot delete '{name}'")

    def __getattr__(self, name):
        # Coefficient sequences are readable directly, e.g. diffusion.alphas_cumprod
        coefficients = self.__dict__.get("coefficients")
        if coefficients is not None and name in DiffusionCoefficients.names():
            return getattr(coefficients, name)
        raise AttributeError(f"'{type(self).__name__}' object has no attribute '{name}'")

    def __repr__(self) -> str:
        return (
            f"GaussianDiffusion("
            f"num_timesteps={self.num_timesteps}"
            f", data_shape={self.data_shape}"
            f", dtype={self.dtype}"
            f", device={self.device}"
            f", denoise_fn={self.denoise_fn!r}"
            f", buffers_size={format_bytes(self.coefficients.buffers_size)}"
            f")"
        )

    def parameters(self) -> Iterator[nn.Parameter]:
        """Trainable parameters: those of the denoiser, if it has any."""
        if isinstance(self.denoise_fn, nn.Module):
            return self.denoise_fn.parameters()
        return iter(())

    def to(
        self,
        device: Optional[Union[str, torch.device]] = None,
        dtype: Optional[torch.dtype] = None
    ) -> "GaussianDiffusion":
        """Return a new process on another device/dtype. The denoiser is shared, not moved."""
        return GaussianDiffusion(
            self.coefficients.betas,
            self.data_shape,
            self.denoise_fn,
            dtype=dtype or self.dtype,
            device=device or self.device,
            clip_range=self.clip_range,
        )

    # ------------------------------------------------------------------
    # Shape and timestep helpers
    # ------------------------------------------------------------------

    def extract(self, name: str, timesteps: torch.Tensor, broadcast_shape: Sequence[int]) -> torch.Tensor:
        """Gather the coefficient sequence `name` at per-example timesteps."""
        if name not in DiffusionCoefficients.names():
            raise ValueError(f"Unknown coefficient: {name}")
        return extract(getattr(self.coefficients, name), timesteps, broadcast_shape)

    def timesteps_for(self, batch_size: int, t: int) -> torch.Tensor:
        """Uniform timestep vector of length batch_size."""
        return torch.full((batch_size,), int(t), dtype=torch.long, device=self.device)

    def as_timesteps(self, timesteps: Timesteps, batch_size: int) -> torch.Tensor:
        """Normalize an int, sequence or tensor to a (B,) long tensor on the process device."""
        if isinstance(timesteps, bool):
            raise TypeError("timesteps must be integers, got bool")
        if isinstance(timesteps, numbers.Integral):
            return self.timesteps_for(batch_size, int(timesteps))

        timesteps = torch.as_tensor(timesteps, device=self.device)
        _check_integer_timesteps(timesteps)
        if timesteps.dim() == 0:
            return self.timesteps_for(batch_size, int(timesteps))

        timesteps = timesteps.to(dtype=torch.long)
        if timesteps.dim() != 1 or timesteps.shape[0] != batch_size:
            raise ValueError(
                f"Expected {batch_size} timesteps (one per batch element), "
                f"got shape {tuple(timesteps.shape)}"
            )
        return timesteps

    def _check_sample(self, name: str, x: torch.Tensor) -> None:
        if tuple(x.shape[1:]) != self.data_shape:
            raise ValueError(
                f"{name} must have shape (B, {', '.join(map(str, self.data_shape))}), "
                f"got {tuple(x.shape)}"
            )

    @staticmethod
    def _check_same_shape(name: str, x: torch.Tensor, ref_name: str, ref: torch.Tensor) -> None:
        if x.shape != ref.shape:
            raise ValueError(
                f"{name} shape {tuple(x.shape)} does not match {ref_name} shape {tuple(ref.shape)}"
            )

    def _sample_shape(self, shape: Union[int, Sequence[int]]) -> Tuple[int, ...]:
        if isinstance(shape, numbers.Integral):
            return (int(shape), *self.data_shape)
        shape = tuple(int(d) for d in shape)
        if shape[1:] != self.data_shape:
            raise ValueError(
                f"shape must be (B, {', '.join(map(str, self.data_shape))}), got {shape}"
            )
        return shape

    def _randn(
        self,
        shape: Sequence[int],
        generator: Optional[torch.Generator] = None,
        like: Optional[torch.Tensor] = None
    ) -> torch.Tensor:
        dtype = like.dtype if like is not None else self.dtype
        device = like.device if like is not None else self.device
        return torch.randn(tuple(shape), generator=generator, dtype=dtype, device=device)

    # ------------------------------------------------------------------
    # Forward process
    # ------------------------------------------------------------------

    def q_sample(
        self,
        x_start: torch.Tensor,
        timesteps: Timesteps,
        noise: Optional[torch.Tensor] = None,
        generator: Optional[torch.Generator] = None
    ) -> torch.Tensor:
        """
        Forward process: sample x_t from q(x_t | x_0) in a single jump.
        x_t = √ᾱ_t * x_0 + √(1-ᾱ_t) * ε

        Args:
            x_start: Clean data x_0, shape (B, *data_shape)
            timesteps: Shape (B,) or a single int applied to every element
            noise: ε with the shape of x_start, drawn from N(0, I) if None
            generator: RNG used when noise is drawn here
        """
        self._check_sample("x_start", x_start)
        timesteps = self.as_timesteps(timesteps, x_start.shape[0])
        if noise is None:
            noise = self._randn(x_start.shape, generator, like=x_start)
        self._check_same_shape("noise", noise, "x_start", x_start)

        coeff1 = self.extract("sqrt_alphas_cumprod", timesteps, x_start.shape)
        coeff2 = self.extract("sqrt_one_minus_alphas_cumprod", timesteps, x_start.shape)
        return coeff1 * x_start + coeff2 * noise

    def q_posterior_mean_variance(
        self,
        x_start: torch.Tensor,
        x_t: torch.Tensor,
        timesteps: Timesteps
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Mean and variance of the posterior
        q(x_{t-1} | x_t, x_0) = q(x_t | x_{t-1}, x_0) q(x_{t-1} | x_0) / q(x_t | x_0).

        This is the Bayesian target of the reverse process when x_0 is known.
        The variance has shape (B, 1, ..., 1).
        """
        self._check_sample("x_t", x_t)
        self._check_same_shape("x_start", x_start, "x_t", x_t)
        timesteps = self.as_timesteps(timesteps, x_t.shape[0])

        coeff1 = self.extract("posterior_mean_coef1", timesteps, x_t.shape)
        coeff2 = self.extract("posterior_mean_coef2", timesteps, x_t.shape)
        posterior_mean = coeff1 * x_start + coeff2 * x_t
        posterior_variance = self.extract("posterior_variance", timesteps, x_t.shape)
        return posterior_mean, posterior_variance

    def q_posterior_mean_variance_log(
        self,
        x_start: torch.Tensor,
        x_t: torch.Tensor,
        timesteps: Timesteps
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Posterior mean, variance and clipped log variance."""
        posterior_mean, posterior_variance = self.q_posterior_mean_variance(x_start, x_t, timesteps)
        timesteps = self.as_timesteps(timesteps, x_t.shape[0])
        posterior_log_variance = self.extract("posterior_log_variance_clipped", timesteps, x_t.shape)
        return posterior_mean, posterior_variance, posterior_log_variance

    def predict_start_from_noise(
        self,
        x_t: torch.Tensor,
        timesteps: Timesteps,
        noise: torch.Tensor
    ) -> torch.Tensor:
        """
        Invert q(x_t | x_0) for x_0 given the noise.
        x̂_0 = x_t / √ᾱ_t - √(1/ᾱ_t - 1) * ε

        No clipping is applied here.
        """
        self._check_sample("x_t", x_t)
        self._check_same_shape("noise", noise, "x_t", x_t)
        timesteps = self.as_timesteps(timesteps, x_t.shape[0])

        coeff1 = self.extract("sqrt_recip_alphas_cumprod", timesteps, x_t.shape)
        coeff2 = self.extract("sqrt_recipm1_alphas_cumprod", timesteps, x_t.shape)
        return coeff1 * x_t - coeff2 * noise

    # ------------------------------------------------------------------
    # Reverse process
    # ------------------------------------------------------------------

    def denoise(self, x: torch.Tensor, timesteps: Timesteps) -> Tuple[torch.Tensor, torch.Tensor]:
        """Run the model and return (x̂_0, predicted noise)."""
        timesteps = self.as_timesteps(timesteps, x.shape[0])
        predicted_noise = self.denoise_fn(x, timesteps)
        if predicted_noise.shape != x.shape:
            raise ValueError(
                f"denoise_fn returned shape {tuple(predicted_noise.shape)}, "
                f"expected {tuple(x.shape)}"
            )
        x_start = self.predict_start_from_noise(x, timesteps, predicted_noise)
        return x_start, predicted_noise

    @torch.no_grad()
    def p_sample(
        self,
        x: torch.Tensor,
        timesteps: Timesteps,
        noise: Optional[torch.Tensor] = None,
        clip_denoised: bool = True,
        add_noise: bool = True,
        generator: Optional[torch.Generator] = None
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        One reverse step: sample x_{t-1} from p(x_{t-1} | x_t).

        Args:
            x: Current sample x_t, shape (B, *data_shape)
            timesteps: Shape (B,) or a single int
            noise: Fresh noise z, drawn from N(0, I) if None and add_noise is set
            clip_denoised: Clamp x̂_0 into clip_range before the posterior
            add_noise: Add √β̃_t * z. The caller turns it off at t=1.
            generator: RNG used when noise is drawn here

        Returns:
            Tuple of (x_{t-1}, x̂_0)
        """
        self._check_sample("x", x)
        timesteps = self.as_timesteps(timesteps, x.shape[0])

        x_start, _ = self.denoise(x, timesteps)
        if clip_denoised:
            x_start = torch.clamp(x_start, *self.clip_range)

        posterior_mean, posterior_variance = self.q_posterior_mean_variance(x_start, x, timesteps)
        x_prev = posterior_mean
        if add_noise:
            if noise is None:
                noise = self._randn(x.shape, generator, like=x)
            self._check_same_shape("noise", noise, "x", x)
            x_prev = x_prev + torch.sqrt(posterior_variance) * noise
        return x_prev, x_start

    @torch.no_grad()
    def p_sample_progressive(
        self,
        shape: Union[int, Sequence[int]],
        clip_denoised: bool = True,
        generator: Optional[torch.Generator] = None,
        progress: bool = False
    ) -> Iterator[Tuple[int, torch.Tensor, torch.Tensor]]:
        """
        Run the reverse process from x_T ~ N(0, I), yielding after every step.

        Yields (t, x_{t-1}, x̂_0) for t = T, ..., 1. Stopping iteration early
        truncates sampling.

        Args:
            shape: Full sample shape (B, *data_shape) or a batch size
        """
        shape = self._sample_shape(shape)
        x = self._randn(shape, generator)
        logger.debug("Sampling %s over %d steps", shape, self.num_timesteps)

        iterator = tqdm(
            range(self.num_timesteps, 0, -1),
            desc="DDPM Sampling",
            disable=not progress,
        )
        for t in iterator:
            timesteps = self.timesteps_for(shape[0], t)
            x, x_start = self.p_sample(
                x, timesteps,
                clip_denoised=clip_denoised,
                add_noise=(t != 1),
                generator=generator,
            )
            yield t, x, x_start
        logger.debug("Finished sampling %s", shape)

    @torch.no_grad()
    def p_sample_loop(
        self,
        shape: Union[int, Sequence[int]],
        clip_denoised: bool = True,
        generator: Optional[torch.Generator] = None,
        progress: bool = False
    ) -> torch.Tensor:
        """
        Generate samples by running all T reverse steps.

        Returns:
            Final samples x_0, shape (B, *data_shape)
        """
        x = None
        for _, x, _ in self.p_sample_progressive(shape, clip_denoised, generator, progress):
            pass
        return x

    @torch.no_grad()
    def p_sample_loop_all(
        self,
        shape: Union[int, Sequence[int]],
        clip_denoised: bool = True,
        generator: Optional[torch.Generator] = None,
        progress: bool = False
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Generate samples and keep the whole denoising trajectory.

        Returns:
            Tuple of (all_x, all_x_start), each of shape (B, *data_shape, T).
            Index i along the last axis holds the output of step t = T - i.
        """
        all_x = []
        all_x_start = []
        for _, x, x_start in self.p_sample_progressive(shape, clip_denoised, generator, progress):
            all_x.append(x)
            all_x_start.append(x_start)
        return torch.stack(all_x, dim=-1), torch.stack(all_x_start, dim=-1)
