"""
Test suite for the reverse process: single steps and full sampling loops
"""

import math

import pytest
import torch
import torch.nn as nn

from denoising_diffusion.diffusion import GaussianDiffusion
from denoising_diffusion.models import ConditionalMLP


class CountingDenoiser:
    """Zero-noise denoiser that records the timesteps it was called with"""

    def __init__(self):
        self.calls = []

    def __call__(self, x, t):
        self.calls.append(t.clone())
        return torch.zeros_like(x)


@pytest.fixture
def two_step_diffusion(zero_noise_fn):
    """β = [0.5, 0.5]: ᾱ = [0.5, 0.25], β̃ = [0, 1/3]"""
    return GaussianDiffusion([0.5, 0.5], (1,), zero_noise_fn, dtype=torch.float64)


class TestPSample:
    """Test one reverse step"""

    def test_clips_predicted_start(self, small_diffusion):
        x = torch.full((2, 2, 3), 5.0, dtype=torch.float64)

        x_prev, x_start = small_diffusion.p_sample(x, 3, add_noise=False)

        assert torch.allclose(x_start, torch.ones_like(x_start))
        coef1 = 0.3 * math.sqrt(0.72) / 0.496
        coef2 = 0.28 * math.sqrt(0.7) / 0.496
        assert torch.allclose(x_prev, torch.full_like(x_prev, coef1 * 1.0 + coef2 * 5.0))

    def test_custom_clip_range(self, small_betas, zero_noise_fn):
        d = GaussianDiffusion(small_betas, (2, 3), zero_noise_fn, dtype=torch.float64, clip_range=(-0.5, 0.5))
        x = torch.full((1, 2, 3), -5.0, dtype=torch.float64)

        _, x_start = d.p_sample(x, 2, add_noise=False)

        assert torch.allclose(x_start, torch.full_like(x_start, -0.5))

    def test_without_clipping(self, small_diffusion):
        x = torch.full((1, 2, 3), 5.0, dtype=torch.float64)

        _, x_start = small_diffusion.p_sample(x, 3, clip_denoised=False, add_noise=False)

        assert torch.allclose(x_start, torch.full_like(x_start, 5.0 / math.sqrt(0.504)))

    def test_explicit_noise(self, small_diffusion):
        x = torch.randn(2, 2, 3, dtype=torch.float64) * 0.1
        noise = torch.randn_like(x)
        t = torch.tensor([2, 3])

        mean, _ = small_diffusion.p_sample(x, t, add_noise=False)
        x_prev, _ = small_diffusion.p_sample(x, t, noise=noise)

        variance = small_diffusion.posterior_variance[t - 1].reshape(2, 1, 1)
        assert torch.allclose(x_prev, mean + torch.sqrt(variance) * noise)

    def test_add_noise_false_ignores_noise(self, small_diffusion):
        x = torch.randn(2, 2, 3, dtype=torch.float64)

        first, _ = small_diffusion.p_sample(x, 2, add_noise=False)
        second, _ = small_diffusion.p_sample(x, 2, noise=torch.randn_like(x), add_noise=False)

        assert torch.equal(first, second)

    def test_first_step_is_posterior_mean(self, small_diffusion):
        """At t=1 the posterior has zero variance and its mean is x̂_0"""
        x = torch.randn(2, 2, 3, dtype=torch.float64) * 0.1

        x_prev, x_start = small_diffusion.p_sample(x, 1, noise=torch.randn_like(x))

        assert torch.allclose(x_prev, x_start, atol=1e-12)

    def test_drawn_noise_uses_generator(self, small_diffusion):
        x = torch.randn(2, 2, 3, dtype=torch.float64)

        first, _ = small_diffusion.p_sample(x, 3, generator=torch.Generator().manual_seed(7))
        second, _ = small_diffusion.p_sample(x, 3, generator=torch.Generator().manual_seed(7))

        assert first.dtype == torch.float64
        assert torch.equal(first, second)

    def test_rejects_wrong_model_output(self, small_betas):
        d = GaussianDiffusion(small_betas, (2, 3), lambda x, t: x[:, :1], dtype=torch.float64)
        with pytest.raises(ValueError, match="denoise_fn returned shape"):
            d.p_sample(torch.randn(2, 2, 3, dtype=torch.float64), 2)

    def test_rejects_timestep_count_mismatch(self, small_diffusion):
        with pytest.raises(ValueError):
            small_diffusion.p_sample(torch.randn(3, 2, 3, dtype=torch.float64), torch.tensor([1, 2]))

    def test_rejects_noise_shape_mismatch(self, small_diffusion):
        x = torch.randn(2, 2, 3, dtype=torch.float64)
        with pytest.raises(ValueError):
            small_diffusion.p_sample(x, 2, noise=torch.randn(2, 6, dtype=torch.float64))

    def test_denoiser_receives_timesteps(self, small_betas):
        denoiser = CountingDenoiser()
        d = GaussianDiffusion(small_betas, (2, 3), denoiser, dtype=torch.float64)

        d.p_sample(torch.zeros(4, 2, 3, dtype=torch.float64), 2, add_noise=False)

        assert len(denoiser.calls) == 1
        assert denoiser.calls[0].dtype == torch.long
        assert denoiser.calls[0].tolist() == [2, 2, 2, 2]

    def test_no_gradient_tracking(self):
        model = ConditionalMLP((2,), num_timesteps=3, hidden_dim=8, num_layers=1)
        d = GaussianDiffusion([0.1, 0.2, 0.3], (2,), model)

        x_prev, x_start = d.p_sample(torch.randn(4, 2), 3)

        assert not x_prev.requires_grad
        assert not x_start.requires_grad


class TestSamplingLoop:
    """Test p_sample_loop, p_sample_loop_all and p_sample_progressive"""

    def test_output_shape_and_dtype(self, image_diffusion):
        samples = image_diffusion.p_sample_loop((2, 3, 8, 8), generator=torch.Generator().manual_seed(0))

        assert samples.shape == (2, 3, 8, 8)
        assert samples.dtype == torch.float32
        assert torch.all(torch.isfinite(samples))

    def test_batch_size_shorthand(self, image_diffusion):
        samples = image_diffusion.p_sample_loop(3)
        assert samples.shape == (3, 3, 8, 8)

    def test_rejects_wrong_sample_shape(self, image_diffusion):
        with pytest.raises(ValueError):
            image_diffusion.p_sample_loop((2, 8, 8, 3))

    def test_reproducible_with_generator(self, image_diffusion):
        first = image_diffusion.p_sample_loop(2, generator=torch.Generator().manual_seed(123))
        second = image_diffusion.p_sample_loop(2, generator=torch.Generator().manual_seed(123))
        other = image_diffusion.p_sample_loop(2, generator=torch.Generator().manual_seed(124))

        assert torch.equal(first, second)
        assert not torch.equal(first, other)

    def test_visits_every_timestep_in_reverse(self, small_betas):
        denoiser = CountingDenoiser()
        d = GaussianDiffusion(small_betas, (2, 3), denoiser, dtype=torch.float64)

        d.p_sample_loop(2)

        assert [calls.tolist() for calls in denoiser.calls] == [[3, 3], [2, 2], [1, 1]]

    def test_two_step_closed_form(self, two_step_diffusion):
        """Without clipping the two steps compose to x_0 = 2 x_T + √(2/3) z"""
        generator = torch.Generator().manual_seed(2024)
        samples = two_step_diffusion.p_sample_loop(1, clip_denoised=False, generator=generator)

        # Same draws in the same order: x_T, then z at t=2. No noise at t=1.
        reference = torch.Generator().manual_seed(2024)
        x_T = torch.randn((1, 1), generator=reference, dtype=torch.float64)
        z = torch.randn((1, 1), generator=reference, dtype=torch.float64)

        assert torch.allclose(samples, 2.0 * x_T + math.sqrt(2.0 / 3.0) * z)

    def test_two_step_manual_chain(self, two_step_diffusion):
        x = torch.ones(1, 1, dtype=torch.float64)

        # Unclipped: t=2 gives √2 with zero noise, t=1 returns x̂_0 = √2 * √2
        x1, _ = two_step_diffusion.p_sample(x, 2, noise=torch.zeros_like(x), clip_denoised=False)
        assert x1.item() == pytest.approx(math.sqrt(2.0))
        x0, _ = two_step_diffusion.p_sample(x1, 1, clip_denoised=False, add_noise=False)
        assert x0.item() == pytest.approx(2.0)

        # Clipped: x̂_0 is held at 1 on both steps
        x1, _ = two_step_diffusion.p_sample(x, 2, noise=torch.zeros_like(x))
        assert x1.item() == pytest.approx(2.0 * math.sqrt(2.0) / 3.0)
        x0, _ = two_step_diffusion.p_sample(x1, 1, add_noise=False)
        assert x0.item() == pytest.approx(1.0)

    def test_trajectory_shapes(self, image_diffusion):
        all_x, all_x_start = image_diffusion.p_sample_loop_all(2, generator=torch.Generator().manual_seed(0))

        assert all_x.shape == (2, 3, 8, 8, 20)
        assert all_x_start.shape == (2, 3, 8, 8, 20)

    def test_trajectory_matches_loop(self, image_diffusion):
        all_x, all_x_start = image_diffusion.p_sample_loop_all(2, generator=torch.Generator().manual_seed(5))
        samples = image_diffusion.p_sample_loop(2, generator=torch.Generator().manual_seed(5))

        assert torch.equal(all_x[..., -1], samples)
        # Clipped predictions stay inside the clip range
        assert all_x_start.min().item() >= -1.0
        assert all_x_start.max().item() <= 1.0

    def test_trajectory_first_entry_is_first_step(self, two_step_diffusion):
        all_x, all_x_start = two_step_diffusion.p_sample_loop_all(
            1, clip_denoised=False, generator=torch.Generator().manual_seed(9)
        )

        reference = torch.Generator().manual_seed(9)
        x_T = torch.randn((1, 1), generator=reference, dtype=torch.float64)
        z = torch.randn((1, 1), generator=reference, dtype=torch.float64)

        assert torch.allclose(all_x[..., 0], math.sqrt(2.0) * x_T + math.sqrt(1.0 / 3.0) * z)
        assert torch.allclose(all_x_start[..., 0], 2.0 * x_T)
        # At t=1 the sample equals its prediction
        assert torch.allclose(all_x[..., 1], all_x_start[..., 1])

    def test_progressive_can_stop_early(self, small_betas):
        denoiser = CountingDenoiser()
        d = GaussianDiffusion(small_betas, (2, 3), denoiser, dtype=torch.float64)

        steps = []
        for t, x, x_start in d.p_sample_progressive(2):
            steps.append(t)
            assert x.shape == (2, 2, 3)
            assert x_start.shape == (2, 2, 3)
            if t == 2:
                break

        assert steps == [3, 2]
        assert len(denoiser.calls) == 2

    def test_module_denoiser(self):
        model = ConditionalMLP((2,), num_timesteps=10, hidden_dim=16, num_layers=2)
        model.eval()
        d = GaussianDiffusion(torch.linspace(0.01, 0.2, 10), (2,), model)

        samples = d.p_sample_loop(8, generator=torch.Generator().manual_seed(0))

        assert samples.shape == (8, 2)
        assert isinstance(d.denoise_fn, nn.Module)
        assert all(p.grad is None for p in model.parameters())
