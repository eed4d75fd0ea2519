"""
Command-line interface for inspecting schedules and sampling from a DDPM.
"""

import argparse
import sys
from pathlib import Path
from typing import Callable, List, Optional, Union

import torch
import torch.nn as nn
from omegaconf import DictConfig, OmegaConf
from rich.console import Console
from rich.table import Table

from . import __version__
from .diffusion import GaussianDiffusion
from .models import ConditionalMLP
from .schedules import get_beta_schedule
from .utils import console, count_parameters, get_device, load_config, resolve_dtype, set_seed, setup_logging

DEFAULT_CONFIG = Path(__file__).resolve().parent / "configs" / "default.yaml"


def build_config(config_path: Optional[str] = None, overrides: Optional[List[str]] = None) -> DictConfig:
    """Load the packaged defaults, then merge an optional YAML file and dotlist overrides."""
    config = load_config(DEFAULT_CONFIG)
    if config_path is not None:
        config = OmegaConf.merge(config, load_config(config_path))
    if overrides:
        config = OmegaConf.merge(config, OmegaConf.from_dotlist(overrides))
    return config


def create_betas_from_config(config: DictConfig) -> torch.Tensor:
    """Build the β schedule from the diffusion section"""
    diffusion_config = config.diffusion
    schedule = diffusion_config.schedule
    num_timesteps = diffusion_config.num_timesteps

    if schedule == "linear":
        return get_beta_schedule(
            schedule, num_timesteps,
            beta_start=diffusion_config.get("beta_start", 0.0001),
            beta_end=diffusion_config.get("beta_end", 0.02),
        )
    elif schedule == "cosine":
        return get_beta_schedule(schedule, num_timesteps, s=diffusion_config.get("cosine_s", 0.008))
    return get_beta_schedule(schedule, num_timesteps)


def create_model_from_config(config: DictConfig) -> nn.Module:
    """Create the reference denoiser from configuration"""
    model_config = config.model
    return ConditionalMLP(
        data_shape=list(model_config.data_shape),
        num_timesteps=config.diffusion.num_timesteps,
        hidden_dim=model_config.hidden_dim,
        num_layers=model_config.num_layers,
        activation=model_config.get("activation", "silu"),
    )


def create_diffusion_from_config(
    config: DictConfig,
    denoise_fn: Callable[[torch.Tensor, torch.Tensor], torch.Tensor],
    device: Union[str, torch.device] = "cpu"
) -> GaussianDiffusion:
    """Create the diffusion process from configuration"""
    diffusion_config = config.diffusion
    return GaussianDiffusion(
        create_betas_from_config(config),
        data_shape=list(config.model.data_shape),
        denoise_fn=denoise_fn,
        dtype=resolve_dtype(diffusion_config.get("dtype", "float32")),
        device=device,
        clip_range=(diffusion_config.get("clip_min", -1.0), diffusion_config.get("clip_max", 1.0)),
    )


def _apply_args(config: DictConfig, args: argparse.Namespace) -> DictConfig:
    """Override config with command line arguments"""
    if getattr(args, "device", None) is not None:
        config.device = args.device
    if getattr(args, "seed", None) is not None:
        config.seed = args.seed
    if getattr(args, "num_timesteps", None) is not None:
        config.diffusion.num_timesteps = args.num_timesteps
    if getattr(args, "schedule", None) is not None:
        config.diffusion.schedule = args.schedule
    if getattr(args, "batch_size", None) is not None:
        config.sampling.batch_size = args.batch_size
    return config


def _setup(args: argparse.Namespace):
    config = _apply_args(build_config(args.config, args.override), args)
    setup_logging(config.get("log_level", "INFO"))
    set_seed(config.seed)
    device = get_device(config.device)
    model = create_model_from_config(config).to(device)
    model.eval()
    diffusion = create_diffusion_from_config(config, model, device)
    return config, device, model, diffusion


def cmd_info(args: argparse.Namespace, out: Console = console) -> None:
    """Show the version and the configured process."""
    config, device, model, diffusion = _setup(args)
    out.print(f"[bold]denoising-diffusion[/bold] version {__version__}")
    out.print(f"Device: {device}")
    out.print(f"Model parameters: {count_parameters(model):,}")
    out.print(repr(diffusion))


def cmd_schedule(args: argparse.Namespace, out: Console = console) -> None:
    """Print selected coefficients of the configured schedule."""
    config, device, model, diffusion = _setup(args)
    num_timesteps = diffusion.num_timesteps

    if args.timesteps:
        timesteps = sorted(set(args.timesteps))
    else:
        count = min(args.num_rows, num_timesteps)
        timesteps = sorted({
            round(1 + i * (num_timesteps - 1) / max(count - 1, 1)) for i in range(count)
        })

    table = Table(title=f"{config.diffusion.schedule} schedule (T={num_timesteps})")
    table.add_column("t", style="cyan", justify="right")
    columns = [
        ("β", "betas"),
        ("ᾱ", "alphas_cumprod"),
        ("√ᾱ", "sqrt_alphas_cumprod"),
        ("√(1-ᾱ)", "sqrt_one_minus_alphas_cumprod"),
        ("β̃", "posterior_variance"),
        ("log β̃", "posterior_log_variance_clipped"),
    ]
    for title, _ in columns:
        table.add_column(title, style="green", justify="right")

    t = torch.tensor(timesteps, dtype=torch.long, device=diffusion.device)
    values = [diffusion.extract(name, t, (len(timesteps),)).flatten().tolist() for _, name in columns]
    for row, step in enumerate(timesteps):
        table.add_row(str(step), *(f"{column[row]:.6g}" for column in values))

    out.print(table)


def cmd_sample(args: argparse.Namespace, out: Console = console) -> None:
    """Sample from the reference denoiser and print summary statistics."""
    config, device, model, diffusion = _setup(args)
    sampling_config = config.sampling
    batch_size = sampling_config.batch_size

    generator = torch.Generator(device=diffusion.device).manual_seed(config.seed)
    out.print(f"[bold blue]Sampling {batch_size} examples over {diffusion.num_timesteps} steps[/bold blue]")

    if args.trajectory:
        all_x, all_x_start = diffusion.p_sample_loop_all(
            batch_size,
            clip_denoised=sampling_config.clip_denoised,
            generator=generator,
            progress=sampling_config.progress,
        )
        samples = all_x[..., -1]

        table = Table(title="Denoising trajectory")
        table.add_column("t", style="cyan", justify="right")
        table.add_column("x mean", style="green", justify="right")
        table.add_column("x std", style="green", justify="right")
        table.add_column("x̂₀ mean", style="green", justify="right")
        table.add_column("x̂₀ std", style="green", justify="right")
        num_steps = all_x.shape[-1]
        stride = max(1, num_steps // args.num_rows)
        for i in sorted(set(range(0, num_steps, stride)) | {num_steps - 1}):
            x, x_start = all_x[..., i], all_x_start[..., i]
            table.add_row(
                str(diffusion.num_timesteps - i),
                f"{x.mean().item():.4f}", f"{x.std().item():.4f}",
                f"{x_start.mean().item():.4f}", f"{x_start.std().item():.4f}",
            )
        out.print(table)
    else:
        samples = diffusion.p_sample_loop(
            batch_size,
            clip_denoised=sampling_config.clip_denoised,
            generator=generator,
            progress=sampling_config.progress,
        )

    table = Table(title="Samples")
    table.add_column("Statistic", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("shape", str(tuple(samples.shape)))
    table.add_row("mean", f"{samples.mean().item():.4f}")
    table.add_row("std", f"{samples.std().item():.4f}")
    table.add_row("min", f"{samples.min().item():.4f}")
    table.add_row("max", f"{samples.max().item():.4f}")
    out.print(table)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="denoising-diffusion",
        description="Inspect DDPM schedules and sample from a diffusion process",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=str, default=None, help="Path to a YAML config")
    common.add_argument("--device", type=str, default=None, help="Device (cpu, cuda, mps, auto)")
    common.add_argument("--seed", type=int, default=None, help="Random seed")
    common.add_argument("--num-timesteps", type=int, default=None, help="Number of diffusion steps T")
    common.add_argument("--schedule", type=str, choices=["linear", "cosine"], default=None,
                        help="β schedule")
    common.add_argument("--override", type=str, nargs="*", default=None,
                        help="Config overrides in dotlist form, e.g. model.hidden_dim=128")

    subparsers = parser.add_subparsers(dest="command", required=True)

    info_parser = subparsers.add_parser("info", parents=[common], help="Show the configured process")
    info_parser.set_defaults(func=cmd_info)

    schedule_parser = subparsers.add_parser("schedule", parents=[common], help="Print schedule coefficients")
    schedule_parser.add_argument("--timesteps", type=int, nargs="*", default=None,
                                 help="Timesteps in [1, T] to show")
    schedule_parser.add_argument("--num-rows", type=int, default=10,
                                 help="Number of evenly spaced timesteps when --timesteps is not given")
    schedule_parser.set_defaults(func=cmd_schedule)

    sample_parser = subparsers.add_parser("sample", parents=[common], help="Run the reverse process")
    sample_parser.add_argument("--batch-size", type=int, default=None, help="Number of samples")
    sample_parser.add_argument("--trajectory", action="store_true",
                               help="Keep every step and report trajectory statistics")
    sample_parser.add_argument("--num-rows", type=int, default=10,
                               help="Number of trajectory rows to print")
    sample_parser.set_defaults(func=cmd_sample)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        args.func(args)
    except Exception as e:
        console.print(f"[bold red]{args.command} failed: {e}[/bold red]")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
