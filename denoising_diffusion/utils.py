"""
Utility functions: seeding, device and dtype resolution, config loading, logging
"""

import logging
import os
import random
from pathlib import Path
from typing import Optional, Union

import numpy as np
import torch
import torch.nn as nn
from omegaconf import DictConfig, OmegaConf
from rich.console import Console

console = Console()

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

_console_handler: Optional[logging.Handler] = None

DTYPES = {
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
    "float32": torch.float32,
    "float64": torch.float64,
}


def set_seed(seed: int = 42) -> None:
    """Set random seed for reproducibility"""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed(seed)
        torch.cuda.manual_seed_all(seed)
    torch.backends.cudnn.deterministic = True
    torch.backends.cudnn.benchmark = False
    logger.debug("Set seed to %d", seed)


def get_device(device_name: Optional[str] = None) -> torch.device:
    """Get appropriate device (CPU/CUDA/MPS)"""
    if device_name is not None and device_name != "auto":
        if device_name.startswith("cuda") and not torch.cuda.is_available():
            logger.warning("CUDA requested but not available, falling back to CPU")
            return torch.device("cpu")
        return torch.device(device_name)

    if torch.cuda.is_available():
        return torch.device("cuda")
    elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    else:
        return torch.device("cpu")


def resolve_dtype(dtype: Union[str, torch.dtype]) -> torch.dtype:
    """Map a dtype name such as 'float32' to the torch dtype."""
    if isinstance(dtype, torch.dtype):
        return dtype
    name = str(dtype).replace("torch.", "")
    if name not in DTYPES:
        raise ValueError(f"Unknown dtype: {dtype}. Available: {sorted(DTYPES)}")
    return DTYPES[name]


def count_parameters(model: nn.Module) -> int:
    """Count trainable parameters"""
    return sum(p.numel() for p in model.parameters() if p.requires_grad)


def format_bytes(num_bytes: int) -> str:
    """Human readable byte count, e.g. '46.875 KiB'."""
    value = float(num_bytes)
    for unit in ("bytes", "KiB", "MiB", "GiB"):
        if value < 1024.0 or unit == "GiB":
            break
        value /= 1024.0
    if unit == "bytes":
        return f"{int(value)} bytes"
    return f"{value:.3f} {unit}"


def setup_logging(level: Union[str, int] = "INFO") -> logging.Handler:
    """Install a console handler on the root logger, replacing one installed earlier."""
    global _console_handler

    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        level = resolved

    root = logging.getLogger()
    root.setLevel(level)

    if _console_handler is not None:
        root.removeHandler(_console_handler)

    _console_handler = logging.StreamHandler()
    _console_handler.setLevel(level)
    _console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(_console_handler)
    return _console_handler


def load_config(config_path: Union[str, Path]) -> DictConfig:
    """Load YAML configuration file"""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    config = OmegaConf.load(config_path)
    logger.debug("Loaded config from %s", config_path)
    return config
