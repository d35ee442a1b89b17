"""
Common Utilities
================

This module contains the configuration surface shared by the training loop,
the weight files and the command line script, plus small helpers for seeding
and device selection.
"""

from typing import Any, Dict, Optional
import random
import numpy as np
import torch


# Flat configuration - no nested dicts for easy parameter access
DEFAULT_CONFIG: Dict[str, Any] = {
    # Architecture
    "noise_size": 2,
    "num_generator_layers": 1,
    "num_generator_neurons": 14,
    "variant": "legacy",

    # RS-IMLE matching
    "batch_size": 150,
    "sample_factor": 1,
    "noise_coefficient": 0.001,
    "distance_type": "L2",
    "epsilon": 0.0,
    "rematch_each_step": False,
    "fixed_latent_pool": False,

    # Optimisation
    "optimizer_type": "Adam",
    "learning_rate": 0.05,
    "k_g_steps": 1,
    "max_iterations": 999999,

    # Data
    "shape_name": "line",
    "noise_type": "uniform",
    "atlas_size": 12000,

    # Run settings
    "eval_interval": 50,
    "seed": None,
    "device": "cpu",
}

# Inclusive (low, high) bounds; None means unbounded on that side.
CONFIG_BOUNDS = {
    "noise_size": (1, None),
    "num_generator_layers": (0, 5),
    "num_generator_neurons": (1, 100),
    "batch_size": (1, None),
    "sample_factor": (1, None),
    "noise_coefficient": (0.0, None),
    "epsilon": (0.0, None),
    "k_g_steps": (0, 10),
    "max_iterations": (1, None),
    "atlas_size": (1, None),
    "eval_interval": (1, None),
}


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Check numeric ranges. Unknown metric/optimizer names are left alone."""
    for key, (low, high) in CONFIG_BOUNDS.items():
        if key not in config:
            continue
        value = config[key]
        if low is not None and value < low:
            raise ValueError(f"{key}={value} is below the minimum of {low}.")
        if high is not None and value > high:
            raise ValueError(f"{key}={value} is above the maximum of {high}.")

    if config.get("learning_rate", 1.0) <= 0:
        raise ValueError(f"learning_rate must be positive, got {config['learning_rate']}.")
    if config.get("atlas_size", 0) and config.get("batch_size", 0) > config["atlas_size"]:
        raise ValueError("batch_size cannot exceed atlas_size.")
    return config


def make_config(overrides: Optional[Dict[str, Any]] = None, **kwargs) -> Dict[str, Any]:
    """Return DEFAULT_CONFIG updated with overrides, validated."""
    config = dict(DEFAULT_CONFIG)
    if overrides:
        config.update(overrides)
    config.update(kwargs)
    return validate_config(config)


def set_seed(seed: Optional[int]) -> None:
    """Seed torch, numpy and random. No-op for None."""
    if seed is None:
        return
    torch.manual_seed(seed)
    np.random.seed(seed)
    random.seed(seed)


def resolve_device(device: str = "auto") -> str:
    if device == "auto":
        return "cuda" if torch.cuda.is_available() else "cpu"
    return device
