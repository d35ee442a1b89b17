"""
Utilities Package for RS-IMLE
=============================

This package contains utility modules for the RS-IMLE lab:
- common: Configuration defaults, validation, seeding and device helpers
- data_generation: Toy target distributions, noise atlases and input providers
- training: Training step state machine and training loops
- validation: Grid-density KL/JS evaluation
- weights: Weight interchange (save/load)
"""

from .common import DEFAULT_CONFIG, make_config, validate_config, set_seed, resolve_device
from .data_generation import (
    InputProvider,
    build_providers,
    generate_noise_atlas,
    generate_true_atlas,
    latent_pool,
)
from .training import TrainingState, TrainingStep, iterate_training, train_imle
from .validation import GridDensityEvaluator, evaluate_generator, grid_density
from .weights import save_model, load_model, load_weight_file

__all__ = [
    'DEFAULT_CONFIG', 'make_config', 'validate_config', 'set_seed', 'resolve_device',
    'InputProvider', 'build_providers', 'generate_noise_atlas', 'generate_true_atlas', 'latent_pool',
    'TrainingState', 'TrainingStep', 'iterate_training', 'train_imle',
    'GridDensityEvaluator', 'evaluate_generator', 'grid_density',
    'save_model', 'load_model', 'load_weight_file',
]
