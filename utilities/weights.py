"""
Weight Interchange
==================

Saves and loads generator weights as a pair of files sharing one stem:
- <stem>.json: topology {shape_name, iter_count, config}
- <stem>.pt: named tensors 'g-{i}' in flattened parameter order

Loading never reshapes. A file whose tensors do not match the configured
architecture is rejected with ValueError.
"""

import json
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union
import torch
from torch import Tensor

from models import IMLEModel
from .common import DEFAULT_CONFIG

# camelCase keys written by the browser lab -> config keys used here
LEGACY_CONFIG_KEYS = {
    'noiseSize': 'noise_size',
    'numGeneratorLayers': 'num_generator_layers',
    'numGeneratorNeurons': 'num_generator_neurons',
    'learningRate': 'learning_rate',
    'gLearningRate': 'learning_rate',
    'optimizerType': 'optimizer_type',
    'gOptimizerType': 'optimizer_type',
    'distanceType': 'distance_type',
    'kGSteps': 'k_g_steps',
    'sampleFactor': 'sample_factor',
    'noiseCoefficient': 'noise_coefficient',
    'epsilon': 'epsilon',
}

TOPOLOGY_CONFIG_KEYS = (
    'noise_size', 'num_generator_layers', 'num_generator_neurons', 'variant',
    'learning_rate', 'optimizer_type', 'distance_type', 'k_g_steps',
    'sample_factor', 'noise_coefficient', 'epsilon', 'batch_size', 'noise_type',
)


def _stem(path: Union[str, Path]) -> Path:
    path = Path(path)
    if path.suffix in ('.json', '.pt'):
        return path.with_suffix('')
    return path


def normalize_topology_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Map camelCase keys to config keys; unrecognised keys are dropped."""
    normalized = {}
    for key, value in config.items():
        if key in LEGACY_CONFIG_KEYS:
            normalized[LEGACY_CONFIG_KEYS[key]] = value
        elif key in DEFAULT_CONFIG:
            normalized[key] = value
    return normalized


def save_model(
    model: IMLEModel,
    path: Union[str, Path],
    shape_name: str,
    iter_count: int,
    k_g_steps: int,
    config: Optional[Dict[str, Any]] = None,
) -> Tuple[Path, Path]:
    """Write <stem>.json and <stem>.pt. Returns both paths.

    k_g_steps belongs to the training loop rather than the model.
    """
    stem = _stem(path)
    stem.parent.mkdir(parents=True, exist_ok=True)

    topology_config = {
        'noise_size': model.noise_size,
        'num_generator_layers': model.num_generator_layers,
        'num_generator_neurons': model.num_generator_neurons,
        'variant': model.generator.variant,
        'learning_rate': model.learning_rate,
        'optimizer_type': model.optimizer_type.value,
        'distance_type': model.distance_type.value,
        'sample_factor': model.sample_factor,
        'noise_coefficient': model.noise_coefficient,
        'epsilon': model.epsilon,
        'batch_size': model.batch_size,
        'k_g_steps': int(k_g_steps),
    }
    if config:
        for key in TOPOLOGY_CONFIG_KEYS:
            if key in config and key not in topology_config:
                topology_config[key] = config[key]

    topology = {
        'shape_name': shape_name,
        'iter_count': int(iter_count),
        'config': topology_config,
        'saved_at': time.strftime('%Y-%m-%d %H:%M:%S'),
    }

    json_path = stem.with_suffix('.json')
    weights_path = stem.with_suffix('.pt')
    with open(json_path, 'w') as f:
        json.dump(topology, f, indent=2)
    torch.save({k: v.cpu() for k, v in model.export_weights().items()}, weights_path)
    return json_path, weights_path


def load_weight_file(path: Union[str, Path]) -> Tuple[Dict[str, Any], Dict[str, Tensor]]:
    """Read (topology, named_tensors) from <stem>.json and <stem>.pt."""
    stem = _stem(path)
    with open(stem.with_suffix('.json')) as f:
        topology = json.load(f)
    named_tensors = torch.load(stem.with_suffix('.pt'), map_location='cpu')
    if not isinstance(named_tensors, dict):
        raise ValueError(f"Expected a mapping of named tensors in {stem.with_suffix('.pt')}.")
    topology['config'] = normalize_topology_config(topology.get('config', {}))
    return topology, named_tensors


def load_model(
    path: Union[str, Path],
    model: Optional[IMLEModel] = None,
) -> Tuple[IMLEModel, Dict[str, Any]]:
    """
    Load weights into `model`, or into a new model built from the file's config.

    Returns:
        (model, topology)
    """
    topology, named_tensors = load_weight_file(path)
    if model is None:
        config = dict(DEFAULT_CONFIG)
        config.update(topology['config'])
        model = IMLEModel.from_config(config)
    model.load_pretrained_weights(named_tensors)
    return model, topology
