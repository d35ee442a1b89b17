"""
Neural Models for RS-IMLE
=========================

This module contains the generator network and the model facade that ties the
generator to the matching, loss and optimizer components for one configuration.

Key Components:
- GeneratorLayer: one affine layer record owning a weight [fan_in, fan_out] and a bias [fan_out]
- GeneratorNetwork: feed-forward map from latent vectors to 2-D points
- IMLEModel: generator + RS-IMLE matcher + reconstruction loss + optimizer
"""

import math
from typing import Dict, List, Optional, Tuple, Union
import torch
import torch.nn.functional as F
from torch import nn, Tensor

from matching import DistanceType, NearestNeighbourMatcher
from losses import IMLELosses
from optimizers import OptimizerAdapter, OptimizerType

OUTPUT_DIM = 2
LEAKY_RELU_SLOPE = 0.01

# preset -> (init_scheme, activation, output_activation)
GENERATOR_VARIANTS = {
    'legacy': ('legacy', 'relu', 'tanh'),
    'refined': ('glorot', 'leaky_relu', 'shifted_tanh'),
}

OUTPUT_RANGES = {
    'tanh': (-1.0, 1.0),
    'shifted_tanh': (-0.5, 1.5),
}


def init_std(fan_in: int, fan_out: int, scheme: str) -> float:
    """Standard deviation of the normal weight initialisation."""
    if scheme == 'legacy':
        return 1.0 / math.sqrt(fan_in)
    if scheme == 'glorot':
        return math.sqrt(2.0 / (fan_in + fan_out))
    raise ValueError(f"Unknown init scheme: {scheme}")


# ============================================================================
# Generator Network
# ============================================================================

class GeneratorLayer(nn.Module):
    """Affine layer y = x @ W + b with W stored as [fan_in, fan_out]."""

    def __init__(self, fan_in: int, fan_out: int, init_scheme: str = 'legacy'):
        super().__init__()
        std = init_std(fan_in, fan_out, init_scheme)
        self.weight = nn.Parameter(torch.randn(fan_in, fan_out) * std)
        self.bias = nn.Parameter(torch.zeros(fan_out))

    @property
    def fan_in(self) -> int:
        return self.weight.shape[0]

    @property
    def fan_out(self) -> int:
        return self.weight.shape[1]

    def forward(self, x: Tensor) -> Tensor:
        if x.shape[-1] != self.fan_in:
            raise ValueError(
                f"Input width {x.shape[-1]} does not match layer fan-in {self.fan_in}. "
                "Reinitialize the generator after changing the architecture."
            )
        return x @ self.weight + self.bias


class GeneratorNetwork(nn.Module):
    """
    Feed-forward generator mapping latent vectors to 2-D points.

    Layer 0 maps noise_size -> hidden_width, num_layers hidden layers map
    hidden_width -> hidden_width and the last layer maps hidden_width -> 2.
    Hidden layers use relu or leaky relu; the last layer squashes with tanh,
    or tanh shifted by +0.5 in the refined variant.
    """

    def __init__(
        self,
        noise_size: int,
        num_layers: int,
        hidden_width: int,
        variant: str = 'legacy',
        init_scheme: Optional[str] = None,
        activation: Optional[str] = None,
        output_activation: Optional[str] = None,
    ):
        super().__init__()
        if variant not in GENERATOR_VARIANTS:
            raise ValueError(f"Unknown generator variant: {variant}")
        default_init, default_act, default_out = GENERATOR_VARIANTS[variant]

        self.variant = variant
        self.init_scheme = init_scheme or default_init
        self.activation = activation or default_act
        self.output_activation = output_activation or default_out

        if self.activation not in ('relu', 'leaky_relu'):
            raise ValueError(f"Unknown activation: {self.activation}")
        if self.output_activation not in OUTPUT_RANGES:
            raise ValueError(f"Unknown output activation: {self.output_activation}")

        self.layers = nn.ModuleList()
        self.initialize(noise_size, num_layers, hidden_width)

    def initialize(self, noise_size: int, num_layers: int, hidden_width: int) -> None:
        """Allocate fresh parameters, dropping the previous layers."""
        if noise_size < 1:
            raise ValueError(f"noise_size must be >= 1, got {noise_size}.")
        if num_layers < 0:
            raise ValueError(f"num_layers must be >= 0, got {num_layers}.")
        if hidden_width < 1:
            raise ValueError(f"hidden_width must be >= 1, got {hidden_width}.")

        self.noise_size = noise_size
        self.num_layers = num_layers
        self.hidden_width = hidden_width

        device = self.layers[0].weight.device if len(self.layers) > 0 else None

        layers = [GeneratorLayer(noise_size, hidden_width, self.init_scheme)]
        for _ in range(num_layers):
            layers.append(GeneratorLayer(hidden_width, hidden_width, self.init_scheme))
        layers.append(GeneratorLayer(hidden_width, OUTPUT_DIM, self.init_scheme))

        # Replacing the ModuleList releases the old parameters
        self.layers = nn.ModuleList(layers)
        if device is not None:
            self.layers.to(device)

    @property
    def output_range(self) -> Tuple[float, float]:
        return OUTPUT_RANGES[self.output_activation]

    def parameter_list(self) -> List[nn.Parameter]:
        """Flattened [w0, b0, w1, b1, ...] in interchange order."""
        params = []
        for layer in self.layers:
            params.extend([layer.weight, layer.bias])
        return params

    def _hidden_activation(self, h: Tensor) -> Tensor:
        if self.activation == 'leaky_relu':
            return F.leaky_relu(h, negative_slope=LEAKY_RELU_SLOPE)
        return F.relu(h)

    def _output_activation(self, h: Tensor) -> Tensor:
        if self.output_activation == 'shifted_tanh':
            return torch.tanh(h) + 0.5
        return torch.tanh(h)

    def forward(self, latents: Tensor) -> Tensor:
        if latents.dim() != 2:
            raise ValueError(f"Expected latents of shape [N, {self.noise_size}], got {tuple(latents.shape)}.")

        h = latents
        for layer in self.layers[:-1]:
            h = self._hidden_activation(layer(h))
        return self._output_activation(self.layers[-1](h))

    # --- Weight interchange ---

    def export_weights(self) -> Dict[str, Tensor]:
        """Named mapping 'g-{i}' -> detached copy of the i-th flattened parameter."""
        return {f"g-{i}": p.detach().clone() for i, p in enumerate(self.parameter_list())}

    def load_weights(self, named_tensors: Dict[str, Tensor]) -> None:
        """
        Assign every parameter from 'g-{i}' keys. All tensors are checked first;
        a missing key or a shape mismatch raises ValueError and nothing is assigned.
        """
        params = self.parameter_list()
        staged = []
        for i, param in enumerate(params):
            key = f"g-{i}"
            if key not in named_tensors:
                raise ValueError(
                    f"Weight '{key}' missing: the file does not match the current architecture "
                    f"({len(params)} tensors expected)."
                )
            value = torch.as_tensor(named_tensors[key])
            if tuple(value.shape) != tuple(param.shape):
                raise ValueError(
                    f"Shape mismatch for '{key}': file has {tuple(value.shape)}, "
                    f"model expects {tuple(param.shape)}. The weight file is stale for this architecture."
                )
            staged.append((param, value))

        with torch.no_grad():
            for param, value in staged:
                param.copy_(value.to(dtype=param.dtype, device=param.device))


# ============================================================================
# RS-IMLE Model
# ============================================================================

class IMLEModel(nn.Module):
    """
    Generator trained with RS-IMLE.

    Owns the generator parameters and the optimizer over them. Matching and the
    reconstruction loss are stateless helpers configured from the model's
    hyperparameters.
    """

    def __init__(
        self,
        noise_size: int,
        num_generator_layers: int,
        num_generator_neurons: int,
        batch_size: int = 150,
        sample_factor: int = 1,
        noise_coefficient: float = 0.001,
        distance_type: Union[str, DistanceType] = DistanceType.L2,
        epsilon: float = 0.0,
        variant: str = 'legacy',
        optimizer_type: Union[str, OptimizerType] = OptimizerType.SGD,
        learning_rate: float = 0.01,
    ):
        super().__init__()
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}.")
        if sample_factor < 1:
            raise ValueError(f"sample_factor must be >= 1, got {sample_factor}.")

        self.batch_size = batch_size
        self.sample_factor = sample_factor

        self.generator = GeneratorNetwork(
            noise_size, num_generator_layers, num_generator_neurons, variant=variant
        )
        self.matcher = NearestNeighbourMatcher(distance_type, epsilon)
        self.losses = IMLELosses(self.generator, noise_coefficient)

        self.optimizer_type = OptimizerType.from_name(optimizer_type)
        self.learning_rate = learning_rate
        self.g_optimizer = OptimizerAdapter(
            self.generator.parameter_list(), self.optimizer_type, learning_rate
        )

    @classmethod
    def from_config(cls, config: Dict) -> "IMLEModel":
        """Build a model from a flat config dict (see utilities.common.DEFAULT_CONFIG)."""
        return cls(
            noise_size=config['noise_size'],
            num_generator_layers=config['num_generator_layers'],
            num_generator_neurons=config['num_generator_neurons'],
            batch_size=config['batch_size'],
            sample_factor=config['sample_factor'],
            noise_coefficient=config['noise_coefficient'],
            distance_type=config['distance_type'],
            epsilon=config['epsilon'],
            variant=config.get('variant', 'legacy'),
            optimizer_type=config['optimizer_type'],
            learning_rate=config['learning_rate'],
        )

    # --- Configuration ---

    @property
    def noise_size(self) -> int:
        return self.generator.noise_size

    @property
    def num_generator_layers(self) -> int:
        return self.generator.num_layers

    @property
    def num_generator_neurons(self) -> int:
        return self.generator.hidden_width

    @property
    def pool_size(self) -> int:
        return self.batch_size * self.sample_factor

    @property
    def distance_type(self) -> DistanceType:
        return self.matcher.distance_type

    @distance_type.setter
    def distance_type(self, value: Union[str, DistanceType]) -> None:
        self.matcher.set_distance_type(value)

    @property
    def epsilon(self) -> float:
        return self.matcher.epsilon

    @property
    def noise_coefficient(self) -> float:
        return self.losses.noise_coefficient

    def initialize_model_variables(
        self,
        noise_size: Optional[int] = None,
        num_generator_layers: Optional[int] = None,
        num_generator_neurons: Optional[int] = None,
    ) -> None:
        """Reallocate generator parameters and rebuild the optimizer over them."""
        self.generator.initialize(
            noise_size if noise_size is not None else self.noise_size,
            num_generator_layers if num_generator_layers is not None else self.num_generator_layers,
            num_generator_neurons if num_generator_neurons is not None else self.num_generator_neurons,
        )
        self.update_optimizer(self.optimizer_type, self.learning_rate)

    def update_optimizer(self, optimizer_type: Union[str, OptimizerType], learning_rate: float) -> None:
        self.optimizer_type = OptimizerType.from_name(optimizer_type)
        self.learning_rate = learning_rate
        self.g_optimizer = OptimizerAdapter(
            self.generator.parameter_list(), self.optimizer_type, learning_rate
        )

    # --- Core operations ---

    def forward(self, latents: Tensor) -> Tensor:
        return self.generator(latents)

    def nearest_neighbour(self, real_data: Tensor, generated_data: Tensor) -> Dict[str, Tensor]:
        return self.matcher.match(real_data, generated_data)

    def imle_loss(self, real_data: Tensor, matched_noise: Tensor) -> Tensor:
        return self.losses.reconstruction_loss(real_data, matched_noise)

    def load_pretrained_weights(self, named_tensors: Dict[str, Tensor]) -> None:
        self.generator.load_weights(named_tensors)

    def export_weights(self) -> Dict[str, Tensor]:
        return self.generator.export_weights()
