"""
Data Generation Utilities
=========================

This module provides the input side of the lab: toy 2-D target distributions
in the unit square, latent noise atlases, and batch providers over both.

Every provider samples from a pre-generated atlas. A "fixed" provider always
returns the same batch, which keeps visualisations stable across iterations
without touching the stochastic training sampler.
"""

import math
import torch
from torch import Tensor
from typing import Optional, Sequence, Tuple

ATLAS_SIZE = 12000
BATCH_SIZE = 150

SHAPE_NAMES = ('line', 'gaussians', 'ring', 'disjoint', 'drawing')
NOISE_TYPES = ('uniform', 'gaussian')


# ============================================================================
# Target Distributions
# ============================================================================

def _sample_line(n: int, generator: Optional[torch.Generator]) -> Tensor:
    # Diagonal segment with a little spread around it
    t = torch.rand(n, generator=generator) * 0.6 + 0.2
    jitter = torch.randn(n, 2, generator=generator) * 0.02
    return torch.stack([t, t], dim=1) + jitter


def _sample_gaussians(n: int, generator: Optional[torch.Generator]) -> Tensor:
    centers = torch.tensor([[0.3, 0.3], [0.7, 0.7]])
    stds = torch.tensor([0.07, 0.05])
    component = torch.randint(0, 2, (n,), generator=generator)
    noise = torch.randn(n, 2, generator=generator)
    return centers[component] + noise * stds[component].unsqueeze(1)


def _sample_ring(n: int, generator: Optional[torch.Generator]) -> Tensor:
    theta = torch.rand(n, generator=generator) * 2 * math.pi
    radius = 0.3 + torch.randn(n, generator=generator) * 0.02
    return torch.stack([0.5 + radius * torch.cos(theta), 0.5 + radius * torch.sin(theta)], dim=1)


def _sample_disjoint(n: int, generator: Optional[torch.Generator]) -> Tensor:
    # Two short parallel segments separated by an empty band
    t = torch.rand(n, generator=generator) * 0.5 + 0.25
    side = torch.randint(0, 2, (n,), generator=generator).float()
    y = 0.25 + 0.5 * side + torch.randn(n, generator=generator) * 0.02
    return torch.stack([t, y], dim=1)


def _sample_drawing(n: int, positions: Sequence[Sequence[float]], generator: Optional[torch.Generator]) -> Tensor:
    if not positions:
        raise ValueError("The 'drawing' shape needs at least one drawn position.")
    anchors = torch.as_tensor(positions, dtype=torch.float32)
    if anchors.dim() != 2 or anchors.shape[1] != 2:
        raise ValueError(f"Drawing positions must be [N, 2], got {tuple(anchors.shape)}.")
    idx = torch.randint(0, anchors.shape[0], (n,), generator=generator)
    return anchors[idx] + torch.randn(n, 2, generator=generator) * 0.01


def generate_true_atlas(
    shape_name: str,
    atlas_size: int = ATLAS_SIZE,
    drawing_positions: Optional[Sequence[Sequence[float]]] = None,
    generator: Optional[torch.Generator] = None,
) -> Tensor:
    """Pre-generate atlas_size samples [atlas_size, 2] from a named toy distribution."""
    if shape_name == 'line':
        atlas = _sample_line(atlas_size, generator)
    elif shape_name == 'gaussians':
        atlas = _sample_gaussians(atlas_size, generator)
    elif shape_name == 'ring':
        atlas = _sample_ring(atlas_size, generator)
    elif shape_name == 'disjoint':
        atlas = _sample_disjoint(atlas_size, generator)
    elif shape_name == 'drawing':
        atlas = _sample_drawing(atlas_size, drawing_positions, generator)
    else:
        raise ValueError(f"Unknown shape: {shape_name}. Choose from {SHAPE_NAMES}.")
    return atlas.clamp(0.0, 1.0)


def generate_noise_atlas(
    noise_size: int,
    noise_type: str = 'uniform',
    atlas_size: int = ATLAS_SIZE,
    generator: Optional[torch.Generator] = None,
) -> Tensor:
    """Latent atlas [atlas_size, noise_size]: uniform [0, 1) or N(0.5, 0.25^2)."""
    if noise_size < 1:
        raise ValueError(f"noise_size must be >= 1, got {noise_size}.")
    if noise_type == 'uniform':
        return torch.rand(atlas_size, noise_size, generator=generator)
    if noise_type == 'gaussian':
        return 0.5 + 0.25 * torch.randn(atlas_size, noise_size, generator=generator)
    raise ValueError(f"Unknown noise type: {noise_type}. Choose from {NOISE_TYPES}.")


# ============================================================================
# Input Providers
# ============================================================================

class InputProvider:
    """
    Serves [batch_size, dim] batches from an atlas.

    The stochastic provider picks a random contiguous window on each call; the
    fixed provider always returns the first batch_size rows.
    """

    def __init__(
        self,
        atlas: Tensor,
        batch_size: int = BATCH_SIZE,
        fixed: bool = False,
        generator: Optional[torch.Generator] = None,
    ):
        if atlas.dim() != 2:
            raise ValueError(f"Atlas must be 2-D, got shape {tuple(atlas.shape)}.")
        if batch_size > atlas.shape[0]:
            raise ValueError(f"batch_size {batch_size} exceeds atlas size {atlas.shape[0]}.")
        self.atlas = atlas
        self.batch_size = batch_size
        self.fixed = fixed
        self.generator = generator

    @property
    def dim(self) -> int:
        return self.atlas.shape[1]

    def next_batch(self) -> Tensor:
        if self.fixed:
            return self.atlas[:self.batch_size].clone()
        max_start = self.atlas.shape[0] - self.batch_size
        start = int(torch.randint(0, max_start + 1, (1,), generator=self.generator).item())
        return self.atlas[start:start + self.batch_size].clone()

    def to(self, device) -> "InputProvider":
        self.atlas = self.atlas.to(device)
        return self


def latent_pool(provider: InputProvider, sample_factor: int) -> Tensor:
    """Concatenate sample_factor batches into one candidate pool [batch_size * sample_factor, dim]."""
    if sample_factor < 1:
        raise ValueError(f"sample_factor must be >= 1, got {sample_factor}.")
    return torch.cat([provider.next_batch() for _ in range(sample_factor)], dim=0)


def build_providers(
    shape_name: str,
    noise_size: int,
    noise_type: str = 'uniform',
    batch_size: int = BATCH_SIZE,
    atlas_size: int = ATLAS_SIZE,
    drawing_positions: Optional[Sequence[Sequence[float]]] = None,
    generator: Optional[torch.Generator] = None,
) -> Tuple[Tuple[InputProvider, InputProvider], Tuple[InputProvider, InputProvider]]:
    """
    Build stochastic and fixed providers for real samples and latent noise.

    Returns:
        ((true_provider, true_provider_fixed), (noise_provider, noise_provider_fixed))
    """
    print(f"Generating {atlas_size} samples for shape '{shape_name}' and {noise_type} noise (dim={noise_size})...")
    true_atlas = generate_true_atlas(shape_name, atlas_size, drawing_positions, generator)
    noise_atlas = generate_noise_atlas(noise_size, noise_type, atlas_size, generator)

    true_providers = (
        InputProvider(true_atlas, batch_size, fixed=False, generator=generator),
        InputProvider(true_atlas, batch_size, fixed=True),
    )
    noise_providers = (
        InputProvider(noise_atlas, batch_size, fixed=False, generator=generator),
        InputProvider(noise_atlas, batch_size, fixed=True),
    )
    return true_providers, noise_providers
