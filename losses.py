#!/usr/bin/env python3
"""
Loss Functions for RS-IMLE
==========================

The IMLE objective pulls each matched generated point towards its real point.
The matched latents are jittered with fresh Gaussian noise on every evaluation,
which turns the point objective into a smoothed, stochastic one.
"""

import torch
import torch.nn.functional as F
from typing import Dict, Optional
from torch import Tensor


class IMLELosses:
    """
    Reconstruction loss for a generator given matched latents.
    """

    def __init__(self, generator, noise_coefficient: float = 0.001):
        """Initialize with reference to the generator network."""
        if noise_coefficient < 0:
            raise ValueError(f"noise_coefficient must be non-negative, got {noise_coefficient}.")
        self.generator = generator
        self.noise_coefficient = noise_coefficient

    def perturb(self, latents: Tensor, generator: Optional[torch.Generator] = None) -> Tensor:
        """Add isotropic Gaussian noise scaled by noise_coefficient."""
        noise = torch.randn(
            latents.shape, dtype=latents.dtype, device=latents.device, generator=generator
        )
        return latents + self.noise_coefficient * noise

    def reconstruction_loss(
        self,
        real_batch: Tensor,
        matched_latents: Tensor,
        generator: Optional[torch.Generator] = None,
    ) -> Tensor:
        """
        mean((real - G(z_matched + noise_coefficient * n))^2), n ~ N(0, I).
        """
        if real_batch.shape[0] != matched_latents.shape[0]:
            raise ValueError(
                f"Batch mismatch: {real_batch.shape[0]} real points vs {matched_latents.shape[0]} latents."
            )
        generated = self.generator(self.perturb(matched_latents, generator=generator))
        return F.mse_loss(generated, real_batch, reduction="mean")

    def compute_loss(self, real_batch: Tensor, matched_latents: Tensor) -> Dict[str, Tensor]:
        """
        Returns:
            Dictionary with 'total' and 'reconstruction' losses
        """
        reconstruction = self.reconstruction_loss(real_batch, matched_latents)
        return {'total': reconstruction, 'reconstruction': reconstruction}
