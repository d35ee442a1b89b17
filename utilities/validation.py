"""
Validation Utilities for RS-IMLE
================================

Grid-density evaluation of a trained generator. The unit square is split into
a regular grid; true and generated samples are histogrammed and compared with
KL and Jensen-Shannon divergences.
"""

import numpy as np
import torch
from torch import Tensor
from typing import Dict, Optional, Union
from scipy.stats import entropy
from scipy.spatial.distance import jensenshannon

NUM_GRID_CELLS = 30
NUM_TRUE_SAMPLES = 450
DENSITY_FLOOR = 1e-5


def _to_numpy(points: Union[Tensor, np.ndarray]) -> np.ndarray:
    if isinstance(points, Tensor):
        return points.detach().cpu().numpy()
    return np.asarray(points)


def grid_density(points: Union[Tensor, np.ndarray], num_cells: int = NUM_GRID_CELLS) -> np.ndarray:
    """
    Normalised histogram over the unit square, flattened to [num_cells**2].
    Points outside [0, 1]^2 are clipped to the border cells.
    """
    pts = np.clip(_to_numpy(points).reshape(-1, 2), 0.0, 1.0)
    counts, _, _ = np.histogram2d(
        pts[:, 0], pts[:, 1], bins=num_cells, range=[[0.0, 1.0], [0.0, 1.0]]
    )
    counts = counts.flatten() + DENSITY_FLOOR
    return counts / counts.sum()


class GridDensityEvaluator:
    """
    KL and JS divergence between true and generated grid densities.
    """

    def __init__(self, num_cells: int = NUM_GRID_CELLS):
        self.num_cells = num_cells
        self.true_density: Optional[np.ndarray] = None
        self.generated_density: Optional[np.ndarray] = None

    def create_grids_for_true(self, true_atlas: Tensor, num_samples: int = NUM_TRUE_SAMPLES) -> None:
        self.true_density = grid_density(true_atlas[:num_samples], self.num_cells)

    def update_grids_for_generated(self, generated: Tensor) -> None:
        self.generated_density = grid_density(generated, self.num_cells)

    def _check_ready(self) -> None:
        if self.true_density is None or self.generated_density is None:
            raise ValueError("Both true and generated grids must be set before scoring.")

    def kl_divergence(self) -> float:
        """KL(true || generated)."""
        self._check_ready()
        return float(entropy(self.true_density, self.generated_density))

    def js_divergence(self) -> float:
        self._check_ready()
        # scipy returns the JS distance, i.e. the square root of the divergence
        return float(jensenshannon(self.true_density, self.generated_density) ** 2)

    def scores(self) -> Dict[str, float]:
        return {'kl': self.kl_divergence(), 'js': self.js_divergence()}


def evaluate_generator(model, true_atlas: Tensor, noise_batch: Tensor, num_cells: int = NUM_GRID_CELLS) -> Dict[str, float]:
    """Score the generator on one latent batch against the true atlas."""
    evaluator = GridDensityEvaluator(num_cells)
    evaluator.create_grids_for_true(true_atlas)
    with torch.no_grad():
        generated = model.generator(noise_batch)
    evaluator.update_grids_for_generated(generated)
    return evaluator.scores()
