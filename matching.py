"""
Distance Metrics and RS-IMLE Matching
=====================================

This module implements the selection half of RS-IMLE: a pairwise distance
between real points and generated candidates, a rejection filter over the
candidate pool, and the masked nearest-neighbour assignment.

Key Components:
- DistanceType: closed set of metrics (L1, L2, Barrier) with an L2 default
- pairwise_distances: [B, 2] x [P, 2] -> [B, P] dissimilarity matrix
- rejection_keep_mask: rejection filter with the force-keep guarantee
- NearestNeighbourMatcher: runs the full selection for one iteration
"""

from enum import Enum
from typing import Dict, Tuple, Union
import torch
from torch import Tensor


BARRIER_WEIGHT = 1e-3
BARRIER_EPS = 1e-8
REJECTED_PENALTY = 1e9


# ============================================================================
# Distance Metrics
# ============================================================================

class DistanceType(str, Enum):
    L1 = "L1"
    L2 = "L2"
    BARRIER = "Barrier"

    @classmethod
    def from_name(cls, name: Union[str, "DistanceType", None]) -> "DistanceType":
        """Resolve a metric name, falling back to L2 for anything unknown."""
        if isinstance(name, cls):
            return name
        for member in cls:
            if member.value == name:
                return member
        return cls.L2


def pairwise_distances(
    real: Tensor,
    candidates: Tensor,
    distance_type: Union[str, DistanceType] = DistanceType.L2,
) -> Tensor:
    """
    Compute the [B, P] dissimilarity matrix between real points and candidates.

    diff[i, j, :] = real[i] - candidates[j], reduced over the last axis:
    - L1: sum of absolute differences
    - L2: sum of squared differences (no square root)
    - Barrier: Euclidean distance r plus BARRIER_WEIGHT / (r + BARRIER_EPS)
    """
    distance_type = DistanceType.from_name(distance_type)
    diff = real.unsqueeze(1) - candidates.unsqueeze(0)  # [B, P, D]

    if distance_type is DistanceType.L1:
        return diff.abs().sum(dim=2)

    squared = diff.pow(2).sum(dim=2)
    if distance_type is DistanceType.BARRIER:
        r = torch.sqrt(squared)
        return r + BARRIER_WEIGHT / (r + BARRIER_EPS)
    return squared


# ============================================================================
# Rejection Filter
# ============================================================================

def rejection_keep_mask(distances: Tensor, epsilon: float) -> Tuple[Tensor, Tensor]:
    """
    Build the candidate keep mask for a [B, P] distance matrix.

    A candidate survives when its distance to the nearest real point exceeds
    epsilon. The candidate farthest from every real point is always kept, so
    the mask never comes back empty.

    Returns:
        (keep_mask [P] bool, min_dist_to_real [P])
    """
    min_dist_to_real = distances.min(dim=0).values
    keep_mask = min_dist_to_real > epsilon

    # argmax returns the first occurrence on ties
    farthest = torch.argmax(min_dist_to_real)
    force_keep = torch.zeros_like(keep_mask)
    force_keep[farthest] = True
    return keep_mask | force_keep, min_dist_to_real


def masked_argmin(distances: Tensor, keep_mask: Tensor) -> Tensor:
    """Per-row argmin restricted to kept columns. Ties go to the lowest index."""
    penalty = (~keep_mask).to(distances.dtype) * REJECTED_PENALTY
    return torch.argmin(distances + penalty.unsqueeze(0), dim=1)


# ============================================================================
# Nearest Neighbour Matcher
# ============================================================================

class NearestNeighbourMatcher:
    """
    RS-IMLE selection: distance matrix, rejection filter, masked assignment.
    """

    def __init__(self, distance_type: Union[str, DistanceType] = DistanceType.L2, epsilon: float = 0.0):
        if epsilon < 0:
            raise ValueError(f"epsilon must be non-negative, got {epsilon}.")
        self.distance_type = DistanceType.from_name(distance_type)
        self.epsilon = float(epsilon)

    def set_distance_type(self, distance_type: Union[str, DistanceType]) -> None:
        self.distance_type = DistanceType.from_name(distance_type)

    def match(self, real: Tensor, candidates: Tensor) -> Dict[str, Tensor]:
        """
        Assign each real point to a surviving candidate.

        Args:
            real: [B, 2] real batch
            candidates: [P, 2] generated candidate pool

        Returns:
            Dictionary with 'indices' [B], 'keep_mask' [P],
            'min_dist' [P] and 'distances' [B, P]
        """
        if candidates.shape[0] == 0:
            raise ValueError("Candidate pool is empty.")
        if real.shape[-1] != candidates.shape[-1]:
            raise ValueError(
                f"Point dimension mismatch: real {tuple(real.shape)} vs candidates {tuple(candidates.shape)}."
            )

        with torch.no_grad():
            distances = pairwise_distances(real, candidates, self.distance_type)
            keep_mask, min_dist = rejection_keep_mask(distances, self.epsilon)
            indices = masked_argmin(distances, keep_mask)

        return {
            'indices': indices,
            'keep_mask': keep_mask,
            'min_dist': min_dist,
            'distances': distances,
        }

    def __call__(self, real: Tensor, candidates: Tensor) -> Tensor:
        return self.match(real, candidates)['indices']
