"""
Training Utilities for RS-IMLE
==============================

This module provides the per-iteration training step and the loops that drive
it. One iteration runs sampling, generation, matching and optimisation in that
order; the generator parameters only change during optimisation.
"""

from enum import Enum
import torch
from tqdm import trange
from typing import Any, Dict, Iterator, List, Optional
from torch import Tensor

from models import IMLEModel
from .data_generation import InputProvider, latent_pool
from .validation import GridDensityEvaluator

MAX_ITERATIONS = 999999


class TrainingState(str, Enum):
    IDLE = "IDLE"
    SAMPLING = "SAMPLING"
    GENERATING = "GENERATING"
    MATCHING = "MATCHING"
    OPTIMIZING = "OPTIMIZING"


class TrainingStep:
    """
    One RS-IMLE training iteration per `step` call.

    The real batch and latent pool are drawn once, the pool is generated and
    matched once, then the optimizer is applied k_g_steps times to the same
    matched latents, each time re-evaluating the perturbed loss. With
    rematch_each_step=True every optimizer step draws and matches afresh.
    """

    def __init__(
        self,
        model: IMLEModel,
        true_provider: InputProvider,
        noise_provider: InputProvider,
        k_g_steps: int = 1,
        rematch_each_step: bool = False,
    ):
        if k_g_steps < 0:
            raise ValueError(f"k_g_steps must be non-negative, got {k_g_steps}.")
        self.model = model
        self.true_provider = true_provider
        self.noise_provider = noise_provider
        self.k_g_steps = k_g_steps
        self.rematch_each_step = rematch_each_step
        self.state = TrainingState.IDLE
        self.fixed_latents: Optional[Tensor] = None

    # --- Fixed latent pool ---

    def fix_latent_pool(self, latents: Optional[Tensor] = None) -> Tensor:
        """Pin a latent pool across iterations. Draws one if none is given."""
        if latents is None:
            latents = latent_pool(self.noise_provider, self.model.sample_factor)
        self.fixed_latents = latents
        return latents

    def release_latent_pool(self) -> None:
        self.fixed_latents = None

    # --- Stages ---

    def _device(self) -> torch.device:
        return self.model.generator.layers[0].weight.device

    def _sample(self):
        device = self._device()
        real_batch = self.true_provider.next_batch().to(device)
        if self.fixed_latents is not None:
            latents = self.fixed_latents.to(device)
        else:
            latents = latent_pool(self.noise_provider, self.model.sample_factor).to(device)
        return real_batch, latents

    def _match(self, real_batch: Tensor, latents: Tensor):
        with torch.no_grad():
            candidates = self.model.generator(latents)
        match = self.model.nearest_neighbour(real_batch, candidates)
        return candidates, match

    def _rematched_loss(self) -> Tensor:
        real_batch, latents = self._sample()
        _, match = self._match(real_batch, latents)
        return self.model.imle_loss(real_batch, latents[match['indices']])

    def step(self, iteration: int = 0) -> Dict[str, Any]:
        """
        Run one iteration.

        Returns:
            Dictionary with 'iteration', 'loss' (last optimizer step, None if
            k_g_steps == 0), 'losses', 'match_indices', 'keep_mask',
            'generated' and 'real'
        """
        try:
            self.state = TrainingState.SAMPLING
            real_batch, latents = self._sample()

            self.state = TrainingState.GENERATING
            with torch.no_grad():
                candidates = self.model.generator(latents)

            self.state = TrainingState.MATCHING
            match = self.model.nearest_neighbour(real_batch, candidates)
            matched_latents = latents[match['indices']]

            self.state = TrainingState.OPTIMIZING
            if self.rematch_each_step:
                loss_fn = self._rematched_loss
            else:
                def loss_fn():
                    return self.model.imle_loss(real_batch, matched_latents)
            losses = [self.model.g_optimizer.update(loss_fn) for _ in range(self.k_g_steps)]
        finally:
            self.state = TrainingState.IDLE

        return {
            'iteration': iteration,
            'loss': losses[-1] if losses else None,
            'losses': losses,
            'match_indices': match['indices'],
            'keep_mask': match['keep_mask'],
            'generated': candidates,
            'real': real_batch,
        }


def iterate_training(
    training_step: TrainingStep,
    max_iterations: int = MAX_ITERATIONS,
    start_iteration: int = 0,
) -> Iterator[Dict[str, Any]]:
    """
    Yield one training result per iteration until max_iterations is reached.
    The caller paces and cancels by pulling from (or abandoning) the iterator.
    """
    iteration = start_iteration
    while iteration < max_iterations:
        iteration += 1
        yield training_step.step(iteration)


def train_imle(
    model: IMLEModel,
    true_provider: InputProvider,
    noise_provider: InputProvider,
    iterations: int = 1000,
    k_g_steps: int = 1,
    rematch_each_step: bool = False,
    fixed_latent_pool: bool = False,
    eval_noise_provider: Optional[InputProvider] = None,
    true_atlas: Optional[Tensor] = None,
    eval_interval: int = 50,
    start_iteration: int = 0,
    verbose: bool = True,
) -> List[Dict[str, Any]]:
    """Train an IMLE model for a number of iterations with optional grid evaluation."""
    training_step = TrainingStep(model, true_provider, noise_provider, k_g_steps, rematch_each_step)
    if fixed_latent_pool:
        training_step.fix_latent_pool()

    evaluator = None
    if eval_noise_provider is not None and true_atlas is not None:
        evaluator = GridDensityEvaluator()
        evaluator.create_grids_for_true(true_atlas)

    loss_history = []
    steps = iterate_training(training_step, start_iteration + iterations, start_iteration)
    pbar = trange(iterations, disable=not verbose)

    for _, result in zip(pbar, steps):
        entry = {'iteration': result['iteration'], 'loss': result['loss']}

        if evaluator is not None and result['iteration'] % eval_interval == 0:
            with torch.no_grad():
                generated = model.generator(eval_noise_provider.next_batch().to(training_step._device()))
            evaluator.update_grids_for_generated(generated)
            entry.update(evaluator.scores())

        loss_history.append(entry)

        if verbose and result['loss'] is not None:
            description = f"Loss: {result['loss']:.4f}"
            if 'kl' in entry:
                description += f" (KL: {entry['kl']:.4f}, JS: {entry['js']:.4f})"
            pbar.set_description(description)

    return loss_history
