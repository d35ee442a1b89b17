#!/usr/bin/env python3
"""
RS-IMLE Lab - Training Script
=============================

Trains a small generator on a toy 2-D distribution with Implicit Maximum
Likelihood Estimation and the rejection-sampling candidate filter.

Usage:
    python train_imle.py [--shape SHAPE] [--iterations N] [--lr LR] [--epsilon EPS]

Examples:
    python train_imle.py --shape ring --iterations 3000 --sample_factor 8
    python train_imle.py --shape gaussians --distance_type Barrier --epsilon 0.001
    python train_imle.py --load output_imle_line/model --iterations 500
"""

import argparse
import json
import os
from pathlib import Path
from typing import Dict
import torch

from models import IMLEModel
from utilities.common import DEFAULT_CONFIG, validate_config, set_seed, resolve_device
from utilities.data_generation import SHAPE_NAMES, NOISE_TYPES, build_providers
from utilities.training import train_imle
from utilities.validation import evaluate_generator
from utilities.weights import save_model, load_model, load_weight_file


def setup_experiment(args) -> Dict:
    """Setup experiment configuration based on arguments.

    Flat configuration: DEFAULT_CONFIG, then the topology of a weight file
    given with --load, then any flag given on the command line.
    """
    config = dict(DEFAULT_CONFIG)
    config["start_iteration"] = 0
    loaded = {}

    if args.load:
        topology, _ = load_weight_file(args.load)
        loaded = topology["config"]
        config.update(loaded)
        if topology.get("shape_name") in SHAPE_NAMES[:-1]:
            config["shape_name"] = topology["shape_name"]
        config["start_iteration"] = topology.get("iter_count", 0)

    for key in DEFAULT_CONFIG:
        value = getattr(args, key, None)
        if value is None:
            continue
        if key in loaded and loaded[key] != value:
            print(f"Note: --{key}={value} overrides {config[key]!r} from {args.load}")
        config[key] = value

    config["device"] = resolve_device(config["device"])
    config["iterations"] = args.iterations
    config["output_dir"] = args.output_dir if args.output_dir else f"output_imle_{config['shape_name']}"
    config["load"] = args.load
    return validate_config(config)


def generate_data(config):
    """Build the true-sample and noise providers."""

    print("\n--- Data Generation ---")
    generator = None
    if config["seed"] is not None:
        generator = torch.Generator().manual_seed(config["seed"])

    (true_provider, _), (noise_provider, noise_fixed) = build_providers(
        shape_name=config["shape_name"],
        noise_size=config["noise_size"],
        noise_type=config["noise_type"],
        batch_size=config["batch_size"],
        atlas_size=config["atlas_size"],
        generator=generator,
    )
    print(f"Batch size: {config['batch_size']}, candidate pool: {config['batch_size'] * config['sample_factor']}")
    return true_provider, noise_provider, noise_fixed


def create_model(config):
    """Create a model from the merged config, restoring weights when resuming."""

    print("\n--- Model ---")
    model = IMLEModel.from_config(config)
    if config["load"]:
        # Architecture flags that disagree with the file fail here on shape
        load_model(config["load"], model=model)
        print(f"Loaded weights from {config['load']} (iteration {config['start_iteration']})")

    model.to(config["device"])
    n_params = sum(p.numel() for p in model.parameters())
    print(f"Generator: {model.num_generator_layers} hidden layers x {model.num_generator_neurons} neurons "
          f"({n_params} parameters, variant={model.generator.variant})")
    print(f"Optimizer: {model.optimizer_type.value} (lr={model.learning_rate}), "
          f"distance: {model.distance_type.value}, epsilon: {model.epsilon}")
    return model


def main():
    """Main training script."""

    parser = argparse.ArgumentParser(description="Train a 2-D generator with RS-IMLE")
    parser.add_argument("--shape_name", "--shape", type=str, choices=SHAPE_NAMES[:-1], help="Target distribution")
    parser.add_argument("--noise_type", type=str, choices=NOISE_TYPES, help="Latent noise distribution")
    parser.add_argument("--iterations", type=int, default=1000, help="Number of training iterations")
    parser.add_argument("--noise_size", type=int, help="Latent dimension")
    parser.add_argument("--num_generator_layers", type=int, help="Hidden layers (0-5)")
    parser.add_argument("--num_generator_neurons", type=int, help="Hidden width (1-100)")
    parser.add_argument("--variant", type=str, choices=["legacy", "refined"], help="Generator preset")
    parser.add_argument("--batch_size", type=int, help="Real batch size")
    parser.add_argument("--sample_factor", type=int, help="Candidate pool multiplier")
    parser.add_argument("--noise_coefficient", type=float, help="Latent perturbation scale")
    parser.add_argument("--distance_type", type=str, help="L1, L2 or Barrier (unknown names use L2)")
    parser.add_argument("--epsilon", type=float, help="Rejection threshold")
    parser.add_argument("--optimizer_type", type=str, help="SGD, Adam, Adagrad or RMSProp (unknown names use SGD)")
    parser.add_argument("--learning_rate", "--lr", type=float, help="Learning rate")
    parser.add_argument("--k_g_steps", type=int, help="Optimizer steps per iteration (0-10)")
    parser.add_argument("--rematch_each_step", action="store_true", default=None,
                        help="Redraw and rematch inside every optimizer step")
    parser.add_argument("--fixed_latent_pool", action="store_true", default=None,
                        help="Draw one latent pool and reuse it for every iteration")
    parser.add_argument("--eval_interval", type=int, help="Iterations between grid evaluations")
    parser.add_argument("--seed", type=int, help="Random seed")
    parser.add_argument("--device", type=str, help="auto, cpu or cuda")
    parser.add_argument("--load", type=str, default=None, help="Weight file stem to resume from")
    parser.add_argument("--output_dir", type=str, default=None, help="Output directory for weights and metrics")

    args = parser.parse_args()

    try:
        config = setup_experiment(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}")
        return 2

    set_seed(config["seed"])
    os.makedirs(config["output_dir"], exist_ok=True)

    print("=" * 80)
    print("RS-IMLE LAB")
    print(f"Shape: {config['shape_name']}")
    print(f"Device: {config['device']}")
    print(f"Output: {config['output_dir']}")
    print("=" * 80)

    try:
        # 1. Providers
        true_provider, noise_provider, noise_fixed = generate_data(config)

        # 2. Model
        model = create_model(config)

        # 3. Train
        print("\n--- Training ---")
        print(f"Training for {config['iterations']} iterations, k={config['k_g_steps']} optimizer steps each")
        loss_history = train_imle(
            model=model,
            true_provider=true_provider,
            noise_provider=noise_provider,
            iterations=config["iterations"],
            k_g_steps=config["k_g_steps"],
            rematch_each_step=config["rematch_each_step"],
            fixed_latent_pool=config["fixed_latent_pool"],
            eval_noise_provider=noise_fixed,
            true_atlas=true_provider.atlas,
            eval_interval=config["eval_interval"],
            start_iteration=config["start_iteration"],
            verbose=True,
        )
        final_iteration = config["start_iteration"] + config["iterations"]

        # 4. Evaluate
        print("\n--- Evaluation ---")
        scores = evaluate_generator(model, true_provider.atlas, noise_fixed.next_batch().to(config["device"]))
        print(f"Grid KL divergence: {scores['kl']:.4f}")
        print(f"Grid JS divergence: {scores['js']:.4f}")

        # 5. Save
        outdir = Path(config["output_dir"])
        json_path, weights_path = save_model(
            model, outdir / "model", config["shape_name"], final_iteration, config["k_g_steps"], config
        )
        print(f"Saved weights to {weights_path} (topology: {json_path})")

        metrics = {
            'final_iteration': final_iteration,
            'final_loss': next((h['loss'] for h in reversed(loss_history) if h['loss'] is not None), None),
            'kl': scores['kl'],
            'js': scores['js'],
            'history': loss_history,
        }
        with open(outdir / "metrics.json", "w") as f:
            json.dump(metrics, f, indent=2)
        print(f"Saved metrics to {outdir / 'metrics.json'}")

        print("\n" + "=" * 80)
        print("✓ TRAINING COMPLETED SUCCESSFULLY")
        print("=" * 80)

    except Exception as e:
        print(f"\n ERROR: {e}")
        import traceback

        traceback.print_exc()
        return 1

    return 0


if __name__ == "__main__":
    exit(main())
