"""
Tests for providers, grid evaluation, weight files and configuration.

Usage:
    pytest test_utilities.py
"""

import json
import pytest
import torch

from models import IMLEModel
from utilities.common import DEFAULT_CONFIG, make_config, validate_config
from utilities.data_generation import (
    SHAPE_NAMES,
    InputProvider,
    generate_noise_atlas,
    generate_true_atlas,
    latent_pool,
)
from utilities.validation import GridDensityEvaluator, grid_density
from utilities.weights import load_model, load_weight_file, save_model


# ============================================================================
# Data generation
# ============================================================================

@pytest.mark.parametrize("shape_name", [s for s in SHAPE_NAMES if s != 'drawing'])
def test_true_atlas_lies_in_unit_square(shape_name):
    atlas = generate_true_atlas(shape_name, atlas_size=500, generator=torch.Generator().manual_seed(0))
    assert atlas.shape == (500, 2)
    assert atlas.min().item() >= 0.0
    assert atlas.max().item() <= 1.0


def test_drawing_atlas_follows_positions():
    positions = [[0.2, 0.8], [0.6, 0.4]]
    atlas = generate_true_atlas('drawing', atlas_size=300, drawing_positions=positions)
    anchors = torch.tensor(positions)
    nearest = torch.cdist(atlas, anchors).min(dim=1).values
    assert (nearest < 0.1).all()

    with pytest.raises(ValueError):
        generate_true_atlas('drawing', atlas_size=10)


def test_unknown_shape_and_noise_raise():
    with pytest.raises(ValueError):
        generate_true_atlas('spiral', atlas_size=10)
    with pytest.raises(ValueError):
        generate_noise_atlas(2, 'cauchy', atlas_size=10)


def test_noise_atlas_shapes():
    uniform = generate_noise_atlas(3, 'uniform', atlas_size=200)
    gaussian = generate_noise_atlas(1, 'gaussian', atlas_size=200)
    assert uniform.shape == (200, 3)
    assert ((uniform >= 0) & (uniform < 1)).all()
    assert gaussian.shape == (200, 1)


def test_fixed_provider_repeats_and_stochastic_provider_varies():
    atlas = torch.arange(200, dtype=torch.float32).reshape(100, 2)
    fixed = InputProvider(atlas, batch_size=10, fixed=True)
    assert torch.equal(fixed.next_batch(), fixed.next_batch())

    stochastic = InputProvider(atlas, batch_size=10, generator=torch.Generator().manual_seed(0))
    batches = [stochastic.next_batch() for _ in range(5)]
    assert all(b.shape == (10, 2) for b in batches)
    assert any(not torch.equal(batches[0], b) for b in batches[1:])


def test_provider_rejects_oversized_batch():
    with pytest.raises(ValueError):
        InputProvider(torch.rand(5, 2), batch_size=10)


def test_latent_pool_concatenates_batches():
    provider = InputProvider(torch.rand(100, 2), batch_size=8, fixed=True)
    pool = latent_pool(provider, sample_factor=4)
    assert pool.shape == (32, 2)
    assert torch.equal(pool[:8], pool[8:16])


# ============================================================================
# Grid evaluation
# ============================================================================

def test_grid_density_is_normalised():
    density = grid_density(torch.rand(1000, 2), num_cells=10)
    assert density.shape == (100,)
    assert density.sum() == pytest.approx(1.0)


def test_identical_distributions_score_zero():
    points = torch.rand(450, 2)
    evaluator = GridDensityEvaluator()
    evaluator.create_grids_for_true(points)
    evaluator.update_grids_for_generated(points)
    assert evaluator.kl_divergence() == pytest.approx(0.0, abs=1e-9)
    assert evaluator.js_divergence() == pytest.approx(0.0, abs=1e-9)


def test_disjoint_distributions_score_higher():
    torch.manual_seed(0)
    true_points = torch.rand(450, 2) * 0.3
    near = torch.rand(450, 2) * 0.3
    far = 0.7 + torch.rand(450, 2) * 0.3

    evaluator = GridDensityEvaluator()
    evaluator.create_grids_for_true(true_points)
    evaluator.update_grids_for_generated(near)
    near_scores = evaluator.scores()
    evaluator.update_grids_for_generated(far)
    far_scores = evaluator.scores()

    assert far_scores['kl'] > near_scores['kl']
    assert far_scores['js'] > near_scores['js']


def test_scoring_requires_both_grids():
    with pytest.raises(ValueError):
        GridDensityEvaluator().kl_divergence()


# ============================================================================
# Weight files
# ============================================================================

def test_save_and_load_round_trip(tmp_path):
    torch.manual_seed(0)
    model = IMLEModel(noise_size=2, num_generator_layers=2, num_generator_neurons=10,
                      distance_type='Barrier', optimizer_type='RMSProp', learning_rate=0.003)
    json_path, weights_path = save_model(model, tmp_path / "model", "ring", 1234, k_g_steps=4)
    assert json_path.exists() and weights_path.exists()

    restored, topology = load_model(tmp_path / "model")
    assert topology['shape_name'] == 'ring'
    assert topology['iter_count'] == 1234
    assert topology['config']['distance_type'] == 'Barrier'
    assert topology['config']['k_g_steps'] == 4
    assert restored.optimizer_type.value == 'RMSProp'
    assert restored.num_generator_layers == 2

    latents = torch.rand(16, 2)
    with torch.no_grad():
        assert torch.allclose(model(latents), restored(latents))


def test_load_into_mismatched_architecture_fails(tmp_path):
    source = IMLEModel(noise_size=2, num_generator_layers=1, num_generator_neurons=10)
    save_model(source, tmp_path / "model", "line", 5, k_g_steps=1)

    target = IMLEModel(noise_size=2, num_generator_layers=1, num_generator_neurons=12)
    with pytest.raises(ValueError):
        load_model(tmp_path / "model.json", model=target)


def test_legacy_camel_case_config_is_normalised(tmp_path):
    model = IMLEModel(noise_size=1, num_generator_layers=0, num_generator_neurons=4)
    save_model(model, tmp_path / "legacy", "line", 10, k_g_steps=1)

    json_path = tmp_path / "legacy.json"
    topology = json.loads(json_path.read_text())
    topology['config'] = {
        'noiseSize': 1, 'numGeneratorLayers': 0, 'numGeneratorNeurons': 4,
        'gOptimizerType': 'Adam', 'gLearningRate': 0.05, 'distanceType': 'L1',
        'kGSteps': 3, 'selectedNoiseType': '1D Uniform',
    }
    json_path.write_text(json.dumps(topology))

    loaded, named = load_weight_file(tmp_path / "legacy")
    assert loaded['config'] == {
        'noise_size': 1, 'num_generator_layers': 0, 'num_generator_neurons': 4,
        'optimizer_type': 'Adam', 'learning_rate': 0.05, 'distance_type': 'L1', 'k_g_steps': 3,
    }
    assert sorted(named) == ['g-0', 'g-1', 'g-2', 'g-3']


# ============================================================================
# Configuration
# ============================================================================

def test_default_config_is_valid():
    config = make_config()
    assert config == validate_config(dict(DEFAULT_CONFIG))


@pytest.mark.parametrize("key,value", [
    ("num_generator_layers", 6),
    ("num_generator_neurons", 0),
    ("k_g_steps", 11),
    ("epsilon", -0.1),
    ("noise_size", 0),
    ("learning_rate", 0.0),
])
def test_out_of_range_config_raises(key, value):
    with pytest.raises(ValueError):
        make_config({key: value})


def test_unknown_names_are_not_config_errors():
    config = make_config(distance_type="Hamming", optimizer_type="Foo")
    model = IMLEModel.from_config(config)
    assert model.distance_type.value == "L2"
    assert model.optimizer_type.value == "SGD"
