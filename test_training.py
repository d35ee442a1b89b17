"""
Tests for the loss, optimizer selection and the training step.

Usage:
    pytest test_training.py
"""

import math
import pytest
import torch
import torch.nn.functional as F

from losses import IMLELosses
from models import GeneratorNetwork, IMLEModel
from optimizers import OptimizerAdapter, OptimizerType, build_optimizer
from utilities.data_generation import InputProvider, build_providers
from utilities.training import TrainingState, TrainingStep, iterate_training, train_imle


def _make_model(**kwargs):
    settings = dict(noise_size=2, num_generator_layers=1, num_generator_neurons=8,
                    batch_size=16, sample_factor=2, optimizer_type='Adam', learning_rate=0.01)
    settings.update(kwargs)
    return IMLEModel(**settings)


def _make_providers(noise_size=2, batch_size=16, seed=0):
    generator = torch.Generator().manual_seed(seed)
    (true_provider, _), (noise_provider, _) = build_providers(
        'ring', noise_size, batch_size=batch_size, atlas_size=1000, generator=generator
    )
    return true_provider, noise_provider


# ============================================================================
# Loss
# ============================================================================

def test_loss_without_perturbation_is_plain_mse():
    net = GeneratorNetwork(noise_size=2, num_layers=1, hidden_width=6)
    losses = IMLELosses(net, noise_coefficient=0.0)
    real, latents = torch.rand(10, 2), torch.rand(10, 2)

    expected = ((real - net(latents)) ** 2).mean()
    assert torch.allclose(losses.reconstruction_loss(real, latents), expected)
    assert torch.allclose(losses.compute_loss(real, latents)['total'], expected)


def test_loss_redraws_perturbation_every_call():
    torch.manual_seed(0)
    net = GeneratorNetwork(noise_size=2, num_layers=1, hidden_width=6)
    losses = IMLELosses(net, noise_coefficient=1.0)
    real, latents = torch.rand(10, 2), torch.rand(10, 2)

    first = losses.reconstruction_loss(real, latents)
    second = losses.reconstruction_loss(real, latents)
    assert not torch.equal(first, second)


def test_loss_rejects_batch_mismatch():
    net = GeneratorNetwork(noise_size=2, num_layers=0, hidden_width=4)
    with pytest.raises(ValueError):
        IMLELosses(net).reconstruction_loss(torch.rand(4, 2), torch.rand(5, 2))


# ============================================================================
# Optimizer
# ============================================================================

def test_optimizer_types_and_fixed_hyperparameters():
    params = [torch.nn.Parameter(torch.zeros(3))]

    adam = build_optimizer(params, 'Adam', 0.1)
    assert isinstance(adam, torch.optim.Adam)
    assert adam.defaults['betas'] == (0.9, 0.999)

    rmsprop = build_optimizer(params, 'RMSProp', 0.1)
    assert isinstance(rmsprop, torch.optim.RMSprop)
    assert rmsprop.defaults['alpha'] == 0.9
    assert rmsprop.defaults['momentum'] == 0.0
    assert rmsprop.defaults['eps'] == 1e-8
    assert rmsprop.defaults['centered'] is False

    assert isinstance(build_optimizer(params, 'Adagrad', 0.1), torch.optim.Adagrad)
    assert isinstance(build_optimizer(params, 'SGD', 0.1), torch.optim.SGD)


def test_unknown_optimizer_behaves_like_sgd():
    torch.manual_seed(0)
    a = GeneratorNetwork(noise_size=2, num_layers=1, hidden_width=6)
    b = GeneratorNetwork(noise_size=2, num_layers=1, hidden_width=6)
    b.load_weights(a.export_weights())

    real, latents = torch.rand(12, 2), torch.rand(12, 2)
    foo = OptimizerAdapter(a.parameter_list(), 'Foo', learning_rate=0.5)
    sgd = OptimizerAdapter(b.parameter_list(), 'SGD', learning_rate=0.5)
    assert foo.optimizer_type is OptimizerType.SGD
    assert isinstance(foo.optimizer, torch.optim.SGD)

    loss_a = foo.update(lambda: F.mse_loss(a(latents), real))
    loss_b = sgd.update(lambda: F.mse_loss(b(latents), real))
    assert loss_a == loss_b
    for key, value in a.export_weights().items():
        assert torch.equal(value, b.export_weights()[key])


def test_update_reevaluates_loss_each_call():
    param = torch.nn.Parameter(torch.tensor([2.0]))
    adapter = OptimizerAdapter([param], 'SGD', learning_rate=0.25)
    calls = []

    def loss_fn():
        calls.append(1)
        return (param ** 2).sum()

    values = [adapter.update(loss_fn) for _ in range(3)]
    assert len(calls) == 3
    # x <- x - lr * 2x halves x each step
    assert values == pytest.approx([4.0, 1.0, 0.25])
    assert param.item() == pytest.approx(0.25)


# ============================================================================
# Training step
# ============================================================================

def test_training_step_produces_iteration_outputs():
    torch.manual_seed(0)
    model = _make_model()
    true_provider, noise_provider = _make_providers()
    step = TrainingStep(model, true_provider, noise_provider, k_g_steps=3)

    result = step.step(iteration=1)

    assert step.state is TrainingState.IDLE
    assert result['iteration'] == 1
    assert len(result['losses']) == 3
    assert result['loss'] == result['losses'][-1]
    assert math.isfinite(result['loss'])
    assert result['generated'].shape == (model.pool_size, 2)
    assert result['match_indices'].shape == (16,)
    assert ((result['match_indices'] >= 0) & (result['match_indices'] < model.pool_size)).all()
    assert result['keep_mask'].shape == (model.pool_size,)


def test_zero_optimizer_steps_leave_parameters_untouched():
    model = _make_model()
    true_provider, noise_provider = _make_providers()
    before = model.export_weights()

    result = TrainingStep(model, true_provider, noise_provider, k_g_steps=0).step()

    assert result['loss'] is None
    assert result['losses'] == []
    for key, value in model.export_weights().items():
        assert torch.equal(value, before[key])


def test_failed_iteration_commits_no_update():
    model = _make_model()
    true_provider, _ = _make_providers()
    wrong_noise = InputProvider(torch.rand(100, 3), batch_size=16)
    step = TrainingStep(model, true_provider, wrong_noise, k_g_steps=2)
    before = model.export_weights()

    with pytest.raises(ValueError):
        step.step()

    assert step.state is TrainingState.IDLE
    for key, value in model.export_weights().items():
        assert torch.equal(value, before[key])


def test_fixed_latent_pool_is_reused():
    model = _make_model()
    true_provider, noise_provider = _make_providers()
    step = TrainingStep(model, true_provider, noise_provider, k_g_steps=0)
    pool = step.fix_latent_pool()

    first = step.step()['generated']
    second = step.step()['generated']
    assert pool.shape == (model.pool_size, 2)
    assert torch.equal(first, second)

    step.release_latent_pool()
    assert step.fixed_latents is None


def test_rematch_each_step_trains():
    torch.manual_seed(0)
    model = _make_model()
    true_provider, noise_provider = _make_providers()
    step = TrainingStep(model, true_provider, noise_provider, k_g_steps=2, rematch_each_step=True)

    result = step.step()
    assert len(result['losses']) == 2
    assert all(math.isfinite(v) for v in result['losses'])


def test_iterate_training_stops_at_ceiling():
    model = _make_model()
    true_provider, noise_provider = _make_providers()
    step = TrainingStep(model, true_provider, noise_provider, k_g_steps=1)

    results = list(iterate_training(step, max_iterations=7, start_iteration=4))
    assert [r['iteration'] for r in results] == [5, 6, 7]


def test_train_imle_records_history_and_evaluation():
    torch.manual_seed(0)
    generator = torch.Generator().manual_seed(0)
    (true_provider, _), (noise_provider, noise_fixed) = build_providers(
        'gaussians', 2, batch_size=32, atlas_size=2000, generator=generator
    )
    model = _make_model(batch_size=32, sample_factor=4, learning_rate=0.02)

    history = train_imle(
        model, true_provider, noise_provider,
        iterations=60, k_g_steps=1,
        eval_noise_provider=noise_fixed, true_atlas=true_provider.atlas,
        eval_interval=20, verbose=False,
    )

    assert len(history) == 60
    assert [h['iteration'] for h in history][:3] == [1, 2, 3]
    evaluated = [h for h in history if 'kl' in h]
    assert [h['iteration'] for h in evaluated] == [20, 40, 60]
    assert all(h['kl'] >= 0 and 0 <= h['js'] <= math.log(2) for h in evaluated)
    assert all(math.isfinite(h['loss']) for h in history)


def test_training_reduces_loss_on_line():
    torch.manual_seed(0)
    generator = torch.Generator().manual_seed(0)
    (true_provider, _), (noise_provider, _) = build_providers(
        'line', 2, batch_size=64, atlas_size=4000, generator=generator
    )
    model = _make_model(batch_size=64, sample_factor=2, num_generator_neurons=16,
                        noise_coefficient=0.0, learning_rate=0.01)

    history = train_imle(model, true_provider, noise_provider, iterations=300, k_g_steps=2, verbose=False)
    early = sum(h['loss'] for h in history[:20]) / 20
    late = sum(h['loss'] for h in history[-20:]) / 20
    assert late < early


class _CountingProvider(InputProvider):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = 0

    def next_batch(self):
        self.calls += 1
        return super().next_batch()


def test_train_imle_with_fixed_latent_pool_draws_noise_once():
    model = _make_model(sample_factor=2)
    true_provider, _ = _make_providers()
    noise_provider = _CountingProvider(torch.rand(500, 2), batch_size=16,
                                       generator=torch.Generator().manual_seed(0))

    train_imle(model, true_provider, noise_provider, iterations=4, k_g_steps=1,
               fixed_latent_pool=True, verbose=False)
    assert noise_provider.calls == 2

    noise_provider.calls = 0
    train_imle(model, true_provider, noise_provider, iterations=4, k_g_steps=1, verbose=False)
    assert noise_provider.calls == 8
