#!/usr/bin/env python3
"""
Unit tests for contrastive divergence training.

The soak test (a student model learning the free energy of a planted
model) is slow and only runs with BOLTZKIT_SOAK=1.
"""

import unittest
import os
import tempfile
import torch
from torch.autograd import gradcheck
from pathlib import Path
import sys

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from boltzkit.config import TrainingConfig
from boltzkit.data.loaders import get_data_loader
from boltzkit.models.layers import Binary, ReLU
from boltzkit.models.rbm import RBM
from boltzkit.models.utils import NonFiniteGradientError, make_generator
from boltzkit.training.callbacks import Callback, EarlyStopping, MetricMonitor, ModelCheckpoint
from boltzkit.training.eval import free_energy_correlation, log_likelihood_exact
from boltzkit.training.loop import ContrastiveDivergenceTrainer, contrastive_divergence, train


def binary_data(n_visible, n_samples, seed=0, p=0.5):
    g = torch.Generator().manual_seed(seed)
    return (torch.rand(n_visible, n_samples, generator=g) < p).double()


def small_rbm(n_visible=5, n_hidden=3, seed=0):
    rbm = RBM.from_shapes(Binary, (n_visible,), ReLU, (n_hidden,))
    return rbm.initialize(weight_std=0.3, generator=make_generator(seed))


class RecordingCallback(Callback):
    """Counts hook invocations and can stop after a number of iterations."""

    def __init__(self, stop_after=None):
        self.stop_after = stop_after
        self.begin = 0
        self.end = 0
        self.iterations = []

    def on_train_begin(self, logs, model):
        self.begin += 1

    def on_iteration_end(self, iteration, logs, model):
        self.iterations.append(iteration)

    def on_train_end(self, logs, model):
        self.end += 1

    def should_stop(self):
        return self.stop_after is not None and len(self.iterations) >= self.stop_after


class TestContrastiveDivergenceLoss(unittest.TestCase):
    """Test cases for the CD loss and its gradient."""

    def setUp(self):
        self.vd = binary_data(4, 6, seed=1)
        self.vm = binary_data(4, 5, seed=2)
        self.wd = torch.tensor([1.0, 2.0, 0.5, 1.0, 3.0, 1.5], dtype=torch.float64)
        g = torch.Generator().manual_seed(3)
        self.vis = Binary(0.5 * torch.randn(4, generator=g, dtype=torch.float64))
        self.w = 0.5 * torch.randn(4, 3, generator=g, dtype=torch.float64)
        self.theta = 0.5 * torch.randn(3, generator=g, dtype=torch.float64)
        self.gamma = 1 + torch.rand(3, generator=g, dtype=torch.float64)

    def test_gradient_matches_finite_differences(self):
        def loss(w, theta, gamma):
            rbm = RBM(self.vis, ReLU(theta, gamma), w)
            return contrastive_divergence(rbm, self.vd, self.vm, self.wd)

        inputs = tuple(x.clone().requires_grad_(True) for x in (self.w, self.theta, self.gamma))
        self.assertTrue(gradcheck(loss, inputs, eps=1e-6, atol=1e-6))

    def test_weight_gradient_is_statistics_difference(self):
        """dL/dw = <v mean_h(v)>_model - <v mean_h(v)>_data."""
        rbm = RBM(self.vis, ReLU(self.theta, self.gamma), self.w.clone().requires_grad_(True))
        contrastive_divergence(rbm, self.vd, self.vm, self.wd).backward()

        with torch.no_grad():
            wd = self.wd / self.wd.sum()
            stat_data = (self.vd * wd) @ rbm.mean_h_from_v(self.vd).T
            stat_model = self.vm @ rbm.mean_h_from_v(self.vm).T / self.vm.shape[-1]
        self.assertTrue(torch.allclose(rbm.weights.grad, stat_model - stat_data))

    def test_identical_samples_give_zero_loss(self):
        rbm = small_rbm()
        v = binary_data(5, 8)
        self.assertAlmostEqual(contrastive_divergence(rbm, v, v).item(), 0.0, places=12)

    def test_negative_weights_rejected(self):
        rbm = small_rbm()
        v = binary_data(5, 3)
        with self.assertRaises(ValueError):
            contrastive_divergence(rbm, v, v, torch.tensor([1.0, -1.0, 1.0], dtype=torch.float64))

    def test_all_zero_weights_rejected(self):
        rbm = small_rbm()
        v = binary_data(5, 3)
        with self.assertRaisesRegex(ValueError, "zero"):
            contrastive_divergence(rbm, v, v, torch.zeros(3, dtype=torch.float64))

    def test_trainer_reports_zero_weight_batch(self):
        data = binary_data(5, 32, seed=5)
        loader = get_data_loader(data, torch.zeros(32, dtype=torch.float64), batch_size=8, shuffle=False)
        trainer = ContrastiveDivergenceTrainer(small_rbm(), loader, TrainingConfig(iterations=2, seed=0))
        with self.assertRaises(ValueError):
            trainer.train()


class TestTrainer(unittest.TestCase):
    """Smoke tests for ContrastiveDivergenceTrainer."""

    def setUp(self):
        self.data = binary_data(5, 64, seed=4, p=0.3)

    def test_parameters_move(self):
        rbm = small_rbm()
        before = {name: p.detach().clone() for name, p in rbm.named_parameters()}
        history = train(rbm, self.data, iterations=20, batch_size=16, lr=0.01, seed=0, log_interval=10)

        self.assertEqual(len(history['loss']), 20)
        self.assertEqual(history['iteration'], [9, 19])
        self.assertEqual(len(history['reconstruction_error']), 2)
        for name, p in rbm.named_parameters():
            self.assertFalse(torch.equal(p.detach(), before[name]), name)

    def test_parameter_identity_preserved(self):
        rbm = small_rbm()
        weights = rbm.weights
        train(rbm, self.data, iterations=3, batch_size=16, seed=0)
        self.assertIs(rbm.weights, weights)

    def test_seeded_runs_are_reproducible(self):
        rbm1, rbm2 = small_rbm(seed=1), small_rbm(seed=1)
        train(rbm1, self.data, iterations=10, batch_size=16, lr=0.01, seed=5)
        train(rbm2, self.data, iterations=10, batch_size=16, lr=0.01, seed=5)
        for (name, p), (_, q) in zip(rbm1.named_parameters(), rbm2.named_parameters()):
            self.assertTrue(torch.equal(p, q), name)

    def test_non_finite_loss_stops_before_update(self):
        rbm = small_rbm()
        with torch.no_grad():
            rbm.weights[0, 0] = float('nan')
        before = {name: p.detach().clone() for name, p in rbm.named_parameters()}
        callback = RecordingCallback()

        with self.assertRaises(NonFiniteGradientError):
            train(rbm, self.data, callbacks=[callback], iterations=5, batch_size=16, seed=0)

        for name, p in rbm.named_parameters():
            self.assertTrue(torch.equal(p.detach().nan_to_num(), before[name].nan_to_num()), name)
        self.assertEqual(callback.end, 1)
        self.assertEqual(callback.iterations, [])

    def test_persistent_chain(self):
        rbm = small_rbm()
        config = TrainingConfig(iterations=5, batch_size=16, persistent=True, seed=0)
        trainer = ContrastiveDivergenceTrainer(rbm, self.data, config)
        trainer.train()
        self.assertEqual(tuple(trainer.chain.shape), (5, 16))
        self.assertIsNone(trainer.optimizer)

    def test_non_persistent_has_no_chain(self):
        trainer = ContrastiveDivergenceTrainer(small_rbm(), self.data, TrainingConfig(iterations=2, batch_size=16))
        trainer.train()
        self.assertIsNone(trainer.chain)

    def test_chain_resized_to_batch(self):
        config = TrainingConfig(iterations=1, persistent=True, reseed_every=3)
        trainer = ContrastiveDivergenceTrainer(small_rbm(), self.data, config)
        vd = binary_data(5, 8, seed=9)

        short = binary_data(5, 4, seed=10)
        trainer.chain = short.clone()
        start = trainer._chain_start(vd, iteration=1)
        self.assertEqual(tuple(start.shape), (5, 8))
        self.assertTrue(torch.equal(start[:, :4], short))
        self.assertTrue(torch.equal(start[:, 4:], vd[:, 4:]))
        self.assertEqual(tuple(trainer.chain.shape), (5, 8))

        long = binary_data(5, 12, seed=11)
        trainer.chain = long.clone()
        self.assertTrue(torch.equal(trainer._chain_start(vd, iteration=1), long[:, :8]))
        self.assertEqual(tuple(trainer.chain.shape), (5, 12))

        # re-seeded from the batch on multiples of reseed_every
        self.assertTrue(torch.equal(trainer._chain_start(vd, iteration=3), vd))

    def test_short_batch_keeps_unused_chains(self):
        config = TrainingConfig(iterations=1, persistent=True)
        trainer = ContrastiveDivergenceTrainer(small_rbm(), self.data, config)
        chain = binary_data(5, 16, seed=12)
        trainer.chain = chain.clone()

        vm = trainer.negative_samples(binary_data(5, 2, seed=13), iteration=1)
        self.assertEqual(tuple(vm.shape), (5, 2))
        self.assertEqual(tuple(trainer.chain.shape), (5, 16))
        self.assertTrue(torch.equal(trainer.chain[:, :2], vm))
        self.assertTrue(torch.equal(trainer.chain[:, 2:], chain[:, 2:]))

    def test_persistent_chain_across_uneven_epochs(self):
        # 50 samples in batches of 16: every epoch ends with a batch of 2
        data = binary_data(5, 50, seed=14)
        for iterations in (4, 5, 9):
            with self.subTest(iterations=iterations):
                config = TrainingConfig(iterations=iterations, batch_size=16, persistent=True, seed=0)
                trainer = ContrastiveDivergenceTrainer(small_rbm(), data, config)
                trainer.train()
                self.assertEqual(tuple(trainer.chain.shape), (5, 16))

    def test_weighted_loader(self):
        rbm = small_rbm()
        weights = torch.linspace(0.1, 1.0, 64, dtype=torch.float64)
        loader = get_data_loader(self.data, weights, batch_size=16, generator=make_generator(0))
        trainer = ContrastiveDivergenceTrainer(rbm, loader, TrainingConfig(iterations=8, batch_size=16, seed=0))
        history = trainer.train()
        self.assertEqual(len(history['loss']), 8)

    def test_step_outside_train(self):
        trainer = ContrastiveDivergenceTrainer(small_rbm(), self.data)
        with self.assertRaises(RuntimeError):
            trainer.step(self.data[:, :4])


class TestCallbacks(unittest.TestCase):
    """Test cases for callbacks driven by the trainer."""

    def setUp(self):
        self.data = binary_data(5, 64, seed=4, p=0.3)

    def test_hooks_called(self):
        callback = RecordingCallback()
        train(small_rbm(), self.data, callbacks=[callback], iterations=6, batch_size=16, seed=0)
        self.assertEqual(callback.begin, 1)
        self.assertEqual(callback.end, 1)
        self.assertEqual(callback.iterations, list(range(6)))

    def test_should_stop(self):
        callback = RecordingCallback(stop_after=3)
        history = train(small_rbm(), self.data, callbacks=[callback], iterations=50, batch_size=16, seed=0)
        self.assertEqual(len(history['loss']), 3)

    def test_early_stopping(self):
        stopper = EarlyStopping(monitor='loss', patience=2, mode='max', restore_best_weights=True, verbose=False)
        stopper.on_train_begin({}, None)
        rbm = small_rbm()
        stopper.on_iteration_end(0, {'loss': 1.0}, rbm)
        saved = rbm.weights.detach().clone()
        with torch.no_grad():
            rbm.weights.add_(1.0)
        stopper.on_iteration_end(1, {'loss': 0.5}, rbm)
        self.assertFalse(stopper.should_stop())
        stopper.on_iteration_end(2, {'loss': 0.2}, rbm)
        self.assertTrue(stopper.should_stop())
        self.assertTrue(torch.equal(rbm.weights, saved))

    def test_early_stopping_ignores_missing_metric(self):
        stopper = EarlyStopping(monitor='reconstruction_error', patience=1)
        stopper.on_iteration_end(0, {'loss': 1.0}, small_rbm())
        self.assertFalse(stopper.should_stop())

    def test_model_checkpoint(self):
        with tempfile.TemporaryDirectory() as tmp:
            checkpoint = ModelCheckpoint(Path(tmp) / 'rbm_{iteration}.pt', period=4, verbose=False)
            train(small_rbm(), self.data, callbacks=[checkpoint], iterations=8, batch_size=16, seed=0)
            names = sorted(p.name for p in checkpoint.saved)
            self.assertEqual(names, ['rbm_4.pt', 'rbm_8.pt'])
            loaded = RBM.load_checkpoint(checkpoint.saved[-1])
            self.assertEqual(tuple(loaded.weights.shape), (5, 3))

    def test_metric_monitor(self):
        monitor = MetricMonitor({'weight_norm': lambda model, logs: model.weights.norm()}, log_freq=2, verbose=False)
        train(small_rbm(), self.data, callbacks=[monitor], iterations=6, batch_size=16, seed=0)
        self.assertEqual(len(monitor.get_metric_history()['weight_norm']), 3)

    def test_likelihood_improves(self):
        """A short PCD run increases the exact log-likelihood of the data."""
        rbm = small_rbm()
        before = log_likelihood_exact(rbm, self.data).item()
        train(rbm, self.data, iterations=300, batch_size=32, lr=0.02, persistent=True, seed=0)
        self.assertGreater(log_likelihood_exact(rbm, self.data).item(), before)


@unittest.skipUnless(os.environ.get('BOLTZKIT_SOAK') == '1', "set BOLTZKIT_SOAK=1 to run")
class TestPlantedModelSoak(unittest.TestCase):
    """A student RBM trained on samples of a planted RBM learns its free energy."""

    def test_free_energy_correlation(self):
        torch.manual_seed(0)
        generator = make_generator(0)
        n_visible = 20

        planted = RBM.from_shapes(Binary, (n_visible,), Binary, (4,))
        planted.initialize(weight_std=1.0, generator=generator)

        start = binary_data(n_visible, 6000, seed=1)
        with torch.no_grad():
            samples = planted.sample_v_from_v(start, steps=500, generator=generator)
        train_data, test_data = samples[:, :5000], samples[:, 5000:]

        student = RBM.from_shapes(Binary, (n_visible,), ReLU, (8,))
        student.initialize(train_data, weight_std=0.05, generator=generator)
        train(
            student, train_data,
            iterations=5000, batch_size=100, steps=1, persistent=True,
            lr=0.01, seed=0, log_interval=1000,
        )

        self.assertGreaterEqual(free_energy_correlation(planted, student, test_data), 0.8)


if __name__ == '__main__':
    unittest.main()
