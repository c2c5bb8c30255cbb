#!/usr/bin/env python3
"""
Unit tests for boltzkit models.

This module covers the RBM: shape checks, exact free energies on small
models, sampling, flipping and checkpointing.
"""

import unittest
import math
import tempfile
import torch
from pathlib import Path
import sys

# Add project root to path
sys.path.append(str(Path(__file__).parent.parent))

from boltzkit.models.rbm import RBM
from boltzkit.models.layers import Binary, DReLU, Gaussian, Potts, ReLU
from boltzkit.models.utils import DimensionMismatchError, make_generator
from boltzkit.training.eval import enumerate_states, log_partition_exact


def random_rbm(vis, hid, seed=0, std=0.5):
    g = torch.Generator().manual_seed(seed)
    for p in vis.parameters() + hid.parameters():
        with torch.no_grad():
            p.add_(0.3 * torch.randn(p.shape, generator=g, dtype=p.dtype))
    weights = std * torch.randn(vis.shape + hid.shape, generator=g, dtype=torch.float64)
    return RBM(vis, hid, weights)


class TestRBMShapes(unittest.TestCase):
    """Test cases for shape invariants."""

    def test_weights_must_match_layers(self):
        with self.assertRaises(DimensionMismatchError):
            RBM(Binary.from_shape(3), Binary.from_shape(2), torch.zeros(3, 3, dtype=torch.float64))

    def test_default_weights_are_zero(self):
        rbm = RBM.from_shapes(Binary, (3,), ReLU, (2, 4))
        self.assertEqual(tuple(rbm.weights.shape), (3, 2, 4))
        self.assertTrue(torch.all(rbm.weights == 0))
        self.assertEqual(rbm.vdims, (0,))
        self.assertEqual(rbm.hdims, (1, 2))

    def test_batch_size_mismatch(self):
        rbm = RBM.from_shapes(Binary, (3,), Binary, (2,))
        v = torch.zeros(3, 4, dtype=torch.float64)
        h = torch.zeros(2, 5, dtype=torch.float64)
        with self.assertRaises(DimensionMismatchError):
            rbm.energy(v, h)

    def test_configuration_shape_mismatch(self):
        rbm = RBM.from_shapes(Binary, (3,), Binary, (2,))
        with self.assertRaises(DimensionMismatchError):
            rbm.free_energy(torch.zeros(4, 5, dtype=torch.float64))
        with self.assertRaises(DimensionMismatchError):
            rbm.sample_v_from_h(torch.zeros(3, 5, dtype=torch.float64))

    def test_named_parameters(self):
        rbm = RBM.from_shapes(Gaussian, (3,), DReLU, (2,))
        names = [name for name, _ in rbm.named_parameters()]
        self.assertEqual(
            names,
            ['vis.theta', 'vis.gamma', 'hid.theta_p', 'hid.theta_n', 'hid.gamma_p', 'hid.gamma_n', 'weights']
        )
        self.assertIs(rbm.parameters()[-1], rbm.weights)


class TestRBMEnergies(unittest.TestCase):
    """Test cases for energies and free energies."""

    def test_zero_weight_free_energy(self):
        """With zero weights and fields, F(v) = E_vis(v) - 2 log 2 for 2 binary hidden units."""
        rbm = RBM.from_shapes(Binary, (3,), Binary, (2,))
        with torch.no_grad():
            rbm.vis.theta.copy_(torch.tensor([0.3, -1.2, 0.8], dtype=torch.float64))
        v = enumerate_states(rbm.vis)
        self.assertEqual(tuple(v.shape), (3, 8))
        expected = rbm.vis.energy(v) - 2 * math.log(2)
        self.assertTrue(torch.allclose(rbm.free_energy(v), expected))

    def test_zero_model_partition_function(self):
        rbm = RBM.from_shapes(Binary, (3,), Binary, (2,))
        self.assertAlmostEqual(log_partition_exact(rbm).item(), 5 * math.log(2), places=12)

    def test_free_energy_marginalizes_hidden_units(self):
        """exp(-F(v)) equals the sum of exp(-E(v, h)) over binary h."""
        rbm = random_rbm(Binary.from_shape(3), Binary.from_shape(2))
        v = enumerate_states(rbm.vis)
        h = enumerate_states(rbm.hid)
        energies = torch.stack([
            rbm.energy(v, h[:, j:j + 1].expand(2, v.shape[-1])) for j in range(h.shape[-1])
        ])
        expected = -torch.logsumexp(-energies, dim=0)
        self.assertTrue(torch.allclose(rbm.free_energy(v), expected))

    def test_partition_function_by_brute_force(self):
        rbm = random_rbm(Binary.from_shape(3), Binary.from_shape(2), seed=4)
        v = enumerate_states(rbm.vis)
        h = enumerate_states(rbm.hid)
        vv = v.repeat_interleave(h.shape[-1], dim=-1)
        hh = h.repeat(1, v.shape[-1])
        expected = torch.logsumexp(-rbm.energy(vv, hh), dim=0)
        self.assertAlmostEqual(log_partition_exact(rbm).item(), expected.item(), places=10)

    def test_partition_function_at_beta(self):
        rbm = random_rbm(Binary.from_shape(3), Binary.from_shape(2), seed=5)
        beta = 0.6
        v = enumerate_states(rbm.vis)
        h = enumerate_states(rbm.hid)
        vv = v.repeat_interleave(h.shape[-1], dim=-1)
        hh = h.repeat(1, v.shape[-1])
        expected = torch.logsumexp(-beta * rbm.energy(vv, hh), dim=0)
        self.assertAlmostEqual(log_partition_exact(rbm, beta).item(), expected.item(), places=10)

    def test_potts_visible_layer(self):
        rbm = random_rbm(Potts.from_shape(3, 2), ReLU.from_shape(2), seed=2)
        v = enumerate_states(rbm.vis)
        self.assertEqual(tuple(v.shape), (3, 2, 9))
        self.assertTrue(torch.all(v.sum(0) == 1))
        self.assertTrue(torch.all(torch.isfinite(rbm.free_energy(v))))

    def test_unbatched_configuration(self):
        rbm = random_rbm(Binary.from_shape(3), Binary.from_shape(2))
        v = torch.tensor([1.0, 0.0, 1.0], dtype=torch.float64)
        self.assertEqual(rbm.free_energy(v).dim(), 0)
        self.assertAlmostEqual(rbm.free_energy(v).item(), rbm.free_energy(v.unsqueeze(-1))[0].item())


class TestRBMSampling(unittest.TestCase):
    """Test cases for conditional and block Gibbs sampling."""

    def setUp(self):
        self.rbm = random_rbm(Binary.from_shape(5), ReLU.from_shape(3), seed=1)
        self.generator = make_generator(11)
        self.v = (torch.rand(5, 16, generator=torch.Generator().manual_seed(0)) < 0.5).double()

    def test_sample_shapes(self):
        h = self.rbm.sample_h_from_v(self.v, generator=self.generator)
        self.assertEqual(tuple(h.shape), (3, 16))
        self.assertTrue(torch.all(h >= 0))
        v = self.rbm.sample_v_from_h(h, generator=self.generator)
        self.assertEqual(tuple(v.shape), (5, 16))
        self.assertTrue(torch.all((v == 0) | (v == 1)))

    def test_gibbs_chains(self):
        v = self.rbm.sample_v_from_v(self.v, steps=3, generator=self.generator)
        self.assertEqual(v.shape, self.v.shape)
        h0 = self.rbm.sample_h_from_v(self.v, generator=self.generator)
        h = self.rbm.sample_h_from_h(h0, steps=2, generator=self.generator)
        self.assertEqual(h.shape, h0.shape)

    def test_reproducible(self):
        v1 = self.rbm.sample_v_from_v(self.v, steps=2, generator=make_generator(3))
        v2 = self.rbm.sample_v_from_v(self.v, steps=2, generator=make_generator(3))
        self.assertTrue(torch.equal(v1, v2))

    def test_conditional_means(self):
        mean_h = self.rbm.mean_h_from_v(self.v)
        self.assertEqual(tuple(mean_h.shape), (3, 16))
        inputs = self.rbm.inputs_v_to_h(self.v)
        expected = self.rbm.hid.effective(inputs).transfer_mean()
        self.assertTrue(torch.allclose(mean_h, expected))
        mean_v = self.rbm.mean_v_from_h(mean_h)
        self.assertTrue(torch.all((mean_v > 0) & (mean_v < 1)))

    def test_reconstruction_error(self):
        error = self.rbm.reconstruction_error(self.v, generator=self.generator)
        self.assertGreaterEqual(error.item(), 0.0)
        self.assertLessEqual(error.item(), 1.0)

    def test_hidden_subset_inputs(self):
        rbm = random_rbm(Binary.from_shape(4), Binary.from_shape(6), seed=3)
        v = self.v[:4]
        full = rbm.inputs_v_to_h(v)
        self.assertTrue(torch.allclose(rbm.inputs_v_to_h(v, (slice(2, 5),)), full[2:5]))


class TestRBMFlip(unittest.TestCase):
    """Test cases for exchanging the layers."""

    def setUp(self):
        self.rbm = random_rbm(Binary.from_shape(3), Gaussian.from_shape(2, 2), seed=7)
        g = torch.Generator().manual_seed(1)
        self.v = (torch.rand(3, 6, generator=g) < 0.5).double()
        self.h = torch.randn(2, 2, 6, generator=g, dtype=torch.float64)

    def test_flip_swaps_roles(self):
        flipped = self.rbm.flip()
        self.assertIs(flipped.vis, self.rbm.hid)
        self.assertIs(flipped.hid, self.rbm.vis)
        self.assertEqual(tuple(flipped.weights.shape), (2, 2, 3))
        self.assertTrue(torch.allclose(flipped.energy(self.h, self.v), self.rbm.energy(self.v, self.h)))

    def test_flip_is_involution(self):
        twice = self.rbm.flip().flip()
        self.assertTrue(torch.equal(twice.weights, self.rbm.weights))
        self.assertTrue(torch.allclose(twice.energy(self.v, self.h), self.rbm.energy(self.v, self.h)))

    def test_flip_preserves_partition_function(self):
        rbm = random_rbm(Binary.from_shape(3), Potts.from_shape(3, 1), seed=8)
        self.assertAlmostEqual(log_partition_exact(rbm).item(), log_partition_exact(rbm.flip()).item(), places=10)


class TestRBMPersistence(unittest.TestCase):
    """Test cases for initialization and checkpoints."""

    def test_initialize(self):
        rbm = RBM.from_shapes(Binary, (20,), ReLU, (50,))
        data = (torch.rand(20, 400, generator=torch.Generator().manual_seed(0)) < 0.3).double()
        rbm.initialize(data, generator=make_generator(0))
        self.assertTrue(torch.allclose(rbm.vis.transfer_mean(), data.mean(-1)))
        self.assertAlmostEqual(rbm.weights.std().item(), 1 / math.sqrt(20), delta=0.05)

    def test_checkpoint_round_trip(self):
        rbm = random_rbm(Potts.from_shape(3, 4), DReLU.from_shape(2), seed=9)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'rbm.pt'
            rbm.save_checkpoint(path)
            loaded = RBM.load_checkpoint(path)

        self.assertIsInstance(loaded.vis, Potts)
        self.assertIsInstance(loaded.hid, DReLU)
        for (name, p), (other, q) in zip(rbm.named_parameters(), loaded.named_parameters()):
            self.assertEqual(name, other)
            self.assertEqual(p.dtype, q.dtype)
            self.assertTrue(torch.equal(p, q), name)

    def test_load_state_dict_in_place(self):
        source = random_rbm(Binary.from_shape(3), ReLU.from_shape(2), seed=10)
        target = RBM.from_shapes(Binary, (3,), ReLU, (2,))
        weights = target.weights
        target.load_state_dict(source.state_dict())
        self.assertIs(target.weights, weights)
        self.assertTrue(torch.equal(target.weights, source.weights))

    def test_load_state_dict_wrong_shape(self):
        source = RBM.from_shapes(Binary, (3,), ReLU, (2,))
        target = RBM.from_shapes(Binary, (4,), ReLU, (2,))
        with self.assertRaises(DimensionMismatchError):
            target.load_state_dict(source.state_dict())


if __name__ == '__main__':
    unittest.main()
