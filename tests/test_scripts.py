#!/usr/bin/env python3
"""
Tests for the command line training script.
"""

import unittest
import importlib.util
import tempfile
import numpy as np
import torch
from pathlib import Path
import sys

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.append(str(PROJECT_ROOT))

from boltzkit.models.rbm import RBM
from boltzkit.models.utils import ConfigValidationError


def load_train_script():
    spec = importlib.util.spec_from_file_location('train_script', PROJECT_ROOT / 'scripts' / 'train.py')
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestTrainScript(unittest.TestCase):
    """Test cases for scripts/train.py."""

    def setUp(self):
        self.script = load_train_script()
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        rng = np.random.default_rng(0)
        # samples along the first axis, as most data files store them
        self.data_path = self.root / 'data.npy'
        np.save(self.data_path, (rng.random((40, 7)) < 0.3).astype(np.float64))
        self.config = str(PROJECT_ROOT / 'configs' / 'cd_default.yaml')

    def tearDown(self):
        self.tmp.cleanup()

    def run_script(self, *extra):
        argv = [
            '--config', self.config, '--data', str(self.data_path), '--samples_first',
            '--output', str(self.root / 'runs'), '--log_level', 'WARNING',
            '--iterations', '6', '--batch_size', '10', '--checkpoint_period', '3',
        ]
        return self.script.main(argv + list(extra))

    def test_overrides(self):
        args = self.script.parse_arguments(['--config', 'c.yaml', '--data', 'd.npy', '--lr', '0.01', '--pcd'])
        overrides = self.script.collect_overrides(args)
        self.assertEqual(overrides, {'optimizer.lr': 0.01, 'training.persistent': True})

    def test_training_writes_outputs(self):
        history = self.run_script()
        self.assertEqual(len(history['loss']), 6)

        run_dir = self.root / 'runs' / 'cd_default'
        for name in ['config.yaml', 'final.pt', 'checkpoint_000003.pt', 'checkpoint_000006.pt']:
            self.assertTrue((run_dir / name).exists(), name)

        rbm = RBM.load_checkpoint(run_dir / 'final.pt')
        self.assertEqual(tuple(rbm.weights.shape), (7, 2))

    def test_resume(self):
        self.run_script()
        final = self.root / 'runs' / 'cd_default' / 'final.pt'
        before = RBM.load_checkpoint(final).weights
        self.run_script('--resume', str(final))
        after = RBM.load_checkpoint(final).weights
        self.assertFalse(torch.equal(before, after))

    def test_dry_run(self):
        self.assertEqual(self.run_script('--dry_run'), {})
        self.assertFalse((self.root / 'runs' / 'cd_default' / 'final.pt').exists())

    def test_wrong_data_shape(self):
        np.save(self.data_path, np.zeros((40, 5)))
        with self.assertRaises(ValueError):
            self.run_script()

    def test_invalid_override(self):
        with self.assertRaises(ConfigValidationError):
            self.run_script('--steps', '0')

    def test_unsupported_format(self):
        self.data_path = self.root / 'data.csv'
        self.data_path.write_text('0,1\n')
        with self.assertRaises(ValueError):
            self.run_script()


if __name__ == '__main__':
    unittest.main()
