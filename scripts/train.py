# Copyright 2025 boltzkit Contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Training script for boltzkit RBMs.

Loads a run configuration, a dataset and trains an RBM by contrastive
divergence, writing checkpoints and the resolved configuration to an
output directory.

Usage:
    # Basic training
    python scripts/train.py --config=configs/cd_default.yaml --data=data.npy

    # Samples stored along the first axis, persistent chain, more steps
    python scripts/train.py --config=configs/cd_default.yaml --data=data.pt \\
        --samples_first --pcd --steps=10 --lr=0.005

    # Resume from checkpoint
    python scripts/train.py --config=configs/cd_default.yaml --data=data.npy \\
        --resume=runs/cd_default/final.pt
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import torch

sys.path.append(str(Path(__file__).parent.parent))

from boltzkit.config import ConfigManager, TrainingConfig
from boltzkit.models.rbm import RBM
from boltzkit.training.callbacks import get_standard_callbacks
from boltzkit.training.loop import ContrastiveDivergenceTrainer

logger = logging.getLogger(__name__)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description='Train boltzkit RBMs',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument('--config', type=str, required=True,
                        help='Run configuration (.yaml or .json)')
    parser.add_argument('--data', type=str, required=True,
                        help='Visible data (.npy or .pt)')
    parser.add_argument('--weights', type=str, help='Sample weights (.npy or .pt)')
    parser.add_argument('--samples_first', action='store_true',
                        help='Data stores samples along the first axis')

    # Training configuration overrides
    parser.add_argument('--iterations', type=int, help='Number of parameter updates')
    parser.add_argument('--steps', type=int, help='Gibbs round trips per iteration')
    parser.add_argument('--batch_size', type=int, help='Batch size')
    parser.add_argument('--lr', type=float, help='Learning rate')
    parser.add_argument('--pcd', action='store_true', help='Use a persistent chain')
    parser.add_argument('--seed', type=int, help='Random seed')

    # Run control
    parser.add_argument('--output', type=str, default='runs',
                        help='Output directory')
    parser.add_argument('--device', type=str, default='cpu', help='Device to use')
    parser.add_argument('--resume', type=str, help='Resume from checkpoint path')
    parser.add_argument('--patience', type=int, help='Early stopping patience')
    parser.add_argument('--checkpoint_period', type=int, default=1000,
                        help='Iterations between checkpoints')
    parser.add_argument('--dry_run', action='store_true',
                        help='Validate inputs without training')
    parser.add_argument('--log_level', type=str, default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')

    return parser.parse_args(argv)


def collect_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Map command line options onto dotted config keys."""
    overrides = {
        'training.iterations': args.iterations,
        'training.steps': args.steps,
        'training.batch_size': args.batch_size,
        'training.seed': args.seed,
        'optimizer.lr': args.lr,
    }
    overrides = {key: value for key, value in overrides.items() if value is not None}
    if args.pcd:
        overrides['training.persistent'] = True
    return overrides


def load_array(path: Path) -> torch.Tensor:
    """Load a .npy or .pt file as a float64 tensor."""
    if path.suffix == '.npy':
        array = torch.from_numpy(np.load(path))
    elif path.suffix in ('.pt', '.pth'):
        array = torch.load(path)
    else:
        raise ValueError(f"Unsupported data format: {path.suffix}")
    return array.to(torch.float64)


def load_data(args: argparse.Namespace, device: torch.device) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
    """Load visible data (batch axis last) and optional weights."""
    v = load_array(Path(args.data))
    if args.samples_first:
        v = torch.movedim(v, 0, -1)
    w = load_array(Path(args.weights)) if args.weights else None
    logger.info(f"Loaded {v.shape[-1]} samples of shape {tuple(v.shape[:-1])} from {args.data}")
    return v.to(device), None if w is None else w.to(device)


def build_model(config: Dict[str, Any], args: argparse.Namespace, v: torch.Tensor,
                w: Optional[torch.Tensor], device: torch.device) -> RBM:
    """Create a fresh model or restore one from a checkpoint."""
    if args.resume:
        rbm = RBM.load_checkpoint(args.resume, device=device)
        logger.info(f"Resumed from {args.resume}")
        return rbm

    rbm = ConfigManager.build_model(config, device=device)
    seed = config['training'].get('seed')
    generator = torch.Generator(device=device).manual_seed(seed) if seed is not None else None
    rbm.initialize(v, w, weight_std=config['model'].get('weight_std'), generator=generator)
    return rbm


def main(argv: Optional[List[str]] = None) -> Dict[str, List[float]]:
    """Main training function."""
    args = parse_arguments(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    config = ConfigManager.load(args.config, overrides=collect_overrides(args))
    options = TrainingConfig.from_dict(config)
    device = torch.device(args.device)

    v, w = load_data(args, device)
    rbm = build_model(config, args, v, w, device)

    output_dir = Path(args.output) / config.get('name', Path(args.config).stem)
    output_dir.mkdir(parents=True, exist_ok=True)
    ConfigManager.save(config, output_dir / 'config.yaml')

    if args.dry_run:
        logger.info(f"Dry run: {rbm!r} on data {tuple(v.shape)}")
        return {}

    callbacks = get_standard_callbacks(
        save_dir=output_dir,
        patience=args.patience,
        checkpoint_period=args.checkpoint_period,
        log_freq=options.log_interval
    )
    trainer = ContrastiveDivergenceTrainer(rbm, v, options, callbacks=callbacks, data_weights=w)
    history = trainer.train()

    rbm.save_checkpoint(output_dir / 'final.pt')
    logger.info(f"Training finished, outputs in {output_dir}")
    return history


if __name__ == '__main__':
    main()
