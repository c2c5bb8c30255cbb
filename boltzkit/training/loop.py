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
Contrastive divergence training with callbacks and logging

This module provides the training loop for RBMs:
- The weighted contrastive divergence loss
- Negative samples by block Gibbs from the batch or a persistent chain
- Adam updates over the model's explicit parameter list
- Detection of non-finite losses and gradients before any update
- Progress tracking, metric history and callbacks
"""

from typing import Any, Dict, List, Optional, Tuple, Union
import torch
from torch.utils.data import DataLoader
import logging
import time
from tqdm import tqdm

from ..config import TrainingConfig
from ..data.loaders import get_data_loader, infinite_batches
from ..models.layers import Beta
from ..models.rbm import RBM
from ..models.utils import NonFiniteGradientError, make_generator, wmean
from .callbacks import Callback

logger = logging.getLogger(__name__)


def contrastive_divergence(
    rbm: RBM,
    vd: torch.Tensor,
    vm: torch.Tensor,
    wd: Optional[torch.Tensor] = None,
    wm: Optional[torch.Tensor] = None,
    beta: Beta = 1.0,
) -> torch.Tensor:
    """
    Contrastive divergence loss.

    The gradient of this loss with respect to any parameter is the
    weighted data average of d(free energy) minus its average over the
    negative samples.

    Args:
        rbm: Model
        vd: Data configurations [*vis.shape, batch_size]
        vm: Negative (model) configurations [*vis.shape, n_samples]
        wd: Data weights (if None, uniform)
        wm: Negative sample weights (if None, uniform)
        beta: Inverse temperature

    Returns:
        loss: Scalar tensor
    """
    return wmean(rbm.free_energy(vd, beta), wd) - wmean(rbm.free_energy(vm, beta), wm)


class ContrastiveDivergenceTrainer:
    """
    Iteration-based contrastive divergence trainer.

    The trainer is the only writer of the model parameters during a run.
    The optimizer state lives for the duration of `train()` and is
    discarded at the end.
    """

    def __init__(
        self,
        rbm: RBM,
        data: Union[torch.Tensor, DataLoader],
        config: Optional[TrainingConfig] = None,
        callbacks: Optional[List[Callback]] = None,
        data_weights: Optional[torch.Tensor] = None,
        generator: Optional[torch.Generator] = None,
    ):
        """
        Initialize trainer.

        Args:
            rbm: Model to train
            data: Visible configurations [*vis.shape, n_samples] or a loader
                yielding (configuration, weights) batches
            config: Training options
            callbacks: List of training callbacks
            data_weights: Sample weights when `data` is a tensor
            generator: Random generator for Gibbs sampling
                (if None, one is seeded from `config.seed`)
        """
        self.rbm = rbm
        self.config = config or TrainingConfig()
        self.callbacks = callbacks or []
        self.generator = generator or make_generator(self.config.seed, rbm.weights.device)

        if isinstance(data, torch.Tensor):
            # Shuffling draws on the CPU regardless of the model device
            self.loader = get_data_loader(
                data, data_weights,
                batch_size=self.config.batch_size,
                shuffle=True,
                generator=make_generator(self.config.seed),
            )
        else:
            self.loader = data

        self.optimizer: Optional[torch.optim.Optimizer] = None
        self.chain: Optional[torch.Tensor] = None
        self.history: Dict[str, List[float]] = {
            'loss': [],
            'iteration': [],
            'reconstruction_error': [],
            'free_energy': [],
        }

        logger.info(f"CD trainer initialized for {rbm!r}")

    def _trainable(self) -> List[Tuple[str, torch.Tensor]]:
        """Named parameters, each tensor listed once."""
        seen = set()
        params = []
        for name, p in self.rbm.named_parameters():
            if id(p) in seen:
                continue
            if not p.is_leaf:
                raise ValueError(f"Parameter '{name}' is not a leaf tensor and cannot be optimized")
            seen.add(id(p))
            params.append((name, p))
        return params

    def _make_optimizer(self, params: List[Tuple[str, torch.Tensor]]) -> torch.optim.Optimizer:
        return torch.optim.Adam(
            [p for _, p in params],
            lr=self.config.lr,
            betas=self.config.betas,
            eps=self.config.eps,
            weight_decay=self.config.weight_decay,
        )

    def _prepare(self, v: torch.Tensor, w: Optional[torch.Tensor]) -> Tuple[torch.Tensor, Optional[torch.Tensor]]:
        v = v.to(dtype=self.rbm.weights.dtype, device=self.rbm.weights.device)
        if w is not None:
            w = w.to(dtype=v.dtype, device=v.device)
        return v, w

    def _chain_start(self, vd: torch.Tensor, iteration: int) -> torch.Tensor:
        """
        Starting point of the negative chain for this iteration.

        The persistent chain only grows: a batch larger than the chain
        appends its extra columns, a smaller one runs on the leading
        columns and leaves the rest untouched.
        """
        if not self.config.persistent:
            return vd

        reseed = self.config.reseed_every > 0 and iteration % self.config.reseed_every == 0
        if self.chain is None or reseed:
            self.chain = vd.clone()

        n_chain, n_batch = self.chain.shape[-1], vd.shape[-1]
        if n_chain < n_batch:
            self.chain = torch.cat([self.chain, vd[..., n_chain:]], dim=-1)
        return self.chain[..., :n_batch]

    def negative_samples(self, vd: torch.Tensor, iteration: int = 0) -> torch.Tensor:
        """Run block Gibbs from the batch (or the persistent chain)."""
        with torch.no_grad():
            start = self._chain_start(vd, iteration)
            vm = self.rbm.sample_v_from_v(start, self.config.steps, generator=self.generator)
            if self.config.persistent:
                self.chain[..., :vm.shape[-1]] = vm
        return vm

    def step(
        self,
        vd: torch.Tensor,
        wd: Optional[torch.Tensor] = None,
        iteration: int = 0,
    ) -> float:
        """
        One parameter update on a batch.

        Args:
            vd: Data configurations [*vis.shape, batch_size]
            wd: Data weights [batch_size]
            iteration: Iteration index, used for re-seeding the chain

        Returns:
            loss: Value of the CD loss before the update

        Raises:
            NonFiniteGradientError: If the loss or any gradient is NaN or infinite
        """
        if self.optimizer is None:
            raise RuntimeError("step() called outside of train()")

        vm = self.negative_samples(vd, iteration)

        self.optimizer.zero_grad()
        loss = contrastive_divergence(self.rbm, vd, vm, wd)
        if not torch.isfinite(loss):
            raise NonFiniteGradientError(f"Non-finite loss {loss.item()} at iteration {iteration}")

        loss.backward()
        for name, p in self._params:
            if p.grad is not None and not torch.all(torch.isfinite(p.grad)):
                raise NonFiniteGradientError(f"Non-finite gradient for '{name}' at iteration {iteration}")

        self.optimizer.step()
        return loss.item()

    def _compute_metrics(self, vd: torch.Tensor, wd: Optional[torch.Tensor]) -> Dict[str, float]:
        with torch.no_grad():
            return {
                'reconstruction_error': self.rbm.reconstruction_error(vd, generator=self.generator).item(),
                'free_energy': wmean(self.rbm.free_energy(vd), wd).item(),
            }

    def _should_stop(self) -> bool:
        for callback in self.callbacks:
            if callback.should_stop():
                logger.info(f"Early stopping triggered by {type(callback).__name__}")
                return True
        return False

    def train(self) -> Dict[str, List[float]]:
        """
        Main training loop.

        Returns:
            history: Loss at every iteration, metrics at log intervals
        """
        config = self.config
        logger.info(f"Starting training for {config.iterations} iterations")

        self.rbm.requires_grad_(True)
        self._params = self._trainable()
        self.optimizer = self._make_optimizer(self._params)
        self.chain = None
        batches = infinite_batches(self.loader)

        for callback in self.callbacks:
            callback.on_train_begin(logs={}, model=self.rbm)

        start_time = time.time()
        pbar = tqdm(
            range(config.iterations),
            desc="CD training",
            disable=not logger.isEnabledFor(logging.INFO)
        )

        try:
            for iteration in pbar:
                vd, wd = self._prepare(*next(batches))
                loss = self.step(vd, wd, iteration)

                logs: Dict[str, Any] = {'iteration': iteration, 'loss': loss}
                self.history['loss'].append(loss)

                last = iteration == config.iterations - 1
                if (iteration + 1) % config.log_interval == 0 or last:
                    metrics = self._compute_metrics(vd, wd)
                    logs.update(metrics)
                    self.history['iteration'].append(iteration)
                    for key, value in metrics.items():
                        self.history[key].append(value)

                    pbar.set_postfix({'loss': f'{loss:.4f}', 'recon': f"{metrics['reconstruction_error']:.4f}"})
                    logger.info(
                        f"Iteration {iteration + 1}/{config.iterations}"
                        f" - loss: {loss:.4f}"
                        f" - reconstruction_error: {metrics['reconstruction_error']:.4f}"
                        f" - free_energy: {metrics['free_energy']:.4f}"
                    )

                for callback in self.callbacks:
                    callback.on_iteration_end(iteration=iteration, logs=logs, model=self.rbm)

                if self._should_stop():
                    break

        except KeyboardInterrupt:
            logger.info("Training interrupted by user")

        except Exception as e:
            logger.error(f"Training failed with error: {e}")
            raise

        finally:
            pbar.close()
            self.optimizer = None
            for callback in self.callbacks:
                callback.on_train_end(logs=self.history, model=self.rbm)

        logger.info(f"Training completed in {time.time() - start_time:.2f}s")
        return self.history


def train(
    rbm: RBM,
    data: Union[torch.Tensor, DataLoader],
    weights: Optional[torch.Tensor] = None,
    callbacks: Optional[List[Callback]] = None,
    generator: Optional[torch.Generator] = None,
    **options
) -> Dict[str, List[float]]:
    """
    Train an RBM by contrastive divergence.

    Args:
        rbm: Model to train in place
        data: Visible configurations [*vis.shape, n_samples] or a loader
        weights: Sample weights [n_samples]
        callbacks: List of training callbacks
        generator: Random generator for Gibbs sampling
        **options: TrainingConfig fields (iterations, steps, persistent, lr, ...)

    Returns:
        history: Training history
    """
    config = TrainingConfig(**options)
    trainer = ContrastiveDivergenceTrainer(
        rbm, data, config, callbacks=callbacks, data_weights=weights, generator=generator
    )
    return trainer.train()
