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
Hooks into the contrastive divergence trainer

Callbacks are invoked by the contrastive divergence trainer:
- on_train_begin / on_train_end around the run
- on_iteration_end after every parameter update
A callback exposing `should_stop()` can end the run early.
"""

from typing import Any, Callable, Dict, List, Optional, Union
import numpy as np
import logging
import time
from pathlib import Path
from abc import ABC

from ..models.rbm import RBM

logger = logging.getLogger(__name__)


class Callback(ABC):
    """Hook interface; every method is optional."""

    def on_train_begin(self, logs: Dict[str, Any], model: RBM) -> None:
        """Before the first parameter update."""
        pass

    def on_train_end(self, logs: Dict[str, Any], model: RBM) -> None:
        """After the last update, also when the run fails or is interrupted."""
        pass

    def on_iteration_end(self, iteration: int, logs: Dict[str, Any], model: RBM) -> None:
        """Called after each parameter update."""
        pass

    def should_stop(self) -> bool:
        return False


class EarlyStopping(Callback):
    """Stop training when a monitored metric stops improving."""

    def __init__(
        self,
        monitor: str = 'reconstruction_error',
        patience: int = 10,
        min_delta: float = 0.0,
        mode: str = 'min',
        restore_best_weights: bool = False,
        verbose: bool = True
    ):
        """
        Args:
            monitor: Key of the trainer logs to watch (only present at log intervals)
            patience: Number of evaluations with no improvement to wait
            min_delta: Margin by which the metric must beat the best value
            mode: 'min' if lower values are better, 'max' otherwise
            restore_best_weights: Load the best state_dict back into the RBM on stop
            verbose: Whether to log messages
        """
        self.monitor = monitor
        self.patience = patience
        self.min_delta = min_delta
        self.mode = mode
        self.restore_best_weights = restore_best_weights
        self.verbose = verbose

        self.wait = 0
        self.stopped_iteration = 0
        self.best_weights = None

        if mode == 'min':
            self.monitor_op = np.less
            self.best = np.inf
        elif mode == 'max':
            self.monitor_op = np.greater
            self.best = -np.inf
        else:
            raise ValueError(f"mode must be 'min' or 'max', got {mode!r}")

    def on_train_begin(self, logs: Dict[str, Any], model: RBM) -> None:
        """Forget the previous run."""
        self.wait = 0
        self.stopped_iteration = 0
        self.best = np.inf if self.mode == 'min' else -np.inf
        self.best_weights = None

    def on_iteration_end(self, iteration: int, logs: Dict[str, Any], model: RBM) -> None:
        """Compare the monitored metric against the best seen so far."""
        current = logs.get(self.monitor)
        if current is None:
            return

        improved = (
            self.monitor_op(current + self.min_delta, self.best) if self.mode == 'min'
            else self.monitor_op(current - self.min_delta, self.best)
        )
        if improved:
            self.best = current
            self.wait = 0
            if self.restore_best_weights:
                self.best_weights = model.state_dict()
        else:
            self.wait += 1
            if self.wait >= self.patience:
                self.stopped_iteration = iteration
                if self.verbose:
                    logger.info(f"Early stopping at iteration {iteration + 1}")

                if self.restore_best_weights and self.best_weights is not None:
                    model.load_state_dict(self.best_weights)
                    if self.verbose:
                        logger.info(f"Restored parameters with {self.monitor}={self.best:.4f}")

    def should_stop(self) -> bool:
        """True once patience is exhausted."""
        return self.wait >= self.patience


class ModelCheckpoint(Callback):
    """Periodic `RBM.save_checkpoint` calls, named by iteration."""

    def __init__(
        self,
        filepath: Union[str, Path],
        period: int = 100,
        save_last: bool = True,
        verbose: bool = True
    ):
        """
        Write RBM checkpoints to disk.

        Args:
            filepath: Checkpoint path; may contain '{iteration}'
            period: Iterations between checkpoints
            save_last: Whether to also save when training ends
            verbose: Whether to log messages
        """
        self.filepath = Path(filepath)
        self.period = period
        self.save_last = save_last
        self.verbose = verbose
        self.last_iteration = 0
        self.saved: List[Path] = []

        self.filepath.parent.mkdir(parents=True, exist_ok=True)

    def on_iteration_end(self, iteration: int, logs: Dict[str, Any], model: RBM) -> None:
        """Save a checkpoint every `period` iterations."""
        self.last_iteration = iteration
        if (iteration + 1) % self.period == 0:
            self._save_model(model, iteration)

    def on_train_end(self, logs: Dict[str, Any], model: RBM) -> None:
        if self.save_last:
            self._save_model(model, self.last_iteration)

    def _save_model(self, model: RBM, iteration: int) -> None:
        """Save the model."""
        filepath = Path(str(self.filepath).format(iteration=iteration + 1))
        model.save_checkpoint(filepath)
        if filepath not in self.saved:
            self.saved.append(filepath)

        if self.verbose:
            logger.info(f"Iteration {iteration + 1}: checkpoint {filepath.name} written")


class MetricMonitor(Callback):
    """Evaluate user metrics on the model at a fixed iteration interval."""

    def __init__(
        self,
        metrics: Dict[str, Callable[[RBM, Dict[str, Any]], float]],
        log_freq: int = 1,
        verbose: bool = True
    ):
        """
        Metric values are added to the logs as custom_<name>.

        Args:
            metrics: Dictionary of metric name -> metric function(model, logs)
            log_freq: Frequency (iterations) for computing metrics
            verbose: Whether to log metric values
        """
        self.metrics = metrics
        self.log_freq = log_freq
        self.verbose = verbose
        self.metric_history = {name: [] for name in metrics.keys()}

    def on_iteration_end(self, iteration: int, logs: Dict[str, Any], model: RBM) -> None:
        """Evaluate every metric and record it in the logs."""
        if (iteration + 1) % self.log_freq == 0:
            for name, metric_fn in self.metrics.items():
                value = float(metric_fn(model, logs))
                self.metric_history[name].append(value)
                logs[f'custom_{name}'] = value

                if self.verbose:
                    logger.info(f"Iteration {iteration + 1} - {name}: {value:.4f}")

    def get_metric_history(self) -> Dict[str, List[float]]:
        """Copy of the recorded values per metric."""
        return self.metric_history.copy()


class ProgressLogger(Callback):
    """Log the loss and wall time every few iterations."""

    def __init__(self, log_freq: int = 100):
        """
        Periodic loss logging.

        Args:
            log_freq: Frequency (iterations) for logging progress
        """
        self.log_freq = log_freq
        self.start_time = None

    def on_train_begin(self, logs: Dict[str, Any], model: RBM) -> None:
        """Start the wall clock."""
        self.start_time = time.time()
        logger.info(f"CD training started for {model!r}")

    def on_iteration_end(self, iteration: int, logs: Dict[str, Any], model: RBM) -> None:
        """Log progress."""
        if (iteration + 1) % self.log_freq == 0:
            elapsed = time.time() - self.start_time
            logger.info(f"Iteration {iteration + 1} - loss: {logs.get('loss', float('nan')):.4f} - {elapsed:.2f}s")

    def on_train_end(self, logs: Dict[str, Any], model: RBM) -> None:
        """Log the total wall time."""
        if self.start_time:
            total_time = time.time() - self.start_time
            logger.info(f"Training completed in {total_time:.2f}s")


def get_standard_callbacks(
    save_dir: Path,
    patience: Optional[int] = None,
    monitor: str = 'reconstruction_error',
    checkpoint_period: int = 1000,
    log_freq: int = 100
) -> List[Callback]:
    """
    Checkpointing and progress logging, plus early stopping when `patience` is set.

    Args:
        save_dir: Directory for checkpoints
        patience: Patience for early stopping (if None, no early stopping)
        monitor: Metric to monitor for early stopping
        checkpoint_period: Iterations between checkpoints
        log_freq: Iterations between progress logs

    Returns:
        callbacks: Callbacks in the order the trainer should run them
    """
    callbacks: List[Callback] = [
        ModelCheckpoint(
            filepath=Path(save_dir) / 'checkpoint_{iteration:06d}.pt',
            period=checkpoint_period,
        ),
        ProgressLogger(log_freq=log_freq)
    ]

    if patience is not None:
        callbacks.insert(0, EarlyStopping(monitor=monitor, patience=patience))

    return callbacks
