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
Training module for boltzkit.

This module provides the training infrastructure for RBMs:
- ContrastiveDivergenceTrainer: iteration-based CD / PCD with Adam
- train: one-call entry point
- Callbacks: Early stopping, checkpointing, logging, and monitoring
- Exact evaluation for small discrete models
"""

from .loop import ContrastiveDivergenceTrainer, contrastive_divergence, train
from .callbacks import (
    Callback,
    EarlyStopping,
    ModelCheckpoint,
    ProgressLogger,
    MetricMonitor,
    get_standard_callbacks
)
from .eval import (
    free_energy_correlation,
    enumerate_states,
    log_partition_exact,
    log_likelihood_exact,
    log_likelihood_per_unit
)

__version__ = "0.1.0"
__all__ = [
    # Core training
    "ContrastiveDivergenceTrainer",
    "contrastive_divergence",
    "train",

    # Callbacks
    "Callback",
    "EarlyStopping",
    "ModelCheckpoint",
    "ProgressLogger",
    "MetricMonitor",
    "get_standard_callbacks",

    # Evaluation
    "free_energy_correlation",
    "enumerate_states",
    "log_partition_exact",
    "log_likelihood_exact",
    "log_likelihood_per_unit"
]
