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
Evaluation utilities for trained models

This module provides:
- Free energy agreement between two models (Pearson correlation)
- Exact enumeration of small discrete visible layers
- Exact log partition function and log-likelihood by enumeration
"""

from typing import Optional
import torch
import torch.nn.functional as F
import logging

from ..models.layers import Beta, Binary, Potts, UnitGroup
from ..models.rbm import RBM
from ..models.utils import wmean

logger = logging.getLogger(__name__)

MAX_ENUMERATED_STATES = 2 ** 20


def free_energy_correlation(
    rbm_a: RBM,
    rbm_b: RBM,
    v: torch.Tensor,
    beta: Beta = 1.0
) -> float:
    """
    Pearson correlation between the free energies of two models.

    Args:
        rbm_a: First model
        rbm_b: Second model, with the same visible layer shape
        v: Visible configurations [*vis.shape, n_samples]
        beta: Inverse temperature

    Returns:
        correlation: Pearson correlation coefficient
    """
    with torch.no_grad():
        fa = rbm_a.free_energy(v, beta)
        fb = rbm_b.free_energy(v, beta)
        return torch.corrcoef(torch.stack([fa, fb]))[0, 1].item()


def enumerate_states(layer: UnitGroup, max_states: int = MAX_ENUMERATED_STATES) -> torch.Tensor:
    """
    All configurations of a discrete layer.

    Args:
        layer: Binary or Potts layer
        max_states: Refuse to enumerate more states than this

    Returns:
        states: Configurations [*layer.shape, n_states]
    """
    if isinstance(layer, Binary):
        n_sites, q = len(layer), 2
    elif isinstance(layer, Potts):
        n_sites, q = len(layer) // layer.q, layer.q
    else:
        raise TypeError(f"Cannot enumerate states of a {type(layer).__name__} layer")

    n_states = q ** n_sites
    if n_states > max_states:
        raise ValueError(f"{type(layer).__name__} layer has {n_states} states, more than {max_states}")

    index = torch.arange(n_states, device=layer.device)
    powers = q ** torch.arange(n_sites, device=layer.device)
    digits = (index.unsqueeze(0) // powers.unsqueeze(1)) % q

    if isinstance(layer, Binary):
        states = digits
    else:
        states = F.one_hot(digits, q).movedim(-1, 0)
    return states.reshape(layer.shape + (n_states,)).to(layer.dtype)


def log_partition_exact(rbm: RBM, beta: Beta = 1.0) -> torch.Tensor:
    """
    Exact log partition function, summing over all visible states.

    log Z = log sum_v exp(-beta F(v))
    """
    states = enumerate_states(rbm.vis)
    logger.debug(f"Enumerating {states.shape[-1]} visible states")
    return torch.logsumexp(-beta * rbm.free_energy(states, beta), dim=0)


def log_likelihood_exact(
    rbm: RBM,
    v: torch.Tensor,
    w: Optional[torch.Tensor] = None,
    beta: Beta = 1.0
) -> torch.Tensor:
    """Weighted mean log-likelihood of visible configurations."""
    log_z = log_partition_exact(rbm, beta)
    return wmean(-beta * rbm.free_energy(v, beta) - log_z, w)


def log_likelihood_per_unit(
    rbm: RBM,
    v: torch.Tensor,
    w: Optional[torch.Tensor] = None,
    beta: Beta = 1.0
) -> float:
    """Mean log-likelihood divided by the number of visible sites."""
    n_sites = len(rbm.vis) // rbm.vis.q if isinstance(rbm.vis, Potts) else len(rbm.vis)
    return log_likelihood_exact(rbm, v, w, beta).item() / max(n_sites, 1)
