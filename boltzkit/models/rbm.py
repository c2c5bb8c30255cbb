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
Restricted Boltzmann Machine over arbitrary unit groups

This module implements a bipartite energy model with:
- Any pair of layers (Binary, Potts, Gaussian, ReLU, DReLU)
- Tensor-shaped visible and hidden units coupled by one weight tensor
- Exact free energy by analytic marginalization of the hidden layer
- Conditional and block Gibbs sampling at inverse temperature beta
- Checkpointing of all parameter tensors
"""

from typing import Any, Dict, List, Optional, Tuple, Union
import math
import torch
import logging
from pathlib import Path

from .layers import Beta, UnitGroup
from .tensor import HiddenSelection, contract, inputs_h_to_v, inputs_v_to_h
from .utils import dims_error

logger = logging.getLogger(__name__)


class RBM:
    """
    Restricted Boltzmann Machine.

    The energy of a configuration is

        E(v, h) = E_vis(v) + E_hid(h) - sum_ij v_i w_ij h_j

    where `weights` has shape `vis.shape + hid.shape`. Layers may be shared
    between models; the weight tensor belongs to this model.
    """

    def __init__(
        self,
        vis: UnitGroup,
        hid: UnitGroup,
        weights: Optional[torch.Tensor] = None,
    ):
        """
        Initialize the model.

        Args:
            vis: Visible layer
            hid: Hidden layer
            weights: Coupling tensor [*vis.shape, *hid.shape] (if None, zeros)
        """
        if weights is None:
            weights = torch.zeros(vis.shape + hid.shape, dtype=vis.dtype, device=vis.device)

        if tuple(weights.shape) != vis.shape + hid.shape:
            raise dims_error(
                "weights must have shape vis.shape + hid.shape", weights.shape, vis.shape + hid.shape
            )

        self.vis = vis
        self.hid = hid
        self.weights = weights

    @classmethod
    def from_shapes(
        cls,
        vis_type: type,
        vis_shape: Tuple[int, ...],
        hid_type: type,
        hid_shape: Tuple[int, ...],
        dtype: torch.dtype = torch.float64,
        device: Optional[torch.device] = None,
    ) -> 'RBM':
        """Create a model with default layer parameters and zero weights."""
        vis = vis_type.from_shape(vis_shape, dtype=dtype, device=device)
        hid = hid_type.from_shape(hid_shape, dtype=dtype, device=device)
        return cls(vis, hid)

    @property
    def vdims(self) -> Tuple[int, ...]:
        """Axes of the weight tensor belonging to visible units."""
        return tuple(range(self.vis.ndim))

    @property
    def hdims(self) -> Tuple[int, ...]:
        """Axes of the weight tensor belonging to hidden units."""
        return tuple(range(self.vis.ndim, self.vis.ndim + self.hid.ndim))

    def _check_joint(self, v: torch.Tensor, h: torch.Tensor) -> None:
        self.vis.check_config(v)
        self.hid.check_config(h)
        bv = self.vis.batch_size(v)
        bh = self.hid.batch_size(h)
        if bv != bh:
            raise dims_error("visible and hidden batch sizes differ", (bv,), (bh,))

    # -- energies ---------------------------------------------------------

    def interaction_energy(self, v: torch.Tensor, h: torch.Tensor) -> torch.Tensor:
        """Weight-mediated part of the energy, -sum_ij v_i w_ij h_j."""
        self._check_joint(v, h)
        return -contract(v, self.weights, h, self.vis.ndim)

    def energy(self, v: torch.Tensor, h: torch.Tensor) -> torch.Tensor:
        """
        Energy of the configuration (v, h).

        Args:
            v: Visible configuration [*vis.shape, batch_size]
            h: Hidden configuration [*hid.shape, batch_size]

        Returns:
            energy: Energy values [batch_size]
        """
        self._check_joint(v, h)
        return self.vis.energy(v) + self.hid.energy(h) + self.interaction_energy(v, h)

    def inputs_v_to_h(self, v: torch.Tensor, hsel: HiddenSelection = None) -> torch.Tensor:
        """Input field on the hidden units (restricted to `hsel` if given)."""
        self.vis.check_config(v)
        return inputs_v_to_h(self.weights, v, self.vis.ndim, hsel)

    def inputs_h_to_v(self, h: torch.Tensor, hsel: HiddenSelection = None) -> torch.Tensor:
        """Input field on the visible units (from the units in `hsel` only if given)."""
        self.hid.check_config(h)
        return inputs_h_to_v(self.weights, h, self.vis.ndim, hsel)

    def free_energy(self, v: torch.Tensor, beta: Beta = 1.0) -> torch.Tensor:
        """
        Free energy of visible configurations, hidden units marginalized exactly.

        F(v) = E_vis(v) - cgf_hid(I_h(v), beta) / beta

        Args:
            v: Visible configuration [*vis.shape, batch_size]
            beta: Inverse temperature

        Returns:
            free_energy: Free energy values [batch_size]
        """
        energy_v = self.vis.energy(v)
        inputs = self.inputs_v_to_h(v)
        return energy_v - self.hid.log_partition(inputs, beta)

    # -- sampling ---------------------------------------------------------

    def sample_h_from_v(
        self,
        v: torch.Tensor,
        beta: Beta = 1.0,
        generator: Optional[torch.Generator] = None
    ) -> torch.Tensor:
        """Sample hidden units conditioned on visible configuration `v`."""
        return self.hid.random(self.inputs_v_to_h(v), beta, generator)

    def sample_v_from_h(
        self,
        h: torch.Tensor,
        beta: Beta = 1.0,
        generator: Optional[torch.Generator] = None
    ) -> torch.Tensor:
        """Sample visible units conditioned on hidden configuration `h`."""
        return self.vis.random(self.inputs_h_to_v(h), beta, generator)

    def sample_v_from_v(
        self,
        v: torch.Tensor,
        steps: int = 1,
        beta: Beta = 1.0,
        generator: Optional[torch.Generator] = None
    ) -> torch.Tensor:
        """
        Block Gibbs sampling starting and ending on the visible layer.

        Args:
            v: Initial visible configuration [*vis.shape, batch_size]
            steps: Number of full v -> h -> v round trips
            beta: Inverse temperature
            generator: Random generator for reproducible chains

        Returns:
            v: Visible configuration after `steps` round trips
        """
        for _ in range(steps):
            h = self.sample_h_from_v(v, beta, generator)
            v = self.sample_v_from_h(h, beta, generator)
        return v

    def sample_h_from_h(
        self,
        h: torch.Tensor,
        steps: int = 1,
        beta: Beta = 1.0,
        generator: Optional[torch.Generator] = None
    ) -> torch.Tensor:
        """Block Gibbs sampling starting and ending on the hidden layer."""
        for _ in range(steps):
            v = self.sample_v_from_h(h, beta, generator)
            h = self.sample_h_from_v(v, beta, generator)
        return h

    def mean_h_from_v(self, v: torch.Tensor, beta: Beta = 1.0) -> torch.Tensor:
        """Conditional mean of the hidden units given `v`."""
        return self.hid.effective(self.inputs_v_to_h(v), beta).transfer_mean()

    def mean_v_from_h(self, h: torch.Tensor, beta: Beta = 1.0) -> torch.Tensor:
        """Conditional mean of the visible units given `h`."""
        return self.vis.effective(self.inputs_h_to_v(h), beta).transfer_mean()

    def reconstruction_error(
        self,
        v: torch.Tensor,
        beta: Beta = 1.0,
        generator: Optional[torch.Generator] = None
    ) -> torch.Tensor:
        """Mean absolute difference between `v` and one Gibbs round trip from `v`."""
        return torch.mean(torch.abs(v - self.sample_v_from_v(v, 1, beta, generator)))

    def flip(self) -> 'RBM':
        """
        Model with visible and hidden layers interchanged.

        The layers are shared and the weights are a permuted view, so
        `flip(flip(rbm))` has the same energy function as `rbm`.
        """
        return RBM(self.hid, self.vis, self.weights.permute(self.hdims + self.vdims))

    # -- parameters -------------------------------------------------------

    def named_parameters(self) -> List[Tuple[str, torch.Tensor]]:
        """Explicit ordered list of all parameter tensors."""
        params = [(f"vis.{name}", p) for name, p in self.vis.named_parameters()]
        params += [(f"hid.{name}", p) for name, p in self.hid.named_parameters()]
        params.append(("weights", self.weights))
        return params

    def parameters(self) -> List[torch.Tensor]:
        return [p for _, p in self.named_parameters()]

    def requires_grad_(self, requires_grad: bool = True) -> 'RBM':
        for p in self.parameters():
            p.requires_grad_(requires_grad)
        return self

    def initialize(
        self,
        data: Optional[torch.Tensor] = None,
        weights: Optional[torch.Tensor] = None,
        weight_std: Optional[float] = None,
        generator: Optional[torch.Generator] = None,
    ) -> 'RBM':
        """
        Initialize parameters in place.

        Args:
            data: Visible data [*vis.shape, n_samples] to match the visible fields to
            weights: Per-sample weights of `data`
            weight_std: Standard deviation of the random weights
                (if None, 1/sqrt(number of visible units))
            generator: Random generator for reproducible initialization

        Returns:
            self
        """
        if data is not None:
            self.vis.init_from_data(data, weights)

        std = weight_std if weight_std is not None else 1 / math.sqrt(len(self.vis))
        with torch.no_grad():
            noise = torch.randn(
                self.weights.shape, generator=generator,
                dtype=self.weights.dtype, device=self.weights.device
            )
            self.weights.copy_(noise * std)

        logger.debug(f"Initialized {self!r} with weight std {std:.4g}")
        return self

    def state_dict(self) -> Dict[str, Any]:
        return {
            'vis': self.vis.state_dict(),
            'hid': self.hid.state_dict(),
            'weights': self.weights.detach().clone(),
        }

    def load_state_dict(self, state: Dict[str, Any]) -> None:
        """Copy saved parameters into this model in place."""
        self.vis.load_state_dict(state['vis'])
        self.hid.load_state_dict(state['hid'])
        if tuple(state['weights'].shape) != tuple(self.weights.shape):
            raise dims_error("saved weights have the wrong shape", state['weights'].shape, self.weights.shape)
        with torch.no_grad():
            self.weights.copy_(state['weights'])

    @classmethod
    def from_state_dict(cls, state: Dict[str, Any]) -> 'RBM':
        vis = UnitGroup.from_state_dict(state['vis'])
        hid = UnitGroup.from_state_dict(state['hid'])
        return cls(vis, hid, state['weights'].clone())

    def save_checkpoint(self, filepath: Union[str, Path]) -> None:
        """Save model checkpoint."""
        torch.save(self.state_dict(), filepath)
        logger.info(f"Checkpoint saved to {filepath}")

    @classmethod
    def load_checkpoint(cls, filepath: Union[str, Path], device: Optional[torch.device] = None) -> 'RBM':
        """Load model from checkpoint."""
        state = torch.load(filepath, map_location=device)
        model = cls.from_state_dict(state)
        logger.info(f"Checkpoint loaded from {filepath}")
        return model

    def __repr__(self) -> str:
        return f"RBM(vis={self.vis!r}, hid={self.hid!r})"
