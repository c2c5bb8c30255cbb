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
Models module for boltzkit.

This module provides the building blocks of bipartite Boltzmann machines:
- Truncated normal moments and differentiable samplers
- Unit groups: Binary, Potts, Gaussian, ReLU, DReLU
- Tensor contractions with custom gradients
- RBM: the bipartite energy model
"""

from .rbm import RBM
from .layers import (
    UnitGroup,
    Binary,
    Potts,
    Gaussian,
    ReLU,
    DReLU,
    LAYER_TYPES,
)
from .tensor import hidden_slice, inputs_v_to_h, inputs_h_to_v, contract
from .truncnorm import (
    tnmean,
    tnvar,
    tnstd,
    tncdf,
    tnquantile,
    randnt,
    randnt_with_gradient,
    randnt_half,
)
from .utils import (
    DimensionMismatchError,
    NonFiniteGradientError,
    make_generator,
    wmean,
)

__version__ = "0.1.0"
__all__ = [
    # Core model
    "RBM",

    # Layers
    "UnitGroup",
    "Binary",
    "Potts",
    "Gaussian",
    "ReLU",
    "DReLU",
    "LAYER_TYPES",

    # Tensor contractions
    "hidden_slice",
    "inputs_v_to_h",
    "inputs_h_to_v",
    "contract",

    # Truncated normal
    "tnmean",
    "tnvar",
    "tnstd",
    "tncdf",
    "tnquantile",
    "randnt",
    "randnt_with_gradient",
    "randnt_half",

    # Utilities
    "DimensionMismatchError",
    "NonFiniteGradientError",
    "make_generator",
    "wmean",
]
