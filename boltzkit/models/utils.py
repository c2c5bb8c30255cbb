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
Shared helpers for Boltzmann machine components

This module provides:
- Error types for shape and numerical failures
- Weighted averages over the batch axis
- Generator construction for reproducible sampling
"""

from typing import Optional, Sequence, Tuple, Union
import torch
import logging

logger = logging.getLogger(__name__)


class DimensionMismatchError(ValueError):
    """Raised when a tensor shape violates a layer or model invariant."""


class NonFiniteGradientError(FloatingPointError):
    """Raised when a training step produces NaN or infinite gradients."""


class ConfigValidationError(ValueError):
    """Raised when a training configuration is invalid."""


def dims_error(message: str, *shapes: Sequence[int]) -> DimensionMismatchError:
    """Build a descriptive dimension error."""
    if shapes:
        message = f"{message}: " + " vs ".join(str(tuple(s)) for s in shapes)
    return DimensionMismatchError(message)


def as_tensor(
    x: Union[torch.Tensor, float, Sequence[float]],
    dtype: Optional[torch.dtype] = None,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """Convert scalars and sequences to tensors, leaving tensors untouched."""
    if isinstance(x, torch.Tensor):
        return x
    return torch.as_tensor(x, dtype=dtype or torch.get_default_dtype(), device=device)


def make_generator(
    seed: Optional[int] = None,
    device: Optional[torch.device] = None,
) -> torch.Generator:
    """
    Create a seeded random generator.

    Args:
        seed: Seed for the stream (if None, a non-deterministic seed is used)
        device: Device the generator draws on

    Returns:
        generator: A torch.Generator
    """
    generator = torch.Generator(device=device or torch.device('cpu'))
    if seed is None:
        generator.seed()
    else:
        generator.manual_seed(seed)
    return generator


def normalized_weights(
    w: Optional[torch.Tensor],
    batch_size: int,
    like: torch.Tensor,
) -> torch.Tensor:
    """
    Per-example weights normalized to sum to one.

    Args:
        w: Non-negative weights [batch_size] (if None, uniform weights)
        batch_size: Expected number of examples
        like: Tensor whose dtype and device the weights should match

    Returns:
        weights: Normalized weights [batch_size]
    """
    if w is None:
        return torch.full((batch_size,), 1.0 / batch_size, dtype=like.dtype, device=like.device)

    w = w.to(dtype=like.dtype, device=like.device)
    if w.shape != (batch_size,):
        raise dims_error("weights must have one entry per batch element", w.shape, (batch_size,))
    if torch.any(w < 0):
        raise ValueError("weights must be non-negative")
    total = w.sum()
    if total == 0:
        raise ValueError(f"weights of all {batch_size} examples are zero")
    return w / total


def wmean(x: torch.Tensor, w: Optional[torch.Tensor] = None) -> torch.Tensor:
    """Weighted mean of a per-example quantity [batch_size]."""
    return torch.sum(x * normalized_weights(w, x.shape[-1], x))


def batch_mean(x: torch.Tensor, w: Optional[torch.Tensor] = None) -> torch.Tensor:
    """Weighted mean over the trailing batch axis, keeping the unit axes."""
    return torch.sum(x * normalized_weights(w, x.shape[-1], x), dim=-1)


def sum_units(x: torch.Tensor, n_unit_dims: int) -> torch.Tensor:
    """Sum over the leading unit axes, leaving any batch axes."""
    if n_unit_dims == 0:
        return x
    return x.sum(dim=tuple(range(n_unit_dims)))


def shape_tuple(shape: Union[int, Sequence[int], torch.Size]) -> Tuple[int, ...]:
    """Normalize a shape argument to a tuple of ints."""
    if isinstance(shape, int):
        return (shape,)
    return tuple(int(s) for s in shape)
