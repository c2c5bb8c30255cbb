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
Standard normal truncated to a half-line [a, inf)

This module provides:
- Stable moments (mean, variance, standard deviation) for any real `a`
- A vectorized rejection sampler with a bounded number of rounds
- The pathwise derivative of a sample with respect to `a`, wired into
  autograd through `TruncNormSample`
- `randnt_half`, a reparameterized sampler for a normal N(mu, sigma^2)
  restricted to non-negative values

All functions operate elementwise on tensors. Float64 is recommended:
the moment formulas lose relative precision in float32 for large `a`.
"""

from typing import Optional, Tuple, Union
import math
import torch
import logging

from .utils import as_tensor

logger = logging.getLogger(__name__)

# Moments and sample derivatives switch to asymptotic series in 1/a here.
TN_ASYMPTOTIC_THRESHOLD = 100.0

# Below this truncation point plain rejection from N(0, 1) is used.
NAIVE_REJECTION_BOUND = 0.45

# Upper bound on vectorized rejection rounds per call.
MAX_REJECTION_ROUNDS = 64

# Above this truncation point the inverse CDF uses the exponential tail.
_QUANTILE_TAIL_BOUND = 30.0

SQRT2 = math.sqrt(2.0)
SQRT_2_OVER_PI = math.sqrt(2.0 / math.pi)

TensorLike = Union[torch.Tensor, float]


def _float(a: TensorLike) -> torch.Tensor:
    a = as_tensor(a)
    if not a.is_floating_point():
        a = a.to(torch.get_default_dtype())
    return a


def _split(a: torch.Tensor, threshold: float) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Branch-safe copies of `a` below and at-or-above `threshold`."""
    big = a >= threshold
    a_lo = torch.where(big, torch.zeros_like(a), a)
    a_hi = torch.where(big, a, torch.full_like(a, threshold))
    return big, a_lo, a_hi


def logerfcx(x: TensorLike) -> torch.Tensor:
    """
    Numerically stable log(erfcx(x)) for all real x.

    For negative x, erfcx(x) = exp(x^2) erfc(x) overflows, but
    erfc(x) lies in (1, 2] so the logarithm splits cleanly.
    """
    x = _float(x)
    neg = x < 0
    x_neg = torch.where(neg, x, torch.zeros_like(x))
    x_pos = torch.where(neg, torch.zeros_like(x), x)
    lo = x_neg ** 2 + torch.log(torch.special.erfc(x_neg))
    hi = torch.log(torch.special.erfcx(x_pos))
    return torch.where(neg, lo, hi)


def sqrt1half(x: TensorLike) -> torch.Tensor:
    """
    Compute (|x| + sqrt(x^2 + 4)) / 2 without overflow.

    This is the optimal rate of the exponential proposal used for
    rejection sampling far in the tail.
    """
    x = _float(x).abs()
    small = x <= 1
    x_small = torch.where(small, x, torch.zeros_like(x))
    x_big = torch.where(small, torch.ones_like(x), x)
    lo = (x_small + torch.sqrt(x_small ** 2 + 4)) / 2
    hi = x_big / 2 * (1 + torch.sqrt(1 + (2 / x_big) ** 2))
    return torch.where(small, lo, hi)


def tnmean(a: TensorLike) -> torch.Tensor:
    """
    Mean of the standard normal truncated to [a, inf).

    Args:
        a: Truncation point(s)

    Returns:
        mean: Values >= a; `tnmean(inf) = inf`, NaN propagates
    """
    a = _float(a)
    big, a_lo, a_hi = _split(a, TN_ASYMPTOTIC_THRESHOLD)
    lo = SQRT_2_OVER_PI / torch.special.erfcx(a_lo / SQRT2)
    hi = a_hi + 1 / a_hi - 2 / a_hi ** 3 + 10 / a_hi ** 5
    return torch.where(big, hi, lo)


def tnvar(a: TensorLike) -> torch.Tensor:
    """
    Variance of the standard normal truncated to [a, inf).

    Args:
        a: Truncation point(s)

    Returns:
        var: Values in [0, 1]; `tnvar(inf) = 0`, `tnvar(-inf) = 1`
    """
    a = _float(a)
    big, a_lo, a_hi = _split(a, TN_ASYMPTOTIC_THRESHOLD)
    # below -threshold the truncation has no effect in floating point
    a_lo = a_lo.clamp(min=-TN_ASYMPTOTIC_THRESHOLD)
    m = SQRT_2_OVER_PI / torch.special.erfcx(a_lo / SQRT2)
    lo = 1 - m * (m - a_lo)
    hi = 1 / a_hi ** 2 - 6 / a_hi ** 4 + 50 / a_hi ** 6
    return torch.where(big, hi, lo).clamp(0, 1)


def tnstd(a: TensorLike) -> torch.Tensor:
    """Standard deviation of the standard normal truncated to [a, inf)."""
    return torch.sqrt(tnvar(a))


def tncdf(a: TensorLike, x: TensorLike) -> torch.Tensor:
    """
    CDF at `x` of the standard normal truncated to [a, inf).

    Computed as 1 - Q(x)/Q(a) in log space, where Q is the normal
    survival function.
    """
    a = _float(a)
    x = _float(x).to(a.dtype)
    x = torch.maximum(x, a)
    log_ratio = torch.special.log_ndtr(-x) - torch.special.log_ndtr(-a)
    return -torch.expm1(log_ratio)


def tnquantile(a: TensorLike, u: TensorLike) -> torch.Tensor:
    """
    Inverse CDF of the standard normal truncated to [a, inf).

    Args:
        a: Truncation point(s)
        u: Probabilities in [0, 1)

    Returns:
        x: Values with `tncdf(a, x) = u`
    """
    a = _float(a)
    u = _float(u).to(a.dtype)
    tail = a >= _QUANTILE_TAIL_BOUND
    a_lo = torch.where(tail, torch.zeros_like(a), a)
    a_hi = torch.where(tail, a, torch.full_like(a, _QUANTILE_TAIL_BOUND))
    p = torch.exp(torch.special.log_ndtr(-a_lo) + torch.log1p(-u))
    lo = -torch.special.ndtri(p)
    # deep in the tail the truncated normal is a + Exp(rate = a)
    hi = a_hi - torch.log1p(-u) / a_hi
    return torch.maximum(torch.where(tail, hi, lo), a)


def randnt(a: TensorLike, generator: Optional[torch.Generator] = None) -> torch.Tensor:
    """
    Draw one sample per element from the standard normal truncated to [a, inf).

    Small truncation points use plain rejection from N(0, 1). Larger ones
    use an exponential proposal with rate `sqrt1half(a)` (Robert, 1995).
    Truncation points at the edge of the floating point range return `a`.
    After `MAX_REJECTION_ROUNDS` rounds, still-pending elements receive
    the mean `tnmean(a)`.

    Args:
        a: Truncation point(s)
        generator: Random generator for reproducible draws

    Returns:
        x: Samples with x >= a (NaN where a is NaN)
    """
    a = _float(a).detach()
    x = torch.full_like(a, float('nan'))

    overflow = a >= torch.finfo(a.dtype).max
    x = torch.where(overflow, a, x)
    pending = ~(overflow | torch.isnan(a))

    naive = a < NAIVE_REJECTION_BOUND
    rate = sqrt1half(a)

    for _ in range(MAX_REJECTION_ROUNDS):
        if not bool(pending.any()):
            break
        z = torch.randn(a.shape, generator=generator, dtype=a.dtype, device=a.device)
        e = torch.empty_like(a).exponential_(generator=generator)
        u = torch.rand(a.shape, generator=generator, dtype=a.dtype, device=a.device)

        proposal = torch.where(naive, z, a + e / rate)
        accept = torch.where(naive, z >= a, u <= torch.exp(-(proposal - rate) ** 2 / 2))
        accept = accept & pending

        x = torch.where(accept, proposal, x)
        pending = pending & ~accept

    if bool(pending.any()):
        logger.debug(f"Rejection cap reached for {int(pending.sum())} elements, using the mean")
        x = torch.where(pending, tnmean(a), x)

    return x


def tnsample_derivative(a: TensorLike, x: TensorLike) -> torch.Tensor:
    """
    Pathwise derivative dx/da of a truncated normal sample.

    Differentiating `tncdf(a, x) = U` at fixed U gives
    dx/da = erfcx(x/sqrt(2)) / erfcx(a/sqrt(2)).
    """
    a = _float(a)
    x = _float(x).to(a.dtype)
    big = a >= TN_ASYMPTOTIC_THRESHOLD

    a_lo = torch.where(big, torch.zeros_like(a), a)
    x_lo = torch.where(big, torch.zeros_like(x), x)
    lo = torch.special.erfcx(x_lo / SQRT2) / torch.special.erfcx(a_lo / SQRT2)

    # erfcx(y/sqrt(2)) ~ sqrt(2/pi) / y * (1 - 1/y^2 + 3/y^4)
    a_hi = torch.where(big, a, torch.full_like(a, TN_ASYMPTOTIC_THRESHOLD))
    x_hi = torch.where(big, x, torch.full_like(x, TN_ASYMPTOTIC_THRESHOLD))
    hi = (a_hi / x_hi) * (1 - 1 / x_hi ** 2 + 3 / x_hi ** 4) / (1 - 1 / a_hi ** 2 + 3 / a_hi ** 4)
    hi = torch.where(torch.isinf(x_hi) & torch.isinf(a_hi), torch.ones_like(hi), hi)

    return torch.where(big, hi, lo)


def randnt_with_gradient(
    a: TensorLike,
    generator: Optional[torch.Generator] = None
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Sample the truncated normal and return the pathwise derivative.

    Returns:
        x: Samples >= a
        dx_da: Derivative of each sample with respect to its truncation point
    """
    a = _float(a).detach()
    x = randnt(a, generator)
    return x, tnsample_derivative(a, x)


class TruncNormSample(torch.autograd.Function):
    """Truncated normal sampler with the implicit reparameterization gradient."""

    @staticmethod
    def forward(ctx, a, generator):
        x = randnt(a, generator)
        ctx.save_for_backward(a, x)
        return x

    @staticmethod
    def backward(ctx, grad_output):
        a, x = ctx.saved_tensors
        return grad_output * tnsample_derivative(a, x), None


def randnt_half(
    mu: torch.Tensor,
    sigma: torch.Tensor,
    generator: Optional[torch.Generator] = None
) -> torch.Tensor:
    """
    Sample N(mu, sigma^2) restricted to [0, inf), differentiably.

    Args:
        mu: Location of the untruncated normal
        sigma: Scale of the untruncated normal (positive)
        generator: Random generator for reproducible draws

    Returns:
        x: Non-negative samples with gradients flowing to mu and sigma
    """
    mu, sigma = torch.broadcast_tensors(_float(mu), _float(sigma))
    z = TruncNormSample.apply(-mu / sigma, generator)
    return (mu + sigma * z).clamp(min=0)
