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
Unit groups (layers) for bipartite Boltzmann machines

Each layer is a set of units sharing one exponential-family distribution.
All parameter tensors of a layer have the same shape, the unit shape.
Configurations carry the unit shape first and a trailing batch axis.

Variants:
- Binary: Bernoulli units with field theta
- Potts: categorical units; axis 0 indexes the q states of each site
- Gaussian: fields theta and precisions gamma
- ReLU: Gaussian restricted to non-negative values
- DReLU: two-sided rectified units, one (theta, gamma) pair per side

Every variant satisfies d(cgf)/d(theta) = mean. Variants with a
quadratic term also satisfy d(cgf)/d(gamma) = -E[x^2]/2 (per side for
DReLU). Precisions enter the formulas through |gamma|.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple, Type, Union
import math
import torch
import torch.nn.functional as F
import logging

from .truncnorm import logerfcx, randnt_half, tnmean, tnvar
from .utils import batch_mean, dims_error, shape_tuple, sum_units

logger = logging.getLogger(__name__)

LOG_2PI = math.log(2 * math.pi)
LOG_PI_OVER_2 = math.log(math.pi / 2)

Beta = Union[float, torch.Tensor]


class BinaryCgf(torch.autograd.Function):
    """log(1 + exp(theta)) with gradient sigmoid(theta)."""

    @staticmethod
    def forward(ctx, theta):
        ctx.save_for_backward(theta)
        return theta.clamp(min=0) + torch.log1p(torch.exp(-theta.abs()))

    @staticmethod
    def backward(ctx, grad_output):
        theta, = ctx.saved_tensors
        return grad_output * torch.sigmoid(theta)


def relu_cgf(theta: torch.Tensor, gamma: torch.Tensor) -> torch.Tensor:
    """log of the integral of exp(-gamma x^2/2 + theta x) over x >= 0."""
    return logerfcx(-theta / torch.sqrt(2 * gamma)) + (LOG_PI_OVER_2 - torch.log(gamma)) / 2


def relu_moments(theta: torch.Tensor, gamma: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """Mean and variance of the non-negative unit with fields (theta, gamma)."""
    sqrt_gamma = torch.sqrt(gamma)
    a = -theta / sqrt_gamma
    mean = theta / gamma + tnmean(a) / sqrt_gamma
    var = tnvar(a) / gamma
    return mean, var


class ReLUCgf(torch.autograd.Function):
    """
    Rectified-unit cgf with the analytic gradient.

    d/d(theta) = mean, d/d(gamma) = -(var + mean^2) / 2,
    from the truncated normal moments rather than autograd through erfcx.
    """

    @staticmethod
    def forward(ctx, theta, gamma):
        ctx.save_for_backward(theta, gamma)
        return relu_cgf(theta, gamma)

    @staticmethod
    def backward(ctx, grad_output):
        theta, gamma = ctx.saved_tensors
        mean, var = relu_moments(theta, gamma)
        grad_theta = grad_output * mean
        grad_gamma = -grad_output * (var + mean ** 2) / 2
        return grad_theta, grad_gamma


class UnitGroup(ABC):
    """
    Base class for layers.

    Subclasses declare `param_names` (all parameters, in order),
    `field_names` (parameters that external inputs add to) and
    `default_values` used by `from_shape`.
    """

    layer_type: str = ""
    param_names: Tuple[str, ...] = ()
    field_names: Tuple[str, ...] = ()
    default_values: Dict[str, float] = {}

    def __init__(self, **params: torch.Tensor):
        shape = None
        for name in self.param_names:
            p = params[name]
            if not isinstance(p, torch.Tensor):
                p = torch.as_tensor(p, dtype=torch.float64)
            if shape is None:
                shape = tuple(p.shape)
            elif tuple(p.shape) != shape:
                raise dims_error(f"{type(self).__name__} parameters must share one shape", p.shape, shape)
            setattr(self, name, p)
        self._validate_shape(shape)

    def _validate_shape(self, shape: Tuple[int, ...]) -> None:
        pass

    @classmethod
    def from_shape(
        cls,
        *shape: int,
        dtype: torch.dtype = torch.float64,
        device: Optional[torch.device] = None
    ) -> 'UnitGroup':
        """Create a layer of the given unit shape with default parameters."""
        shape = shape_tuple(shape[0]) if len(shape) == 1 and not isinstance(shape[0], int) else shape
        params = {
            name: torch.full(shape, cls.default_values.get(name, 0.0), dtype=dtype, device=device)
            for name in cls.param_names
        }
        return cls(**params)

    # -- metadata ---------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(getattr(self, self.param_names[0]).shape)

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @property
    def cgf_ndim(self) -> int:
        """Number of unit axes in the output of `cgf`."""
        return self.ndim

    @property
    def dtype(self) -> torch.dtype:
        return getattr(self, self.param_names[0]).dtype

    @property
    def device(self) -> torch.device:
        return getattr(self, self.param_names[0]).device

    def __len__(self) -> int:
        return math.prod(self.shape)

    def named_parameters(self) -> List[Tuple[str, torch.Tensor]]:
        """Explicit ordered list of (name, tensor) pairs."""
        return [(name, getattr(self, name)) for name in self.param_names]

    def parameters(self) -> List[torch.Tensor]:
        return [p for _, p in self.named_parameters()]

    def requires_grad_(self, requires_grad: bool = True) -> 'UnitGroup':
        for p in self.parameters():
            p.requires_grad_(requires_grad)
        return self

    # -- configurations ---------------------------------------------------

    def check_config(self, x: torch.Tensor) -> None:
        """Raise if `x` is not a configuration of this layer."""
        n = self.ndim
        if tuple(x.shape[:n]) != self.shape or x.dim() > n + 1:
            raise dims_error(f"configuration does not match {type(self).__name__} layer", x.shape, self.shape)

    def batch_size(self, x: torch.Tensor) -> Optional[int]:
        """Batch size of a configuration, or None if unbatched."""
        self.check_config(x)
        return x.shape[-1] if x.dim() == self.ndim + 1 else None

    def _align(self, p: torch.Tensor, x: torch.Tensor) -> torch.Tensor:
        """Broadcast a parameter against a (possibly batched) tensor."""
        if x.dim() == p.dim():
            return p
        if x.dim() == p.dim() + 1 and tuple(x.shape[:-1]) == tuple(p.shape):
            return p.unsqueeze(-1)
        raise dims_error(f"tensor does not match {type(self).__name__} layer", x.shape, p.shape)

    # -- effective layers -------------------------------------------------

    def effective(self, inputs: Optional[torch.Tensor] = None, beta: Beta = 1.0) -> 'UnitGroup':
        """
        Layer conditioned on an input field at inverse temperature beta.

        Fields become beta * (theta + inputs) and the remaining parameters
        are scaled by beta. The original layer is not modified.

        Args:
            inputs: Input field [*S] or [*S, batch] (if None, no input)
            beta: Inverse temperature

        Returns:
            layer: New layer; its parameters have the shape of `inputs`
        """
        params = {}
        for name, p in self.named_parameters():
            if inputs is not None:
                p = self._align(p, inputs).expand(inputs.shape)
                if name in self.field_names:
                    p = p + inputs
            params[name] = beta * p
        return type(self)(**params)

    @abstractmethod
    def cgf(self) -> torch.Tensor:
        """Elementwise cumulant generating function."""

    def log_partition(self, inputs: Optional[torch.Tensor] = None, beta: Beta = 1.0) -> torch.Tensor:
        """
        Sum of the cgf of the effective layer over units, divided by beta.

        Returns:
            value: One entry per batch element (a scalar if unbatched)
        """
        return sum_units(self.effective(inputs, beta).cgf(), self.cgf_ndim) / beta

    @abstractmethod
    def energy_units(self, x: torch.Tensor) -> torch.Tensor:
        """Elementwise energy contributions of configuration x."""

    def energy(self, x: torch.Tensor) -> torch.Tensor:
        """
        Energy of a configuration.

        Args:
            x: Configuration [*S, batch]

        Returns:
            energy: [batch]
        """
        self.check_config(x)
        return sum_units(self.energy_units(x), self.ndim)

    # -- transfer statistics ----------------------------------------------

    @abstractmethod
    def transfer_mean(self) -> torch.Tensor:
        """Mean of each unit."""

    @abstractmethod
    def transfer_var(self) -> torch.Tensor:
        """Variance of each unit."""

    def transfer_std(self) -> torch.Tensor:
        return torch.sqrt(self.transfer_var())

    @abstractmethod
    def transfer_mean_abs(self) -> torch.Tensor:
        """Mean absolute value of each unit."""

    @abstractmethod
    def transfer_mode(self) -> torch.Tensor:
        """Most probable value of each unit."""

    @abstractmethod
    def sample(self, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        """Draw one value per unit."""

    def random(
        self,
        inputs: Optional[torch.Tensor] = None,
        beta: Beta = 1.0,
        generator: Optional[torch.Generator] = None
    ) -> torch.Tensor:
        """Sample the layer conditioned on `inputs` at inverse temperature beta."""
        return self.effective(inputs, beta).sample(generator)

    # -- initialization and persistence -----------------------------------

    @abstractmethod
    def init_from_data(self, v: torch.Tensor, w: Optional[torch.Tensor] = None, eps: float = 1e-6) -> None:
        """Set the parameters in place so the independent layer matches data moments."""

    def state_dict(self) -> Dict[str, Any]:
        return {
            'type': self.layer_type,
            'params': {name: p.detach().clone() for name, p in self.named_parameters()},
        }

    def load_state_dict(self, state: Dict[str, Any]) -> None:
        """Copy parameters in place, keeping tensor identity."""
        if state['type'] != self.layer_type:
            raise ValueError(f"Cannot load a '{state['type']}' layer into '{self.layer_type}'")
        with torch.no_grad():
            for name, p in self.named_parameters():
                value = state['params'][name]
                if tuple(value.shape) != tuple(p.shape):
                    raise dims_error(f"saved parameter '{name}' has the wrong shape", value.shape, p.shape)
                p.copy_(value)

    @staticmethod
    def from_state_dict(state: Dict[str, Any]) -> 'UnitGroup':
        cls = LAYER_TYPES[state['type']]
        return cls(**{name: value.clone() for name, value in state['params'].items()})

    def __repr__(self) -> str:
        return f"{type(self).__name__}(shape={self.shape})"


class Binary(UnitGroup):
    """Bernoulli units taking values in {0, 1}."""

    layer_type = "binary"
    param_names = ("theta",)
    field_names = ("theta",)

    def __init__(self, theta: torch.Tensor):
        super().__init__(theta=theta)

    def cgf(self) -> torch.Tensor:
        return BinaryCgf.apply(self.theta)

    def energy_units(self, x: torch.Tensor) -> torch.Tensor:
        return -self._align(self.theta, x) * x

    def transfer_mean(self) -> torch.Tensor:
        return torch.sigmoid(self.theta)

    def transfer_var(self) -> torch.Tensor:
        t = torch.exp(-self.theta.abs())
        return t / (1 + t) ** 2

    def transfer_mean_abs(self) -> torch.Tensor:
        return self.transfer_mean()

    def transfer_mode(self) -> torch.Tensor:
        return (self.theta > 0).to(self.dtype)

    def sample(self, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        theta = self.theta.detach()
        u = torch.rand(theta.shape, generator=generator, dtype=theta.dtype, device=theta.device)
        # logistic inverse CDF: u * (1 + exp(-theta)) <= 1 with probability sigmoid(theta)
        return (u * (1 + torch.exp(-theta)) <= 1).to(theta.dtype)

    def init_from_data(self, v: torch.Tensor, w: Optional[torch.Tensor] = None, eps: float = 1e-6) -> None:
        self.check_config(v)
        p = batch_mean(v, w).clamp(eps, 1 - eps)
        with torch.no_grad():
            self.theta.copy_(torch.log(p) - torch.log1p(-p))


class Potts(UnitGroup):
    """
    Categorical units.

    Axis 0 indexes the q states; the remaining axes index sites.
    Configurations are one-hot along axis 0.
    """

    layer_type = "potts"
    param_names = ("theta",)
    field_names = ("theta",)

    def __init__(self, theta: torch.Tensor):
        super().__init__(theta=theta)

    def _validate_shape(self, shape: Tuple[int, ...]) -> None:
        if len(shape) < 1 or shape[0] < 1:
            raise dims_error("Potts layers need a leading state axis", shape)

    @property
    def q(self) -> int:
        return self.shape[0]

    @property
    def cgf_ndim(self) -> int:
        return self.ndim - 1

    def cgf(self) -> torch.Tensor:
        return torch.logsumexp(self.theta, dim=0)

    def energy_units(self, x: torch.Tensor) -> torch.Tensor:
        return -self._align(self.theta, x) * x

    def transfer_mean(self) -> torch.Tensor:
        return torch.softmax(self.theta, dim=0)

    def transfer_var(self) -> torch.Tensor:
        p = self.transfer_mean()
        return p * (1 - p)

    def transfer_mean_abs(self) -> torch.Tensor:
        return self.transfer_mean()

    def transfer_mode(self) -> torch.Tensor:
        return self._one_hot(torch.argmax(self.theta, dim=0))

    def _one_hot(self, index: torch.Tensor) -> torch.Tensor:
        return F.one_hot(index, self.q).movedim(-1, 0).to(self.dtype)

    def sample(self, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        theta = self.theta.detach()
        u = torch.rand(theta.shape, generator=generator, dtype=theta.dtype, device=theta.device)
        tiny = torch.finfo(theta.dtype).tiny
        gumbel = -torch.log(-torch.log(u.clamp(min=tiny)))
        return self._one_hot(torch.argmax(theta + gumbel, dim=0))

    def init_from_data(self, v: torch.Tensor, w: Optional[torch.Tensor] = None, eps: float = 1e-6) -> None:
        self.check_config(v)
        logp = torch.log(batch_mean(v, w).clamp(min=eps))
        with torch.no_grad():
            self.theta.copy_(logp - logp.mean(dim=0, keepdim=True))


class Gaussian(UnitGroup):
    """Gaussian units with energy gamma x^2 / 2 - theta x."""

    layer_type = "gaussian"
    param_names = ("theta", "gamma")
    field_names = ("theta",)
    default_values = {"gamma": 1.0}

    def __init__(self, theta: torch.Tensor, gamma: torch.Tensor):
        super().__init__(theta=theta, gamma=gamma)

    def cgf(self) -> torch.Tensor:
        gamma = self.gamma.abs()
        return self.theta ** 2 / (2 * gamma) + (LOG_2PI - torch.log(gamma)) / 2

    def energy_units(self, x: torch.Tensor) -> torch.Tensor:
        theta = self._align(self.theta, x)
        gamma = self._align(self.gamma, x).abs()
        return gamma * x ** 2 / 2 - theta * x

    def transfer_mean(self) -> torch.Tensor:
        return self.theta / self.gamma.abs()

    def transfer_var(self) -> torch.Tensor:
        return 1 / self.gamma.abs()

    def transfer_mean_abs(self) -> torch.Tensor:
        mu = self.transfer_mean()
        sigma = self.transfer_std()
        return (
            sigma * math.sqrt(2 / math.pi) * torch.exp(-(mu / sigma) ** 2 / 2)
            + mu * torch.erf(mu / (sigma * math.sqrt(2)))
        )

    def transfer_mode(self) -> torch.Tensor:
        return self.transfer_mean()

    def sample(self, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        mu = self.transfer_mean()
        z = torch.randn(mu.shape, generator=generator, dtype=mu.dtype, device=mu.device)
        return mu + z * self.transfer_std()

    def init_from_data(self, v: torch.Tensor, w: Optional[torch.Tensor] = None, eps: float = 1e-6) -> None:
        self.check_config(v)
        mean = batch_mean(v, w)
        var = (batch_mean(v ** 2, w) - mean ** 2).clamp(min=eps)
        with torch.no_grad():
            self.theta.copy_(mean / var)
            self.gamma.copy_(1 / var)


class ReLU(UnitGroup):
    """
    Rectified Gaussian units supported on x >= 0.

    The distribution is a normal with mean theta/gamma and variance
    1/gamma, truncated to the non-negative half-line.
    """

    layer_type = "relu"
    param_names = ("theta", "gamma")
    field_names = ("theta",)
    default_values = {"gamma": 1.0}

    def __init__(self, theta: torch.Tensor, gamma: torch.Tensor):
        super().__init__(theta=theta, gamma=gamma)

    def cgf(self) -> torch.Tensor:
        return ReLUCgf.apply(self.theta, self.gamma.abs())

    def energy_units(self, x: torch.Tensor) -> torch.Tensor:
        theta = self._align(self.theta, x)
        gamma = self._align(self.gamma, x).abs()
        e = gamma * x ** 2 / 2 - theta * x
        return torch.where(x >= 0, e, torch.full_like(e, float('inf')))

    def transfer_mean(self) -> torch.Tensor:
        return relu_moments(self.theta, self.gamma.abs())[0]

    def transfer_var(self) -> torch.Tensor:
        return relu_moments(self.theta, self.gamma.abs())[1]

    def transfer_mean_abs(self) -> torch.Tensor:
        return self.transfer_mean()

    def transfer_mode(self) -> torch.Tensor:
        return self.theta.clamp(min=0) / self.gamma.abs()

    def sample(self, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        gamma = self.gamma.abs()
        return randnt_half(self.theta / gamma, 1 / torch.sqrt(gamma), generator)

    def init_from_data(self, v: torch.Tensor, w: Optional[torch.Tensor] = None, eps: float = 1e-6) -> None:
        self.check_config(v)
        mean = batch_mean(v, w)
        var = (batch_mean(v ** 2, w) - mean ** 2).clamp(min=eps)
        with torch.no_grad():
            self.theta.copy_(mean / var)
            self.gamma.copy_(1 / var)


class DReLU(UnitGroup):
    """
    Two-sided rectified units.

    The positive side has energy gamma_p x^2/2 - theta_p x for x >= 0 and
    the negative side gamma_n x^2/2 - theta_n x for x < 0. The cgf is the
    log-sum-exp of the two half-line cgfs, so its gradient is the
    responsibility-weighted combination of the two ReLU identities.
    """

    layer_type = "drelu"
    param_names = ("theta_p", "theta_n", "gamma_p", "gamma_n")
    field_names = ("theta_p", "theta_n")
    default_values = {"gamma_p": 1.0, "gamma_n": 1.0}

    def __init__(
        self,
        theta_p: torch.Tensor,
        theta_n: torch.Tensor,
        gamma_p: torch.Tensor,
        gamma_n: torch.Tensor
    ):
        super().__init__(theta_p=theta_p, theta_n=theta_n, gamma_p=gamma_p, gamma_n=gamma_n)

    def _sides(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """cgf of the positive side and of the (mirrored) negative side."""
        cgf_p = ReLUCgf.apply(self.theta_p, self.gamma_p.abs())
        cgf_n = ReLUCgf.apply(-self.theta_n, self.gamma_n.abs())
        return cgf_p, cgf_n

    def responsibilities(self) -> Tuple[torch.Tensor, torch.Tensor]:
        """Probabilities of the positive and the negative side."""
        cgf_p, cgf_n = self._sides()
        p = torch.sigmoid(cgf_p - cgf_n)
        return p, 1 - p

    def _side_moments(self):
        mean_p, var_p = relu_moments(self.theta_p, self.gamma_p.abs())
        # moments of -x on the negative side
        mean_n, var_n = relu_moments(-self.theta_n, self.gamma_n.abs())
        return mean_p, var_p, mean_n, var_n

    def cgf(self) -> torch.Tensor:
        cgf_p, cgf_n = self._sides()
        return torch.logaddexp(cgf_p, cgf_n)

    def energy_units(self, x: torch.Tensor) -> torch.Tensor:
        xp = x.clamp(min=0)
        xn = x.clamp(max=0)
        return (
            self._align(self.gamma_p, x).abs() * xp ** 2 / 2 - self._align(self.theta_p, x) * xp
            + self._align(self.gamma_n, x).abs() * xn ** 2 / 2 - self._align(self.theta_n, x) * xn
        )

    def transfer_mean(self) -> torch.Tensor:
        pp, pn = self.responsibilities()
        mean_p, _, mean_n, _ = self._side_moments()
        return pp * mean_p - pn * mean_n

    def transfer_var(self) -> torch.Tensor:
        pp, pn = self.responsibilities()
        mean_p, var_p, mean_n, var_n = self._side_moments()
        second = pp * (var_p + mean_p ** 2) + pn * (var_n + mean_n ** 2)
        mean = pp * mean_p - pn * mean_n
        return (second - mean ** 2).clamp(min=0)

    def transfer_mean_abs(self) -> torch.Tensor:
        pp, pn = self.responsibilities()
        mean_p, _, mean_n, _ = self._side_moments()
        return pp * mean_p + pn * mean_n

    def transfer_mode(self) -> torch.Tensor:
        gamma_p, gamma_n = self.gamma_p.abs(), self.gamma_n.abs()
        up = self.theta_p.clamp(min=0)
        un = self.theta_n.clamp(max=0)
        mode_p, mode_n = up / gamma_p, un / gamma_n
        # compare the log densities at the two candidate modes
        return torch.where(up ** 2 / gamma_p >= un ** 2 / gamma_n, mode_p, mode_n)

    def sample(self, generator: Optional[torch.Generator] = None) -> torch.Tensor:
        gamma_p, gamma_n = self.gamma_p.abs(), self.gamma_n.abs()
        xp = randnt_half(self.theta_p / gamma_p, 1 / torch.sqrt(gamma_p), generator)
        xn = -randnt_half(-self.theta_n / gamma_n, 1 / torch.sqrt(gamma_n), generator)
        pp, _ = self.responsibilities()
        u = torch.rand(pp.shape, generator=generator, dtype=pp.dtype, device=pp.device)
        return torch.where(u < pp.detach(), xp, xn)

    def init_from_data(self, v: torch.Tensor, w: Optional[torch.Tensor] = None, eps: float = 1e-6) -> None:
        self.check_config(v)
        mean = batch_mean(v, w)
        var = (batch_mean(v ** 2, w) - mean ** 2).clamp(min=eps)
        with torch.no_grad():
            self.theta_p.copy_(mean / var)
            self.theta_n.copy_(mean / var)
            self.gamma_p.copy_(1 / var)
            self.gamma_n.copy_(1 / var)


LAYER_TYPES: Dict[str, Type[UnitGroup]] = {
    cls.layer_type: cls for cls in (Binary, Potts, Gaussian, ReLU, DReLU)
}
