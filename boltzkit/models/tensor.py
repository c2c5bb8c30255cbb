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
Bilinear contractions between unit configurations and a weight tensor

A weight tensor has shape `Sv ++ Sh` (visible unit shape followed by
hidden unit shape). Configurations have their unit shape first and an
optional trailing batch axis. Both contraction directions carry a
hand-written backward rule: the weight gradient is the upstream
gradient contracted with the opposite configuration over the batch
axis only.

Hidden subsets are rectangular blocks given as one slice per hidden axis.
"""

from typing import List, Optional, Sequence, Tuple, Union
import torch
import logging

from .utils import dims_error, sum_units

logger = logging.getLogger(__name__)

HiddenSelection = Optional[Tuple[slice, ...]]


def hidden_slice(*ranges: Union[slice, range, Tuple[int, int]]) -> Tuple[slice, ...]:
    """
    Build a hidden-unit selection, one entry per hidden axis.

    Example:
        hidden_slice(slice(0, 3))      # first three units of a vector layer
        hidden_slice((0, 2), (1, 4))   # a 2 x 3 block of a matrix layer
    """
    selection = []
    for r in ranges:
        if isinstance(r, slice):
            selection.append(r)
        elif isinstance(r, range):
            if r.step != 1:
                raise ValueError("hidden selections must be contiguous")
            selection.append(slice(r.start, r.stop))
        else:
            start, stop = r
            selection.append(slice(start, stop))
    return tuple(selection)


def _normalize_selection(hsel, nh: int) -> HiddenSelection:
    if hsel is None:
        return None
    if isinstance(hsel, (slice, range)):
        hsel = (hsel,)
    hsel = hidden_slice(*hsel)
    if len(hsel) != nh:
        raise dims_error(f"hidden selection needs one slice per hidden axis ({nh})")
    return hsel


def _batch_axes(x: torch.Tensor, n_unit_dims: int) -> List[int]:
    return list(range(n_unit_dims, x.dim()))


def _outer_over_batch(x: torch.Tensor, nx: int, y: torch.Tensor, ny: int) -> torch.Tensor:
    """Contract two configurations over their batch axes only."""
    bx = _batch_axes(x, nx)
    by = _batch_axes(y, ny)
    if not bx:
        return torch.tensordot(x, y, dims=0)
    return torch.tensordot(x, y, dims=(bx, by))


class _InputsVisibleToHidden(torch.autograd.Function):

    @staticmethod
    def forward(ctx, w, v, nv, hsel):
        index = (slice(None),) * nv + (hsel or ())
        w_sel = w[index]
        ctx.save_for_backward(w, v)
        ctx.nv = nv
        ctx.index = index
        return torch.tensordot(w_sel, v, dims=(list(range(nv)), list(range(nv))))

    @staticmethod
    def backward(ctx, grad_output):
        w, v = ctx.saved_tensors
        nv, index = ctx.nv, ctx.index
        nh = w.dim() - nv
        grad_w = grad_v = None

        if ctx.needs_input_grad[0]:
            grad_w = torch.zeros_like(w)
            grad_w[index] = _outer_over_batch(v, nv, grad_output, nh)

        if ctx.needs_input_grad[1]:
            w_sel = w[index]
            grad_v = torch.tensordot(
                w_sel, grad_output, dims=(list(range(nv, w.dim())), list(range(nh)))
            )

        return grad_w, grad_v, None, None


class _InputsHiddenToVisible(torch.autograd.Function):

    @staticmethod
    def forward(ctx, w, h, nv, hsel):
        nh = w.dim() - nv
        hidden_index = hsel or (slice(None),) * nh
        index = (slice(None),) * nv + hidden_index
        h_sel = h[hidden_index]
        ctx.save_for_backward(w, h)
        ctx.nv = nv
        ctx.index = index
        ctx.hidden_index = hidden_index
        return torch.tensordot(w[index], h_sel, dims=(list(range(nv, w.dim())), list(range(nh))))

    @staticmethod
    def backward(ctx, grad_output):
        w, h = ctx.saved_tensors
        nv, index, hidden_index = ctx.nv, ctx.index, ctx.hidden_index
        nh = w.dim() - nv
        grad_w = grad_h = None

        if ctx.needs_input_grad[0]:
            grad_w = torch.zeros_like(w)
            grad_w[index] = _outer_over_batch(grad_output, nv, h[hidden_index], nh)

        if ctx.needs_input_grad[1]:
            grad_h = torch.zeros_like(h)
            grad_h[hidden_index] = torch.tensordot(
                w[index], grad_output, dims=(list(range(nv)), list(range(nv)))
            )

        return grad_w, grad_h, None, None


def _check_prefix(x: torch.Tensor, shape: Sequence[int], what: str) -> None:
    n = len(shape)
    if tuple(x.shape[:n]) != tuple(shape) or x.dim() > n + 1:
        raise dims_error(f"{what} configuration does not match unit shape", x.shape, shape)


def inputs_v_to_h(
    w: torch.Tensor,
    v: torch.Tensor,
    nv: int,
    hsel: HiddenSelection = None
) -> torch.Tensor:
    """
    Input field on the hidden units from a visible configuration.

    Args:
        w: Weights [*Sv, *Sh]
        v: Visible configuration [*Sv, batch] (batch axis optional)
        nv: Number of visible unit axes
        hsel: Optional hidden selection; the field then covers that block only

    Returns:
        field: [*Sh, batch], or [*Sh_selected, batch] with a selection
    """
    _check_prefix(v, w.shape[:nv], "visible")
    hsel = _normalize_selection(hsel, w.dim() - nv)
    return _InputsVisibleToHidden.apply(w, v, nv, hsel)


def inputs_h_to_v(
    w: torch.Tensor,
    h: torch.Tensor,
    nv: int,
    hsel: HiddenSelection = None
) -> torch.Tensor:
    """
    Input field on the visible units from a hidden configuration.

    Args:
        w: Weights [*Sv, *Sh]
        h: Hidden configuration [*Sh, batch] (batch axis optional)
        nv: Number of visible unit axes
        hsel: Optional hidden selection; only those units contribute

    Returns:
        field: [*Sv, batch]
    """
    _check_prefix(h, w.shape[nv:], "hidden")
    hsel = _normalize_selection(hsel, w.dim() - nv)
    return _InputsHiddenToVisible.apply(w, h, nv, hsel)


def contract(v: torch.Tensor, w: torch.Tensor, h: torch.Tensor, nv: int) -> torch.Tensor:
    """Full contraction sum_ij v_i w_ij h_j, one value per batch element."""
    field = inputs_v_to_h(w, v, nv)
    return sum_units(field * h, w.dim() - nv)
