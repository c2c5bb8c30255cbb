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
Weighted minibatches with a trailing batch axis

Datasets hold configurations shaped [*unit_shape, n_samples] together
with one non-negative weight per sample. Loaders yield
(configuration [*unit_shape, batch_size], weights [batch_size]) pairs.
"""

from typing import Iterator, Optional, Sequence, Tuple, Union
import torch
import torch.utils.data as data
import logging

from ..models.utils import dims_error

logger = logging.getLogger(__name__)

Batch = Tuple[torch.Tensor, torch.Tensor]


class WeightedDataset(data.Dataset):
    """Samples indexed along the trailing axis of a configuration tensor."""

    def __init__(self, v: torch.Tensor, w: Optional[torch.Tensor] = None):
        """
        Initialize dataset.

        Args:
            v: Configurations [*unit_shape, n_samples]
            w: Non-negative sample weights [n_samples] (if None, all ones)
        """
        n_samples = v.shape[-1]
        if w is None:
            w = torch.ones(n_samples, dtype=v.dtype, device=v.device)
        if tuple(w.shape) != (n_samples,):
            raise dims_error("need one weight per sample", w.shape, (n_samples,))
        if torch.any(w < 0):
            raise ValueError("sample weights must be non-negative")

        self.v = v
        self.w = w

    def __len__(self) -> int:
        return self.v.shape[-1]

    def __getitem__(self, index: Union[int, Sequence[int]]) -> Batch:
        if isinstance(index, int):
            return self.v[..., index], self.w[index]
        index = torch.as_tensor(index, dtype=torch.long, device=self.v.device)
        return self.v.index_select(-1, index), self.w.index_select(0, index)


def get_data_loader(
    v: torch.Tensor,
    w: Optional[torch.Tensor] = None,
    batch_size: int = 64,
    shuffle: bool = True,
    drop_last: bool = False,
    generator: Optional[torch.Generator] = None,
) -> data.DataLoader:
    """
    Create a loader over weighted configurations.

    Batches are gathered with one indexing operation per batch, so the
    loader yields (v_batch, w_batch) with the batch axis last.

    Args:
        v: Configurations [*unit_shape, n_samples]
        w: Sample weights [n_samples]
        batch_size: Minibatch size
        shuffle: Whether to shuffle each pass
        drop_last: Whether to drop a final incomplete batch
        generator: Random generator for shuffling

    Returns:
        loader: DataLoader yielding (configuration, weights) batches
    """
    dataset = WeightedDataset(v, w)
    if shuffle:
        sampler = data.RandomSampler(dataset, generator=generator)
    else:
        sampler = data.SequentialSampler(dataset)
    batch_sampler = data.BatchSampler(sampler, batch_size=batch_size, drop_last=drop_last)

    logger.debug(f"Data loader over {len(dataset)} samples, batch size {batch_size}")
    return data.DataLoader(dataset, sampler=batch_sampler, batch_size=None)


def infinite_batches(loader: data.DataLoader) -> Iterator[Batch]:
    """Cycle through a loader forever, reshuffling on every pass."""
    while True:
        n_batches = 0
        for batch in loader:
            n_batches += 1
            yield batch
        if n_batches == 0:
            raise ValueError("data loader produced no batches")
