from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

import numpy as np
import torch as th

from .base_buffer import BaseReplayMemory
from ..utils.buffer_utils import uniform_indices
from ..utils.common_utils import _to_tensor


@dataclass
class ReplayBatch:
    """
    Mini-batch sampled from a replay memory.

    Attributes
    ----------
    states, next_states : torch.Tensor
        Shape (B, state_size), float32.
    actions : torch.Tensor
        Shape (B, n_heads), int64.
    rewards, dones : torch.Tensor
        Shape (B,), float32.
    indices : np.ndarray
        Storage indices of the sampled rows, shape (B,). Needed to feed back
        priorities.
    weights : Optional[torch.Tensor]
        Importance-sampling weights, shape (B,). None for uniform sampling.
    """

    states: th.Tensor
    actions: th.Tensor
    rewards: th.Tensor
    next_states: th.Tensor
    dones: th.Tensor
    indices: np.ndarray
    weights: Optional[th.Tensor] = None

    def __len__(self) -> int:
        return int(self.indices.shape[0])


def make_replay_batch(
    buf: BaseReplayMemory,
    idx: np.ndarray,
    device: Union[th.device, str],
    *,
    weights: Optional[np.ndarray] = None,
) -> ReplayBatch:
    """Gather rows `idx` of a replay memory into a :class:`ReplayBatch`."""
    return ReplayBatch(
        states=_to_tensor(buf.states[idx], device=device),
        actions=_to_tensor(buf.actions[idx], device=device, dtype=th.int64),
        rewards=_to_tensor(buf.rewards[idx], device=device),
        next_states=_to_tensor(buf.next_states[idx], device=device),
        dones=_to_tensor(buf.dones[idx], device=device),
        indices=idx,
        weights=None if weights is None else _to_tensor(weights, device=device),
    )


class ReplayMemory(BaseReplayMemory):
    """
    Uniform FIFO replay memory.

    Sampling draws ``batch_size`` distinct transitions uniformly at random with
    the memory's own generator.

    Examples
    --------
    >>> mem = ReplayMemory(capacity=10_000, state_size=4, action_shape=(1,))
    >>> mem.push(transitions)
    >>> batch = mem.sample(64)   # InsufficientDataError while size < 64
    """

    def sample(self, batch_size: int) -> ReplayBatch:
        idx = uniform_indices(self.size, int(batch_size), self.rng)
        return make_replay_batch(self, idx, self.device)
