from __future__ import annotations

import math
from enum import Enum
from typing import Any, Callable, Dict

import numpy as np
import torch as th

from rl_engine.common.networks.base_networks import reset_noise
from rl_engine.common.utils.common_utils import _to_tensor


class DQNVariant(str, Enum):
    """Exploration / value-representation family of a DQN agent."""

    VANILLA = "vanilla"
    NOISY = "noisy"
    CATEGORICAL = "categorical"
    CATEGORICAL_NOISY = "categorical_noisy"

    @property
    def noisy(self) -> bool:
        return self in (DQNVariant.NOISY, DQNVariant.CATEGORICAL_NOISY)

    @property
    def categorical(self) -> bool:
        return self in (DQNVariant.CATEGORICAL, DQNVariant.CATEGORICAL_NOISY)

    @classmethod
    def from_flags(cls, *, noisy: bool, categorical: bool) -> "DQNVariant":
        table = {
            (False, False): cls.VANILLA,
            (True, False): cls.NOISY,
            (False, True): cls.CATEGORICAL,
            (True, True): cls.CATEGORICAL_NOISY,
        }
        return table[(bool(noisy), bool(categorical))]


def epsilon_threshold(options: Any, episode_count: int) -> float:
    """
    Exponentially decayed exploration rate.

    ``eps = eps_end + (eps_start - eps_end) * exp(-episode_count / eps_decay)``
    """
    start = float(options.eps_start)
    end = float(options.eps_end)
    decay = float(options.eps_decay)
    return end + (start - end) * math.exp(-float(episode_count) / decay)


def _random_actions(action_sizes, rng: np.random.Generator) -> np.ndarray:
    return np.asarray([rng.integers(0, int(a)) for a in action_sizes], dtype=np.int64)


def _argmax(q: th.Tensor) -> np.ndarray:
    # q: (B, H, A_max) with padded slots at -inf
    return q.argmax(dim=-1).cpu().numpy().astype(np.int64)


# =============================================================================
# Strategies
# =============================================================================
@th.no_grad()
def select_epsilon_greedy(
    head: Any,
    states: np.ndarray,
    *,
    training: bool,
    episode_count: int,
    options: Any,
    rng: np.random.Generator,
    generator: th.Generator,
) -> np.ndarray:
    """
    Epsilon-greedy over the online Q-network.

    Every state draws its own uniform number, so parallel environments explore
    independently. At inference the action is always greedy.
    """
    eps = epsilon_threshold(options, episode_count)
    greedy = _argmax(head.q(_to_tensor(states, head.device)))

    actions = np.empty_like(greedy)
    for i in range(greedy.shape[0]):
        if training and rng.random() < eps:
            actions[i] = _random_actions(head.action_sizes, rng)
        else:
            actions[i] = greedy[i]
    return actions


@th.no_grad()
def select_noisy(
    head: Any,
    states: np.ndarray,
    *,
    training: bool,
    episode_count: int,
    options: Any,
    rng: np.random.Generator,
    generator: th.Generator,
) -> np.ndarray:
    """
    Greedy selection through noisy layers.

    Training: the network is in train mode and its noise is resampled from
    `generator` before every state's forward pass, so no two environments
    share a draw. Inference: eval mode, mean weights only, one batched pass.

    Works for both plain and categorical networks since both return Q-values
    (expected values for C51) from ``forward``.
    """
    x = _to_tensor(states, head.device)
    if not training:
        head.q.eval()
        return _argmax(head.q(x))

    head.q.train()
    rows = []
    for i in range(x.shape[0]):
        reset_noise(head.q, generator)
        rows.append(_argmax(head.q(x[i:i + 1]))[0])
    return np.stack(rows).astype(np.int64)


@th.no_grad()
def select_greedy(
    head: Any,
    states: np.ndarray,
    *,
    training: bool,
    episode_count: int,
    options: Any,
    rng: np.random.Generator,
    generator: th.Generator,
) -> np.ndarray:
    """Argmax of ``E[Z] = sum(p * support)`` (no epsilon)."""
    return _argmax(head.q(_to_tensor(states, head.device)))


Selector = Callable[..., np.ndarray]

SELECTORS: Dict[DQNVariant, Selector] = {
    DQNVariant.VANILLA: select_epsilon_greedy,
    DQNVariant.NOISY: select_noisy,
    DQNVariant.CATEGORICAL: select_greedy,
    DQNVariant.CATEGORICAL_NOISY: select_noisy,
}


def resolve_selector(variant: DQNVariant) -> Selector:
    return SELECTORS[DQNVariant(variant)]
