"""
DQN
=======

Minimal import surface for the DQN family:

- :func:`dqn`
    Builder that wires together a :class:`DQNHead`, a :class:`DQNCore`, a
    (prioritized) replay memory and the agent-owned RNG pair.
- :class:`DQNAgent` / :class:`DQNAgentOptions`
    Agent with the uniform select / store / optimize / save API.
- :class:`DQNVariant`
    VANILLA, NOISY, CATEGORICAL, CATEGORICAL_NOISY. Each maps to one action
    selector in ``SELECTORS``.

Examples
--------
>>> from rl_engine.baselines.q_learning.dqn import dqn
>>> agent = dqn(state_size=4, action_sizes=[2], noisy_layers=True)
"""

from __future__ import annotations

from .core import DQNCore
from .dqn import DQNAgent, DQNAgentOptions, dqn
from .head import DQNHead
from .selectors import SELECTORS, DQNVariant, epsilon_threshold, resolve_selector

__all__ = [
    "dqn",
    "DQNAgent",
    "DQNAgentOptions",
    "DQNHead",
    "DQNCore",
    "DQNVariant",
    "SELECTORS",
    "epsilon_threshold",
    "resolve_selector",
]
