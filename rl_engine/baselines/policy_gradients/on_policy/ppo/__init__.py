"""
PPO
=======

- :func:`ppo`
    Builder that wires together a :class:`PPOHead` (actor + critic), a
    :class:`PPOCore` and a :class:`RolloutBuffer`.
- :class:`PPOAgent` / :class:`PPOAgentOptions`
    Agent with the uniform API plus the recurrent selection API
    (``select_actions_recurrent`` / ``reset_hidden``) when ``use_rnn=True``.

Examples
--------
>>> from rl_engine.baselines.policy_gradients.on_policy.ppo import ppo
>>> agent = ppo(state_size=3, continuous_action_bounds=[(-2.0, 2.0)])
"""

from __future__ import annotations

from .core import PPOCore
from .head import PPOHead
from .ppo import PPOAgent, PPOAgentOptions, ppo

__all__ = [
    "ppo",
    "PPOAgent",
    "PPOAgentOptions",
    "PPOHead",
    "PPOCore",
]
