"""
Baselines
====================

Ready-to-use agents built on ``rl_engine.common``:

- q_learning.dqn : DQN family (vanilla / noisy / categorical, dueling, double, PER)
- policy_gradients.on_policy.ppo : PPO (discrete + continuous heads, optional LSTM actor)
"""

from __future__ import annotations

from .policy_gradients import PPOAgent, PPOAgentOptions, ppo
from .q_learning import DQNAgent, DQNAgentOptions, DQNVariant, dqn

__all__ = [
    "dqn",
    "DQNAgent",
    "DQNAgentOptions",
    "DQNVariant",
    "ppo",
    "PPOAgent",
    "PPOAgentOptions",
]
