from __future__ import annotations

from .dqn import DQNAgent, DQNAgentOptions, DQNVariant, dqn

__all__ = ["dqn", "DQNAgent", "DQNAgentOptions", "DQNVariant"]
