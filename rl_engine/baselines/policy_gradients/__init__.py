from __future__ import annotations

from .on_policy import PPOAgent, PPOAgentOptions, ppo

__all__ = ["ppo", "PPOAgent", "PPOAgentOptions"]
