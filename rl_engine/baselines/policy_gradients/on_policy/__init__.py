from __future__ import annotations

from .ppo import PPOAgent, PPOAgentOptions, ppo

__all__ = ["ppo", "PPOAgent", "PPOAgentOptions"]
