"""
Policies
====================

Base classes shared by every algorithm:

- BaseHead : network container (device, tensor helpers, target utilities)
- BaseCore / QLearningCore / ActorCriticCore : update engines
- BaseAgent : uniform agent API + versioned persistence
"""

from __future__ import annotations

from .base_agent import BaseAgent
from .base_core import ActorCriticCore, BaseCore, QLearningCore
from .base_head import BaseHead

__all__ = [
    # agents
    "BaseAgent",

    # heads
    "BaseHead",

    # cores
    "BaseCore",
    "ActorCriticCore",
    "QLearningCore",
]
