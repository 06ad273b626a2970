from __future__ import annotations

from .env_adapters import GymEnvAdapter
from .rollout_coordinator import RolloutCoordinator

__all__ = [
    "GymEnvAdapter",
    "RolloutCoordinator",
]
