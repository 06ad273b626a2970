from __future__ import annotations

from .base_buffer import BaseReplayMemory, BaseRolloutBuffer, Transition
from .replay_buffer import ReplayBatch, ReplayMemory, make_replay_batch
from .prioritized_replay_buffer import PrioritizedReplayMemory
from .rollout_buffer import RolloutBatch, RolloutBuffer

__all__ = [
    # base
    "Transition",
    "BaseReplayMemory",
    "BaseRolloutBuffer",

    # off-policy
    "ReplayBatch",
    "make_replay_batch",
    "ReplayMemory",
    "PrioritizedReplayMemory",

    # on-policy
    "RolloutBatch",
    "RolloutBuffer",
]
