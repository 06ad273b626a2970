"""
rl_engine

Top-level package initializer.

Exposes the agent builders, the rollout coordinator and the error hierarchy.

Usage
-----
from rl_engine import dqn, RolloutCoordinator, GymEnvAdapter

env = GymEnvAdapter.make("CartPole-v1", seed=0)
agent = dqn(state_size=env.state_size, action_sizes=env.action_sizes, seed=0)
RolloutCoordinator(agent, [env], pooling_rate=1).run(10_000)
"""

from __future__ import annotations

from .baselines import (
    DQNAgent,
    DQNAgentOptions,
    DQNVariant,
    PPOAgent,
    PPOAgentOptions,
    dqn,
    ppo,
)
from .common.buffers import Transition
from .common.errors import (
    BatchShapeError,
    ConfigurationError,
    CoordinatorHaltedError,
    DataError,
    InsufficientDataError,
    NonFiniteLossError,
    NumericalError,
    RLEngineError,
)
from .common.loggers import Logger, build_logger
from .common.trainers import GymEnvAdapter, RolloutCoordinator

__version__ = "0.1.0"

__all__ = [
    # agents
    "dqn",
    "DQNAgent",
    "DQNAgentOptions",
    "DQNVariant",
    "ppo",
    "PPOAgent",
    "PPOAgentOptions",
    "Transition",
    # driving
    "RolloutCoordinator",
    "GymEnvAdapter",
    # logging
    "Logger",
    "build_logger",
    # errors
    "RLEngineError",
    "ConfigurationError",
    "DataError",
    "InsufficientDataError",
    "BatchShapeError",
    "NumericalError",
    "NonFiniteLossError",
    "CoordinatorHaltedError",
]
