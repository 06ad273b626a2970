"""
common package
==============

Shared building blocks of rl_engine: experience memory, networks, optimizer
and scheduler factories, loggers, base policy classes and the rollout
coordinator.
"""

from __future__ import annotations

from .errors import (
    BatchShapeError,
    ConfigurationError,
    CoordinatorHaltedError,
    DataError,
    InsufficientDataError,
    NonFiniteLossError,
    NumericalError,
    RLEngineError,
)

__all__ = [
    "RLEngineError",
    "ConfigurationError",
    "DataError",
    "InsufficientDataError",
    "BatchShapeError",
    "NumericalError",
    "NonFiniteLossError",
    "CoordinatorHaltedError",
]
