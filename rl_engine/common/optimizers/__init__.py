"""
Optimizers
====================

Factory functions that build optimizers and LR schedulers from string
identifiers, plus gradient clipping and checkpoint (de)serialization helpers.

Public API
----------
Optimizers
- build_optimizer
- clip_grad_norm
- optimizer_state_dict
- load_optimizer_state_dict

Schedulers
- build_scheduler
- scheduler_state_dict
- load_scheduler_state_dict
"""

from __future__ import annotations

# -----------------------------------------------------------------------------
# Optimizer factories / utilities
# -----------------------------------------------------------------------------
from .optimizer_builder import (
    build_optimizer,
    clip_grad_norm,
    load_optimizer_state_dict,
    optimizer_state_dict,
)

# -----------------------------------------------------------------------------
# Scheduler factories / utilities
# -----------------------------------------------------------------------------
from .scheduler_builder import (
    build_scheduler,
    load_scheduler_state_dict,
    scheduler_state_dict,
)

__all__ = [
    # optimizer utils
    "build_optimizer",
    "clip_grad_norm",
    "optimizer_state_dict",
    "load_optimizer_state_dict",
    # scheduler utils
    "build_scheduler",
    "scheduler_state_dict",
    "load_scheduler_state_dict",
]
