"""
Utils
====================

Small, reusable helpers shared across the codebase.

Modules included
----------------
- buffer_utils
    GAE, index sampling and the PER segment trees.
- common_utils
    NumPy/Torch conversion helpers, scalar coercion, state-batch formatting.
- logger_utils
    Run-directory management and serialization helpers for writers.
- persistence_utils
    Auto-incremented versioned artifact paths and component save/load.
- policy_utils
    C51 support/projection and target-network update helpers.
- train_utils
    Device resolution, explicit RNG construction, progress bars.

Functions prefixed with '_' are semi-private: importable for internal use but
not part of the stable API.
"""

from __future__ import annotations

from .buffer_utils import (
    MinSegmentTree,
    SegmentTree,
    SumSegmentTree,
    compute_gae,
    next_power_of_two,
    stratified_prefixsum_indices,
    uniform_indices,
)
from .common_utils import _as_state_batch, _is_finite, _to_numpy, _to_scalar, _to_tensor
from .persistence_utils import (
    latest_versioned_path,
    load_component,
    next_versioned_path,
    save_components,
)
from .policy_utils import distribution_projection, freeze_target, hard_update, soft_update, support_grid
from .train_utils import _make_pbar, make_generators, resolve_device, seeded_init

__all__ = [
    # buffer_utils
    "SegmentTree",
    "SumSegmentTree",
    "MinSegmentTree",
    "compute_gae",
    "next_power_of_two",
    "uniform_indices",
    "stratified_prefixsum_indices",
    # common_utils
    "_to_numpy",
    "_to_tensor",
    "_to_scalar",
    "_is_finite",
    "_as_state_batch",
    # persistence_utils
    "next_versioned_path",
    "latest_versioned_path",
    "save_components",
    "load_component",
    # policy_utils
    "support_grid",
    "distribution_projection",
    "freeze_target",
    "hard_update",
    "soft_update",
    # train_utils
    "resolve_device",
    "make_generators",
    "seeded_init",
    "_make_pbar",
]
