from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional

import math

from torch.optim import Optimizer
from torch.optim.lr_scheduler import CyclicLR, ExponentialLR, LambdaLR, LRScheduler, StepLR

from ..errors import ConfigurationError


# =============================================================================
# Public API
# =============================================================================
def build_scheduler(
    optimizer: Optimizer,
    *,
    name: str = "cyclic",
    # cyclic
    base_lr_ratio: float = 0.5,
    max_lr_ratio: float = 2.0,
    step_size_up: int = 500,
    step_size_down: int = 2000,
    # lambda-based
    total_steps: int = 0,
    warmup_steps: int = 0,
    min_lr_ratio: float = 0.0,
    # step / exp
    step_size: int = 1000,
    gamma: float = 0.99,
) -> Optional[LRScheduler]:
    """
    Construct a PyTorch learning-rate scheduler.

    Parameters
    ----------
    optimizer : torch.optim.Optimizer
        Target optimizer. Every schedule below is stepped once per
        ``optimizer.step()``.
    name : str, default="cyclic"
        Scheduler identifier (case-insensitive). Hyphens/spaces are normalized.
        Supported values:

        - "none" / "constant"
            No scheduling (returns None).
        - "cyclic"
            Triangular CyclicLR between ``lr * base_lr_ratio`` and
            ``lr * max_lr_ratio``, ``step_size_up`` steps up and
            ``step_size_down`` steps down, no momentum cycling.
        - "linear"
            Linear warmup (optional) then linear decay to `min_lr_ratio`.
        - "cosine"
            Linear warmup (optional) then cosine decay to `min_lr_ratio`.
        - "step"
            StepLR (decay every `step_size` by factor `gamma`).
        - "exponential"
            ExponentialLR (multiply by `gamma` every step).

    base_lr_ratio, max_lr_ratio : float
        Cyclic bounds as multiples of each param group's current LR.
    step_size_up, step_size_down : int
        Cyclic half-period lengths in optimizer steps.
    total_steps : int, default=0
        Horizon for "linear" / "cosine". Required (> 0) for those.
    warmup_steps : int, default=0
        Warmup length for "linear" / "cosine"; clamped to `total_steps`.
    min_lr_ratio : float, default=0.0
        Final LR floor as a fraction of base LR, in [0, 1].
    step_size : int, default=1000
        StepLR period.
    gamma : float, default=0.99
        Decay factor for StepLR / ExponentialLR.

    Returns
    -------
    scheduler : Optional[torch.optim.lr_scheduler.LRScheduler]
        None for "none" / "constant".

    Raises
    ------
    ConfigurationError
        If required parameters are missing or invalid for the selected scheduler.

    Notes
    -----
    CyclicLR resets the optimizer LR to the lower bound on construction, so the
    first update runs at ``lr * base_lr_ratio``.
    """
    if optimizer is None:
        raise ConfigurationError("optimizer must not be None")

    sched = _normalize_scheduler_name(name)

    if sched in ("none", "constant"):
        return None

    if sched == "cyclic":
        base_ratio = float(base_lr_ratio)
        max_ratio = float(max_lr_ratio)
        if not (0.0 < base_ratio <= max_ratio):
            raise ConfigurationError(
                f"cyclic requires 0 < base_lr_ratio <= max_lr_ratio, got {base_ratio}, {max_ratio}"
            )
        if int(step_size_up) <= 0 or int(step_size_down) <= 0:
            raise ConfigurationError(
                f"step_size_up/step_size_down must be > 0, got {step_size_up}, {step_size_down}"
            )
        lrs = [float(g["lr"]) for g in optimizer.param_groups]
        return CyclicLR(
            optimizer,
            base_lr=[lr * base_ratio for lr in lrs],
            max_lr=[lr * max_ratio for lr in lrs],
            step_size_up=int(step_size_up),
            step_size_down=int(step_size_down),
            cycle_momentum=False,
        )

    min_lr_ratio_f = float(min_lr_ratio)
    if not (0.0 <= min_lr_ratio_f <= 1.0):
        raise ConfigurationError(f"min_lr_ratio must be in [0, 1], got: {min_lr_ratio_f}")

    warmup_steps_i = int(warmup_steps)
    if warmup_steps_i < 0:
        raise ConfigurationError(f"warmup_steps must be >= 0, got: {warmup_steps_i}")

    if sched in ("linear", "cosine"):
        if int(total_steps) <= 0:
            raise ConfigurationError(f"{sched} scheduler requires total_steps > 0")
        total_steps_i = int(total_steps)
        warmup_steps_i = min(warmup_steps_i, total_steps_i)

        make = _lr_lambda_linear if sched == "linear" else _lr_lambda_cosine
        fn = make(total_steps=total_steps_i, warmup_steps=warmup_steps_i, min_lr_ratio=min_lr_ratio_f)
        return LambdaLR(optimizer, lr_lambda=fn)

    if sched in ("step", "exponential"):
        gamma_f = float(gamma)
        if gamma_f <= 0.0:
            raise ConfigurationError(f"gamma must be > 0, got: {gamma_f}")
        if sched == "exponential":
            return ExponentialLR(optimizer, gamma=gamma_f)

        step_size_i = int(step_size)
        if step_size_i <= 0:
            raise ConfigurationError(f"step_size must be > 0, got: {step_size_i}")
        return StepLR(optimizer, step_size=step_size_i, gamma=gamma_f)

    raise ConfigurationError(f"Unknown scheduler name: {name!r}")


def scheduler_state_dict(scheduler: Optional[LRScheduler]) -> Dict[str, Any]:
    """``{}`` if scheduler is None, else ``scheduler.state_dict()``."""
    return {} if scheduler is None else scheduler.state_dict()


def load_scheduler_state_dict(scheduler: Optional[LRScheduler], state: Mapping[str, Any]) -> None:
    """Restore scheduler state; no-op when scheduler is None or state is empty."""
    if scheduler is None or not state:
        return
    scheduler.load_state_dict(dict(state))


# =============================================================================
# Internal helpers
# =============================================================================
def _normalize_scheduler_name(name: str) -> str:
    return str(name).lower().strip().replace("-", "_").replace(" ", "_")


def _lr_lambda_linear(*, total_steps: int, warmup_steps: int, min_lr_ratio: float) -> Callable[[int], float]:
    """Linear warmup to 1, then linear decay to `min_lr_ratio`."""

    def f(step: int) -> float:
        s = max(0, int(step))
        if warmup_steps > 0 and s < warmup_steps:
            return (s + 1) / float(max(1, warmup_steps))

        denom = max(1, total_steps - warmup_steps)
        t = min(1.0, (s - warmup_steps) / float(denom))
        return (1.0 - t) + t * min_lr_ratio

    return f


def _lr_lambda_cosine(*, total_steps: int, warmup_steps: int, min_lr_ratio: float) -> Callable[[int], float]:
    """Linear warmup to 1, then cosine decay to `min_lr_ratio`."""

    def f(step: int) -> float:
        s = max(0, int(step))
        if warmup_steps > 0 and s < warmup_steps:
            return (s + 1) / float(max(1, warmup_steps))

        denom = max(1, total_steps - warmup_steps)
        t = min(1.0, (s - warmup_steps) / float(denom))
        cosine = 0.5 * (1.0 + math.cos(math.pi * t))
        return min_lr_ratio + (1.0 - min_lr_ratio) * cosine

    return f
