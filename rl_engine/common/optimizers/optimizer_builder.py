from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Tuple, Union

import torch as th
import torch.nn as nn
import torch.optim as optim
from torch.optim import Optimizer

from ..errors import ConfigurationError


# =============================================================================
# Optimizer factory
# =============================================================================
def build_optimizer(
    params: Union[Iterable[nn.Parameter], Iterable[Dict[str, Any]]],
    *,
    name: str = "adam",
    lr: float = 3e-4,
    weight_decay: float = 0.0,
    betas: Tuple[float, float] = (0.9, 0.999),
    eps: float = 1e-8,
    amsgrad: bool = False,
    momentum: float = 0.0,
    nesterov: bool = False,
    alpha: float = 0.99,
    centered: bool = False,
) -> Optimizer:
    """
    Build a PyTorch optimizer.

    Parameters
    ----------
    params : Iterable[nn.Parameter] or Iterable[Dict[str, Any]]
        Flat parameters or PyTorch param groups.
    name : str, optional
        Optimizer identifier (case-insensitive), by default "adam".
        Supported: "adam", "adamw", "sgd", "rmsprop", "radam".
    lr : float, optional
        Base learning rate, by default 3e-4.
    weight_decay : float, optional
        Weight decay coefficient, by default 0.0.
    betas : Tuple[float, float], optional
        Adam-like betas for Adam/AdamW/RAdam, by default (0.9, 0.999).
    eps : float, optional
        Numerical stability epsilon, by default 1e-8.
    amsgrad : bool, optional
        AMSGrad variant for Adam/AdamW, by default False. The PPO learner
        turns it on.
    momentum : float, optional
        Momentum for SGD/RMSprop, by default 0.0.
    nesterov : bool, optional
        Nesterov momentum for SGD, by default False.
    alpha : float, optional
        RMSprop smoothing constant, by default 0.99.
    centered : bool, optional
        Whether to use centered RMSprop, by default False.

    Returns
    -------
    optimizer : torch.optim.Optimizer

    Raises
    ------
    ConfigurationError
        If `name` is unknown or hyperparameters are invalid.
    """
    if lr <= 0:
        raise ConfigurationError(f"lr must be > 0, got: {lr}")
    if weight_decay < 0:
        raise ConfigurationError(f"weight_decay must be >= 0, got: {weight_decay}")
    if eps <= 0:
        raise ConfigurationError(f"eps must be > 0, got: {eps}")
    if momentum < 0:
        raise ConfigurationError(f"momentum must be >= 0, got: {momentum}")

    b1, b2 = float(betas[0]), float(betas[1])
    if not (0.0 <= b1 < 1.0 and 0.0 <= b2 < 1.0):
        raise ConfigurationError(f"betas must be in [0, 1), got: {betas}")

    opt = name.lower().strip().replace("-", "").replace("_", "")
    if opt == "adamweightdecay":
        opt = "adamw"

    if opt == "adam":
        return optim.Adam(params, lr=lr, betas=(b1, b2), eps=eps, weight_decay=weight_decay, amsgrad=bool(amsgrad))

    if opt == "adamw":
        return optim.AdamW(params, lr=lr, betas=(b1, b2), eps=eps, weight_decay=weight_decay, amsgrad=bool(amsgrad))

    if opt == "sgd":
        return optim.SGD(params, lr=lr, momentum=momentum, weight_decay=weight_decay, nesterov=bool(nesterov))

    if opt == "rmsprop":
        return optim.RMSprop(
            params,
            lr=lr,
            alpha=float(alpha),
            eps=eps,
            weight_decay=weight_decay,
            momentum=momentum,
            centered=bool(centered),
        )

    if opt == "radam":
        return optim.RAdam(params, lr=lr, betas=(b1, b2), eps=eps, weight_decay=weight_decay)

    raise ConfigurationError(f"Unknown optimizer name: {name!r}")


def clip_grad_norm(
    parameters: Iterable[nn.Parameter],
    max_norm: float,
    norm_type: float = 2.0,
) -> float:
    """
    Clip gradients in-place and return the pre-clip total norm.

    Parameters
    ----------
    parameters : Iterable[nn.Parameter]
        Parameters whose gradients will be clipped. Materialized into a list
        so generators are safe.
    max_norm : float
        Maximum allowed norm. If <= 0, gradients are left untouched and the
        norm is still measured.
    norm_type : float, optional
        p-norm type, by default 2.0.

    Returns
    -------
    total_norm : float
        Pre-clip total norm.
    """
    params_list = [p for p in parameters if p.grad is not None]
    if not params_list:
        return 0.0

    if max_norm <= 0:
        norms = th.stack([p.grad.detach().norm(float(norm_type)) for p in params_list])
        return float(norms.norm(float(norm_type)).cpu().item())

    total_norm = nn.utils.clip_grad_norm_(params_list, max_norm, norm_type=float(norm_type))
    if th.is_tensor(total_norm):
        return float(total_norm.detach().cpu().item())
    return float(total_norm)


def optimizer_state_dict(optimizer: Optimizer) -> Dict[str, Any]:
    """Checkpoint-ready optimizer state dict."""
    return optimizer.state_dict()


def load_optimizer_state_dict(optimizer: Optimizer, state: Mapping[str, Any]) -> None:
    optimizer.load_state_dict(dict(state))
