from __future__ import annotations

from typing import Union

import torch as th
import torch.nn as nn


# =============================================================================
# Distributional RL (C51)
# =============================================================================
def support_grid(
    v_min: float,
    v_max: float,
    num_atoms: int,
    device: Union[str, th.device] = "cpu",
) -> th.Tensor:
    """
    Fixed value support ``linspace(v_min, v_max, num_atoms)`` used by C51.

    Raises
    ------
    ValueError
        If num_atoms < 2 or v_max <= v_min.
    """
    if int(num_atoms) < 2:
        raise ValueError(f"num_atoms must be >= 2, got {num_atoms}")
    if not (float(v_max) > float(v_min)):
        raise ValueError(f"Require v_max > v_min. Got v_min={v_min}, v_max={v_max}")
    return th.linspace(float(v_min), float(v_max), int(num_atoms), device=device)


def distribution_projection(
    next_dist: th.Tensor,   # (B, K)
    rewards: th.Tensor,     # (B,) or (B,1)
    dones: th.Tensor,       # (B,) or (B,1)
    gamma: float,
    support: th.Tensor,     # (K,)
    v_min: float,
    v_max: float,
) -> th.Tensor:
    """
    Project the shifted-and-scaled target distribution onto the fixed support.

    Each atom z_j is moved to ``Tz_j = r + γ (1 - done) z_j`` (clamped to
    [v_min, v_max]) and its probability is split between the two neighbouring
    grid points in proportion to distance.

    Parameters
    ----------
    next_dist : torch.Tensor
        Target-network probabilities at the chosen next action, shape (B, K).
    rewards, dones : torch.Tensor
        Shape (B,) or (B, 1).
    gamma : float
        Discount factor.
    support : torch.Tensor
        Support grid, shape (K,).
    v_min, v_max : float
        Support bounds.

    Returns
    -------
    proj : torch.Tensor
        Projected distribution, shape (B, K). Rows sum to the row mass of
        `next_dist` (1 for normalized input).

    Notes
    -----
    When ``Tz_j`` lands exactly on a grid point, floor and ceil coincide and
    the usual ``(u - b)`` / ``(b - l)`` weights both vanish. The lower/upper
    indices are nudged apart in that case so no mass is lost.
    """
    if next_dist.ndim != 2:
        raise ValueError(f"next_dist must have shape (B,K), got {tuple(next_dist.shape)}")
    if support.ndim != 1 or next_dist.shape[1] != support.shape[0]:
        raise ValueError(
            f"support shape {tuple(support.shape)} does not match next_dist {tuple(next_dist.shape)}"
        )

    B, K = next_dist.shape
    v_min = float(v_min)
    v_max = float(v_max)
    device = next_dist.device
    dtype = next_dist.dtype

    z = support.detach().to(device=device, dtype=dtype).view(1, -1)
    rewards = rewards.reshape(-1, 1).to(device=device, dtype=dtype)
    dones = dones.reshape(-1, 1).to(device=device, dtype=dtype)
    if rewards.shape[0] != B or dones.shape[0] != B:
        raise ValueError(f"Batch mismatch: rewards/dones must have B={B}, got {rewards.shape[0]}, {dones.shape[0]}")

    dz = (v_max - v_min) / float(K - 1)
    tz = (rewards + (1.0 - dones) * float(gamma) * z).clamp(v_min, v_max)

    b = (tz - v_min) / dz
    l = b.floor().long()
    u = b.ceil().long()
    l[(u > 0) & (l == u)] -= 1
    u[(l < (K - 1)) & (l == u)] += 1

    proj = th.zeros_like(next_dist)
    offset = (th.arange(B, device=device) * K).view(-1, 1)
    proj.view(-1).index_add_(0, (l + offset).view(-1), (next_dist * (u.to(dtype) - b)).view(-1))
    proj.view(-1).index_add_(0, (u + offset).view(-1), (next_dist * (b - l.to(dtype))).view(-1))
    return proj


# =============================================================================
# Target network utilities
# =============================================================================
@th.no_grad()
def freeze_target(module: nn.Module) -> None:
    """Disable gradients on `module` and put it in eval mode."""
    for p in module.parameters():
        p.requires_grad_(False)
    module.eval()


@th.no_grad()
def hard_update(target: nn.Module, source: nn.Module) -> None:
    """target <- source"""
    target.load_state_dict(source.state_dict())


@th.no_grad()
def soft_update(target: nn.Module, source: nn.Module, tau: float) -> None:
    """
    Polyak update: target <- (1 - tau) * target + tau * source.

    Buffers (e.g. noisy-layer epsilons) are copied as-is.
    """
    tau = float(tau)
    if not (0.0 < tau <= 1.0):
        raise ValueError(f"tau must be in (0, 1], got: {tau}")

    for p_t, p_s in zip(target.parameters(), source.parameters()):
        p_t.data.mul_(1.0 - tau).add_(p_s.data, alpha=tau)
    for b_t, b_s in zip(target.buffers(), source.buffers()):
        b_t.data.copy_(b_s.data)
