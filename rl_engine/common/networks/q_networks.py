from __future__ import annotations

from typing import List, Sequence

import torch as th
import torch.nn as nn
import torch.nn.functional as F

from .base_networks import MLPFeaturesExtractor, NoisyLinear, NoisyMLPFeaturesExtractor
from ..errors import ConfigurationError
from ..utils.policy_utils import support_grid


PROB_EPS = 1e-6


# =============================================================================
# Shared pieces
# =============================================================================
class DuelingMixin:
    """
    Dueling value/advantage combination ``Q = V + (A - mean(A))``.

    The mixin only provides the combination; how V and A are produced is up to
    the network.
    """

    @staticmethod
    def combine_dueling(v: th.Tensor, a: th.Tensor, *, mean_dim: int = -1) -> th.Tensor:
        return v + (a - a.mean(dim=mean_dim, keepdim=True))


class _MultiHeadQBase(nn.Module, DuelingMixin):
    """
    Trunk + per-head output layers for multi-head discrete action spaces.

    Each head ``h`` has ``action_sizes[h]`` actions. Outputs of all heads are
    stacked into one tensor padded to ``max(action_sizes)`` along the action
    axis; ``valid_actions`` marks the real slots.

    Parameters
    ----------
    state_size : int
        Flat state dimension.
    action_sizes : Sequence[int]
        One action count per discrete head.
    out_per_action : int
        Output units per action (1 for plain Q, num_atoms for C51).
    width, depth : int
        Trunk width and number of hidden blocks.
    dueling : bool
        Use a value stream plus an advantage stream per head.
    noisy : bool
        Use NoisyLinear for hidden layers after the first and for the heads.
    noisy_std : float
        Sigma scale for NoisyLinear layers.
    """

    def __init__(
        self,
        state_size: int,
        action_sizes: Sequence[int],
        out_per_action: int,
        width: int,
        depth: int,
        dueling: bool,
        noisy: bool,
        noisy_std: float,
    ) -> None:
        super().__init__()

        sizes = [int(a) for a in action_sizes]
        if len(sizes) == 0:
            raise ConfigurationError("action_sizes must contain at least one head")
        if any(a < 1 for a in sizes):
            raise ConfigurationError(f"every action size must be >= 1, got {sizes}")
        if int(state_size) < 1:
            raise ConfigurationError(f"state_size must be >= 1, got {state_size}")

        self.state_size = int(state_size)
        self.action_sizes: List[int] = sizes
        self.n_heads = len(sizes)
        self.max_actions = max(sizes)
        self.out_per_action = int(out_per_action)
        self.dueling = bool(dueling)
        self.noisy = bool(noisy)

        if self.noisy:
            self.trunk = NoisyMLPFeaturesExtractor(self.state_size, width, depth, std_init=noisy_std)
        else:
            self.trunk = MLPFeaturesExtractor(self.state_size, width, depth)

        def _linear(n_in: int, n_out: int) -> nn.Module:
            if self.noisy:
                return NoisyLinear(n_in, n_out, std_init=noisy_std)
            return nn.Linear(n_in, n_out)

        feat = self.trunk.out_dim
        k = self.out_per_action
        self.adv_heads = nn.ModuleList([_linear(feat, a * k) for a in sizes])
        if self.dueling:
            self.value_heads = nn.ModuleList([_linear(feat, k) for _ in sizes])

        mask = th.zeros(self.n_heads, self.max_actions, dtype=th.bool)
        for h, a in enumerate(sizes):
            mask[h, :a] = True
        self.register_buffer("valid_actions", mask, persistent=False)

    def _head_outputs(self, state: th.Tensor, pad_value: float) -> th.Tensor:
        """
        Raw per-head outputs, shape (B, H, A_max, K), padded with `pad_value`.
        """
        if state.ndim == 1:
            state = state.unsqueeze(0)
        feat = self.trunk(state)
        B = feat.shape[0]
        k = self.out_per_action

        outs = []
        for h, a in enumerate(self.action_sizes):
            out = self.adv_heads[h](feat).view(B, a, k)
            if self.dueling:
                v = self.value_heads[h](feat).view(B, 1, k)
                out = self.combine_dueling(v, out, mean_dim=1)
            if a < self.max_actions:
                out = F.pad(out, (0, 0, 0, self.max_actions - a), value=pad_value)
            outs.append(out)
        return th.stack(outs, dim=1)


# =============================================================================
# Plain (optionally dueling / noisy) Q-network
# =============================================================================
class QNetwork(_MultiHeadQBase):
    """
    Multi-head discrete Q-network.

    ``forward(state)`` returns Q-values of shape (B, n_heads, max_actions).
    Padded slots of heads with fewer actions hold ``-inf`` so that argmax and
    max never select them.
    """

    def __init__(
        self,
        state_size: int,
        action_sizes: Sequence[int],
        width: int = 128,
        depth: int = 2,
        dueling: bool = False,
        noisy: bool = False,
        noisy_std: float = 0.5,
    ) -> None:
        super().__init__(
            state_size,
            action_sizes,
            out_per_action=1,
            width=width,
            depth=depth,
            dueling=dueling,
            noisy=noisy,
            noisy_std=noisy_std,
        )

    def forward(self, state: th.Tensor) -> th.Tensor:
        return self._head_outputs(state, pad_value=float("-inf")).squeeze(-1)


# =============================================================================
# Categorical (C51) Q-network
# =============================================================================
class CategoricalQNetwork(_MultiHeadQBase):
    """
    Multi-head C51 Q-network.

    Models Z(s, a) as a categorical distribution over the fixed support
    ``linspace(v_min, v_max, num_atoms)``.

    Outputs
    -------
    - dist(state): probabilities, shape (B, n_heads, max_actions, num_atoms).
      Each atom slice sums to 1. Padded action slots are uniform.
    - forward(state): expected Q ``sum_k p_k z_k``, shape
      (B, n_heads, max_actions); padded slots hold ``-inf``.

    Notes
    -----
    The dueling combination is performed in logits space. Probabilities are
    clamped to ``PROB_EPS`` and renormalized to avoid exact zeros in the
    cross-entropy.
    """

    def __init__(
        self,
        state_size: int,
        action_sizes: Sequence[int],
        num_atoms: int = 51,
        v_min: float = -1.0,
        v_max: float = 10.0,
        width: int = 128,
        depth: int = 2,
        dueling: bool = False,
        noisy: bool = False,
        noisy_std: float = 0.5,
    ) -> None:
        if int(num_atoms) < 2:
            raise ConfigurationError(f"num_atoms must be >= 2, got {num_atoms}")
        if not float(v_max) > float(v_min):
            raise ConfigurationError(f"Require v_max > v_min. Got v_min={v_min}, v_max={v_max}")

        super().__init__(
            state_size,
            action_sizes,
            out_per_action=int(num_atoms),
            width=width,
            depth=depth,
            dueling=dueling,
            noisy=noisy,
            noisy_std=noisy_std,
        )
        self.num_atoms = int(num_atoms)
        self.v_min = float(v_min)
        self.v_max = float(v_max)
        self.register_buffer("support", support_grid(self.v_min, self.v_max, self.num_atoms))

    def dist(self, state: th.Tensor) -> th.Tensor:
        logits = self._head_outputs(state, pad_value=0.0)
        prob = th.softmax(logits, dim=-1)
        prob = prob.clamp(min=PROB_EPS)
        return prob / prob.sum(dim=-1, keepdim=True)

    def expected_values(self, prob: th.Tensor) -> th.Tensor:
        """(B, H, A, K) probabilities -> (B, H, A) expected values, padded slots -inf."""
        q = th.sum(prob * self.support.view(1, 1, 1, -1), dim=-1)
        return q.masked_fill(~self.valid_actions.unsqueeze(0), float("-inf"))

    def forward(self, state: th.Tensor) -> th.Tensor:
        return self.expected_values(self.dist(state))
