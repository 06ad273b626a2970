from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import torch as th
import torch.nn as nn

from .base_networks import MLPFeaturesExtractor
from .distributions import MultiHeadActionDistribution
from ..errors import ConfigurationError


Hidden = Tuple[th.Tensor, th.Tensor]


# =============================================================================
# Feed-forward actor
# =============================================================================
class ActorNetwork(nn.Module):
    """
    PPO actor with discrete softmax heads and Gaussian continuous heads.

    Architecture
    ------------
    state -> (Linear -> tanh) x depth -> {discrete logits per head,
                                          continuous mean, continuous log_std}

    Parameters
    ----------
    state_size : int
        Flat state dimension.
    discrete_sizes : Sequence[int]
        One action count per discrete head (may be empty).
    continuous_bounds : Sequence[Tuple[float, float]]
        (low, high) per continuous dimension (may be empty).
    width, depth : int
        Trunk width and number of hidden blocks (depth >= 1).

    Raises
    ------
    ConfigurationError
        If there are no heads at all, a head has < 1 action, a bound has
        low >= high, or width/depth are invalid.
    """

    is_recurrent = False

    def __init__(
        self,
        state_size: int,
        discrete_sizes: Sequence[int] = (),
        continuous_bounds: Sequence[Tuple[float, float]] = (),
        width: int = 128,
        depth: int = 2,
    ) -> None:
        super().__init__()

        self.state_size = int(state_size)
        self.discrete_sizes: List[int] = [int(a) for a in discrete_sizes]
        self.continuous_bounds: List[Tuple[float, float]] = [(float(lo), float(hi)) for lo, hi in continuous_bounds]

        if not self.discrete_sizes and not self.continuous_bounds:
            raise ConfigurationError("actor needs at least one discrete or continuous head")
        if any(a < 1 for a in self.discrete_sizes):
            raise ConfigurationError(f"every discrete action size must be >= 1, got {self.discrete_sizes}")
        for lo, hi in self.continuous_bounds:
            if not lo < hi:
                raise ConfigurationError(f"continuous bound must satisfy low < high, got ({lo}, {hi})")

        self.width = int(width)
        self.depth = int(depth)
        self._build_body()

        feat = self.trunk.out_dim
        self.discrete_heads = nn.ModuleList([nn.Linear(feat, a) for a in self.discrete_sizes])
        n_cont = len(self.continuous_bounds)
        if n_cont > 0:
            self.mean_head = nn.Linear(feat, n_cont)
            self.log_std_head = nn.Linear(feat, n_cont)

    def _build_body(self) -> None:
        self.trunk = MLPFeaturesExtractor(self.state_size, self.width, self.depth, activation_fn=nn.Tanh)

    @property
    def action_dim(self) -> int:
        return len(self.discrete_sizes) + len(self.continuous_bounds)

    def _heads(self, feat: th.Tensor) -> MultiHeadActionDistribution:
        logits = [head(feat) for head in self.discrete_heads]
        if self.continuous_bounds:
            return MultiHeadActionDistribution(logits, self.mean_head(feat), self.log_std_head(feat))
        return MultiHeadActionDistribution(logits)

    def forward(self, state: th.Tensor) -> MultiHeadActionDistribution:
        if state.ndim == 1:
            state = state.unsqueeze(0)
        return self._heads(self.trunk(state))

    def clip_actions(self, actions: th.Tensor) -> th.Tensor:
        """Clamp the continuous part of `actions` (B, action_dim) to its bounds."""
        if not self.continuous_bounds:
            return actions
        n_d = len(self.discrete_sizes)
        lo = actions.new_tensor([b[0] for b in self.continuous_bounds])
        hi = actions.new_tensor([b[1] for b in self.continuous_bounds])
        cont = th.max(th.min(actions[..., n_d:], hi), lo)
        return th.cat([actions[..., :n_d], cont], dim=-1)


# =============================================================================
# Recurrent actor
# =============================================================================
class RecurrentActorNetwork(ActorNetwork):
    """
    PPO actor with an LSTM in front of the tanh trunk.

    Architecture
    ------------
    state -> LSTM(width, num_layers=depth) -> (Linear -> tanh) x depth -> heads

    ``forward_recurrent(states, hidden)`` threads an explicit ``(h, c)`` pair:

    - states of shape (B, D) are B independent single steps;
    - states of shape (B, T, D) are B sequences of length T.

    The returned distribution is over the flattened (B * T) rows.
    """

    is_recurrent = True

    def _build_body(self) -> None:
        if self.width < 1 or self.depth < 1:
            raise ConfigurationError(f"width and depth must be >= 1, got width={self.width}, depth={self.depth}")
        self.lstm = nn.LSTM(self.state_size, self.width, num_layers=self.depth, batch_first=True)
        self.trunk = MLPFeaturesExtractor(self.width, self.width, self.depth, activation_fn=nn.Tanh)

    def initial_hidden(self, batch_size: int = 1, device: Optional[th.device] = None) -> Hidden:
        """Zero (h, c), each of shape (depth, batch_size, width)."""
        if device is None:
            device = next(self.parameters()).device
        shape = (self.depth, int(batch_size), self.width)
        return th.zeros(shape, device=device), th.zeros(shape, device=device)

    def forward_recurrent(
        self,
        states: th.Tensor,
        hidden: Optional[Hidden] = None,
    ) -> Tuple[MultiHeadActionDistribution, Hidden]:
        if states.ndim == 1:
            states = states.view(1, 1, -1)
        elif states.ndim == 2:
            states = states.unsqueeze(1)

        if hidden is None:
            hidden = self.initial_hidden(states.shape[0], states.device)

        out, new_hidden = self.lstm(states, hidden)
        feat = self.trunk(out.reshape(-1, self.width))
        return self._heads(feat), new_hidden

    def forward(self, state: th.Tensor) -> MultiHeadActionDistribution:
        dist, _ = self.forward_recurrent(state, None)
        return dist
