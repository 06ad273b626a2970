from __future__ import annotations

import torch as th
import torch.nn as nn

from .base_networks import MLPFeaturesExtractor


class CriticNetwork(nn.Module):
    """
    State-value network V(s) for PPO.

    ``forward(state)`` maps (B, state_size) to (B,).
    """

    def __init__(self, state_size: int, width: int = 128, depth: int = 2) -> None:
        super().__init__()
        self.trunk = MLPFeaturesExtractor(int(state_size), width, depth, activation_fn=nn.Tanh)
        self.v_head = nn.Linear(self.trunk.out_dim, 1)

    def forward(self, state: th.Tensor) -> th.Tensor:
        if state.ndim == 1:
            state = state.unsqueeze(0)
        return self.v_head(self.trunk(state)).squeeze(-1)
