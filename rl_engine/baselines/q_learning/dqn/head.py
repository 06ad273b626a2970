from __future__ import annotations

from typing import Optional, Sequence, Union

import torch as th
import torch.nn as nn

from rl_engine.common.networks.base_networks import reset_noise
from rl_engine.common.networks.q_networks import CategoricalQNetwork, QNetwork
from rl_engine.common.policies.base_head import BaseHead
from .selectors import DQNVariant


# =============================================================================
# DQNHead
# =============================================================================
class DQNHead(BaseHead):
    """
    DQN network container (online Q + target Q).

    Owns:
      - online Q-network (self.q)
      - target Q-network (self.q_target)

    The network class follows the variant: :class:`QNetwork` for VANILLA /
    NOISY, :class:`CategoricalQNetwork` for CATEGORICAL / CATEGORICAL_NOISY.
    Both return Q-values of shape (B, n_heads, max_actions); categorical nets
    additionally expose ``dist(state)``.

    Design Notes
    ------------
    - The target net is frozen (requires_grad=False) and kept in eval() mode,
      so noisy target layers evaluate with their mean weights only.
    - The initial target parameters are copied from the online network via
      `hard_update`, then frozen via `freeze_target`.
    """

    def __init__(
        self,
        *,
        state_size: int,
        action_sizes: Sequence[int],
        variant: DQNVariant = DQNVariant.VANILLA,
        width: int = 128,
        depth: int = 2,
        dueling: bool = False,
        noisy_std: float = 0.5,
        num_atoms: int = 51,
        v_min: float = -1.0,
        v_max: float = 10.0,
        device: Union[str, th.device] = "cuda" if th.cuda.is_available() else "cpu",
    ) -> None:
        super().__init__(device=device)

        self.state_size = int(state_size)
        self.action_sizes = [int(a) for a in action_sizes]
        self.variant = DQNVariant(variant)
        self.width = int(width)
        self.depth = int(depth)
        self.dueling = bool(dueling)
        self.noisy_std = float(noisy_std)
        self.num_atoms = int(num_atoms)
        self.v_min = float(v_min)
        self.v_max = float(v_max)

        self.q = self._build_network().to(self.device)
        self.q_target = self._build_network().to(self.device)

        self.hard_update(self.q_target, self.q)
        self.freeze_target(self.q_target)

    def _build_network(self) -> nn.Module:
        if self.variant.categorical:
            return CategoricalQNetwork(
                self.state_size,
                self.action_sizes,
                num_atoms=self.num_atoms,
                v_min=self.v_min,
                v_max=self.v_max,
                width=self.width,
                depth=self.depth,
                dueling=self.dueling,
                noisy=self.variant.noisy,
                noisy_std=self.noisy_std,
            )
        return QNetwork(
            self.state_size,
            self.action_sizes,
            width=self.width,
            depth=self.depth,
            dueling=self.dueling,
            noisy=self.variant.noisy,
            noisy_std=self.noisy_std,
        )

    # ------------------------------------------------------------------
    # Convenience accessors
    # ------------------------------------------------------------------
    @property
    def n_heads(self) -> int:
        return len(self.action_sizes)

    def q_values(self, states: th.Tensor) -> th.Tensor:
        """Online Q(s, ·) per head, shape (B, H, A_max)."""
        return self.q(self._to_tensor_batched(states))

    def q_values_target(self, states: th.Tensor) -> th.Tensor:
        """Target Q(s, ·) per head, shape (B, H, A_max)."""
        return self.q_target(self._to_tensor_batched(states))

    def reset_noise(self, generator: Optional[th.Generator] = None) -> int:
        """Resample noise of the online network. Returns the number of noisy layers touched."""
        if not self.variant.noisy:
            return 0
        return reset_noise(self.q, generator)
