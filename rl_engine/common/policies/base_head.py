from __future__ import annotations

from abc import ABC
from typing import Any

import torch as th
import torch.nn as nn

from ..utils.common_utils import _to_tensor
from ..utils.policy_utils import freeze_target, hard_update


class BaseHead(nn.Module, ABC):
    """
    Base class for network containers ("heads").

    Responsibilities
    ----------------
    - Owns `device`
    - Provides tensor conversion helpers
    - Exposes target-network utilities (thin wrappers)

    Non-responsibilities
    --------------------
    - No optimization logic
    - No gradient clipping
    - No scheduler/target-update timing logic
    """

    device: th.device

    def __init__(self, *, device: str | th.device = "cpu") -> None:
        super().__init__()
        self.device = device if isinstance(device, th.device) else th.device(str(device))

    # ------------------------------------------------------------------
    # Tensor helpers
    # ------------------------------------------------------------------
    def _to_tensor_batched(self, x: Any) -> th.Tensor:
        """
        Convert input to a float tensor on self.device with a batch dimension.

        - (D,) -> (1, D)
        - already batched -> unchanged
        """
        t = _to_tensor(x, self.device)
        if t.dim() == 1:
            t = t.unsqueeze(0)
        return t

    def set_training(self, training: bool) -> None:
        """Toggle train/eval mode of every online network (targets stay in eval)."""
        for name, module in self.named_children():
            if name.endswith("_target"):
                module.eval()
            else:
                module.train(bool(training))

    # ------------------------------------------------------------------
    # Target-network utilities (thin wrappers)
    # ------------------------------------------------------------------
    @staticmethod
    def hard_update(target: nn.Module, source: nn.Module) -> None:
        hard_update(target, source)

    @staticmethod
    def freeze_target(module: nn.Module) -> None:
        freeze_target(module)
