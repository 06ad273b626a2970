from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import torch as th
import torch.nn as nn

from ..buffers.base_buffer import Transition
from ..errors import ConfigurationError
from ..utils.common_utils import _is_finite, _to_scalar
from ..utils.persistence_utils import load_component, save_components


OPTIMIZER_COMPONENT = "optimizer"


class BaseAgent(ABC):
    """
    Shared base class for agents.

    An agent glues together four collaborators and exposes the uniform API the
    rollout coordinator drives:

    - **head**: network container (policy / target / actor / critic).
    - **core**: update engine (losses, optimizers, schedulers, target updates).
    - **memory**: experience storage (replay memory or rollout buffer).
    - **rng / generator**: the explicit RNG pair. Nothing in an agent draws
      from the global numpy or torch state.

    Uniform API
    -----------
    - select_actions(states, is_training) -> np.ndarray
    - add_transition(transitions)
    - optimize(force=False) -> Dict[str, float]
    - on_episode_end(n=1)
    - save(directory) / load(directory)

    Recurrent agents additionally override ``select_actions_recurrent`` and
    ``reset_hidden`` and set ``is_recurrent = True``. The defaults here raise
    :class:`ConfigurationError`.

    Persistence
    -----------
    ``save`` writes one versioned artifact per network returned by
    :meth:`_model_components` plus an ``optimizer`` artifact holding the core
    state (optimizers, schedulers, update counter) and ``episode_count``.
    """

    is_recurrent: bool = False

    def __init__(
        self,
        *,
        options: Any,
        head: Any,
        core: Any,
        memory: Any,
        rng: np.random.Generator,
        generator: th.Generator,
    ) -> None:
        self.options = options
        self.head = head
        self.core = core
        self.memory = memory
        self.rng = rng
        self.generator = generator

        dev = getattr(head, "device", "cpu")
        self.device: th.device = dev if isinstance(dev, th.device) else th.device(str(dev))
        self.episode_count: int = 0

    # ------------------------------------------------------------------
    # Shape info (used by the coordinator for validation)
    # ------------------------------------------------------------------
    @property
    def state_size(self) -> int:
        return int(self.head.state_size)

    @property
    def action_sizes(self) -> List[int]:
        return list(self.head.action_sizes)

    @property
    def update_calls(self) -> int:
        return int(self.core.update_calls)

    # ------------------------------------------------------------------
    # Acting
    # ------------------------------------------------------------------
    @abstractmethod
    def select_actions(self, states: Any, is_training: bool) -> np.ndarray:
        """Return one action row per state."""
        raise NotImplementedError

    def select_actions_recurrent(
        self,
        states: Any,
        hidden: Optional[Sequence[Any]],
        is_training: bool,
    ) -> Any:
        raise ConfigurationError(
            f"{self.__class__.__name__} is not recurrent; use select_actions()"
        )

    def reset_hidden(self, env_index: int) -> None:
        raise ConfigurationError(
            f"{self.__class__.__name__} is not recurrent; it keeps no hidden state"
        )

    # ------------------------------------------------------------------
    # Experience / training
    # ------------------------------------------------------------------
    def add_transition(self, transitions: Union[Transition, Iterable[Transition]]) -> None:
        self.memory.push(transitions)

    @abstractmethod
    def optimize(self, force: bool = False) -> Dict[str, float]:
        """Run an update if enough experience is stored; ``{}`` when skipped."""
        raise NotImplementedError

    def on_episode_end(self, n: int = 1) -> None:
        """Advance ``episode_count`` (drives the exploration schedule)."""
        if int(n) < 0:
            raise ConfigurationError(f"n must be >= 0, got {n}")
        self.episode_count += int(n)

    @staticmethod
    def _filter_scalar_metrics(metrics_any: Any, *, drop_non_finite: bool = True) -> Dict[str, float]:
        """Keep only scalar-like entries of `metrics_any` as Python floats."""
        metrics: Dict[str, Any] = dict(metrics_any) if isinstance(metrics_any, Mapping) else {}
        out: Dict[str, float] = {}
        for k, v in metrics.items():
            sv = _to_scalar(v)
            if sv is None:
                continue
            if drop_non_finite and not _is_finite(sv):
                continue
            out[str(k)] = float(sv)
        return out

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    @abstractmethod
    def _model_components(self) -> Dict[str, nn.Module]:
        """Component name -> network saved as its own artifact."""
        raise NotImplementedError

    def save(self, directory: str) -> Dict[str, str]:
        """
        Save every component into `directory` under the next free suffix.

        Returns
        -------
        paths : Dict[str, str]
            component name -> written file.
        """
        payloads: Dict[str, Any] = {name: m.state_dict() for name, m in self._model_components().items()}
        payloads[OPTIMIZER_COMPONENT] = {
            "meta": {
                "format_version": 1,
                "agent_class": self.__class__.__name__,
                "device": str(self.device),
            },
            "core": self.core.state_dict(),
            "episode_count": int(self.episode_count),
        }
        return save_components(directory, payloads)

    def load(self, directory: str) -> None:
        """
        Restore the newest artifact of every component from `directory`.

        Raises
        ------
        FileNotFoundError
            If any component has no artifact in `directory`.
        ValueError
            If the optimizer artifact is not in the expected format.
        """
        components = self._model_components()
        states = {name: load_component(directory, name, self.device) for name in components}
        opt_state = load_component(directory, OPTIMIZER_COMPONENT, self.device)
        if not isinstance(opt_state, dict) or "core" not in opt_state:
            raise ValueError(f"Unrecognized optimizer artifact in: {directory}")

        for name, module in components.items():
            module.load_state_dict(states[name])
        self.core.load_state_dict(opt_state["core"])
        self.episode_count = int(opt_state.get("episode_count", 0))
