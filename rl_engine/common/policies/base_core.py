from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Mapping, Optional

import torch as th
import torch.nn as nn
from torch.optim import Optimizer

from ..errors import ConfigurationError, NonFiniteLossError
from ..optimizers.optimizer_builder import (
    build_optimizer,
    clip_grad_norm,
    load_optimizer_state_dict,
    optimizer_state_dict,
)
from ..optimizers.scheduler_builder import (
    build_scheduler,
    load_scheduler_state_dict,
    scheduler_state_dict,
)
from ..utils.policy_utils import freeze_target, hard_update, soft_update


class BaseCore(ABC):
    """
    Base class for update engines ("cores").

    A core performs parameter updates from data batches (a DQN TD step, a PPO
    epoch loop). This base class provides the shared infrastructure:

    - A reference to `head` (container of networks).
    - Normalized `device`.
    - A monotonically increasing update counter.
    - Gradient clipping that reports the pre-clip norm.
    - The non-finite guard run before every backward pass.
    - Target-network update scheduling (hard / Polyak).
    - Optimizer/scheduler checkpoint serialization helpers.

    Parameters
    ----------
    head : Any
        Duck-typed container of networks exposing ``device``.
    """

    def __init__(self, *, head: Any) -> None:
        self.head = head
        dev = getattr(head, "device", th.device("cpu"))
        self.device = dev if isinstance(dev, th.device) else th.device(str(dev))
        self._update_calls: int = 0

    # ---------------------------------------------------------------------
    # Bookkeeping
    # ---------------------------------------------------------------------
    @property
    def update_calls(self) -> int:
        """Number of completed update steps."""
        return int(self._update_calls)

    def _bump(self) -> None:
        self._update_calls += 1

    # ---------------------------------------------------------------------
    # Numerical guards
    # ---------------------------------------------------------------------
    def _check_finite(self, name: str, value: Any) -> None:
        """
        Raise :class:`NonFiniteLossError` if `value` holds NaN/Inf.

        Called on the loss before ``backward()`` and on the gradient norm
        before ``optimizer.step()``, so parameters are never touched by a
        diverged update.
        """
        if th.is_tensor(value):
            ok = bool(th.isfinite(value).all().item())
            shown = float(value.detach().float().mean().cpu().item()) if value.numel() else float("nan")
        else:
            shown = float(value)
            ok = th.isfinite(th.tensor(shown)).item()
        if not ok:
            raise NonFiniteLossError(name, shown, self._update_calls)

    def _clip_params(self, params: Iterable[nn.Parameter], *, max_grad_norm: float) -> float:
        """
        Clip gradients in-place and return the pre-clip norm.

        ``max_grad_norm <= 0`` disables clipping; the norm is still measured.
        """
        return clip_grad_norm(params, float(max_grad_norm))

    # ---------------------------------------------------------------------
    # Target network
    # ---------------------------------------------------------------------
    def _maybe_update_target(
        self,
        *,
        target: Optional[nn.Module],
        source: nn.Module,
        interval: int,
        tau: float,
    ) -> bool:
        """
        Conditionally update a target network.

        Parameters
        ----------
        target : Optional[nn.Module]
            Target network. None is a no-op.
        source : nn.Module
            Online network.
        interval : int
            Update when ``update_calls % interval == 0``. <= 0 disables.
        tau : float
            ``tau >= 1`` copies the weights (hard update); ``0 < tau < 1``
            blends them (Polyak).

        Returns
        -------
        updated : bool
        """
        if target is None:
            return False
        interval_i = int(interval)
        if interval_i <= 0 or (self._update_calls % interval_i) != 0:
            return False

        tau_f = float(tau)
        if not (0.0 < tau_f <= 1.0):
            raise ConfigurationError(f"tau must be in (0, 1], got {tau_f}")

        if tau_f >= 1.0:
            hard_update(target, source)
        else:
            soft_update(target, source, tau_f)
        freeze_target(target)
        return True

    # ---------------------------------------------------------------------
    # Optimizer / scheduler persistence helpers
    # ---------------------------------------------------------------------
    @staticmethod
    def _save_opt_sched(opt: Optimizer, sched: Optional[Any]) -> Dict[str, Any]:
        return {"opt": optimizer_state_dict(opt), "sched": scheduler_state_dict(sched)}

    @staticmethod
    def _load_opt_sched(opt: Optimizer, sched: Optional[Any], state: Mapping[str, Any]) -> None:
        opt_state = state.get("opt", None)
        if opt_state is not None:
            load_optimizer_state_dict(opt, opt_state)
        load_scheduler_state_dict(sched, state.get("sched", {}))

    @staticmethod
    def _current_lr(opt: Optimizer) -> float:
        return float(opt.param_groups[0]["lr"])

    # ---------------------------------------------------------------------
    # Default persistence (core-wide)
    # ---------------------------------------------------------------------
    def state_dict(self) -> Dict[str, Any]:
        return {"update_calls": int(self._update_calls)}

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        self._update_calls = int(state.get("update_calls", 0))

    # ---------------------------------------------------------------------
    # Main contract
    # ---------------------------------------------------------------------
    @abstractmethod
    def update_from_batch(self, batch: Any) -> Dict[str, Any]:
        """Run one update from `batch` and return metrics."""
        raise NotImplementedError


class QLearningCore(BaseCore, ABC):
    """
    Base class for Q-learning update engines (DQN family).

    Owns the Q-network optimizer + (optional) scheduler and their persistence.

    Required head interface (duck-typed)
    ------------------------------------
    - head.q : nn.Module
        Online Q-network.

    Parameters
    ----------
    optim_name, lr, weight_decay, amsgrad
        Forwarded to :func:`build_optimizer`.
    sched_name : str
        Forwarded to :func:`build_scheduler` ("cyclic" by default).
    sched_kwargs : Mapping[str, Any], optional
        Extra scheduler arguments (e.g. ``step_size_up``).
    """

    def __init__(
        self,
        *,
        head: Any,
        optim_name: str = "adam",
        lr: float = 1e-3,
        weight_decay: float = 0.0,
        amsgrad: bool = False,
        sched_name: str = "cyclic",
        sched_kwargs: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(head=head)

        if not hasattr(self.head, "q") or not isinstance(self.head.q, nn.Module):
            raise ConfigurationError("QLearningCore requires head.q: nn.Module")

        self.opt = build_optimizer(
            self.head.q.parameters(),
            name=str(optim_name),
            lr=float(lr),
            weight_decay=float(weight_decay),
            amsgrad=bool(amsgrad),
        )
        self.sched = build_scheduler(self.opt, name=str(sched_name), **dict(sched_kwargs or {}))

    def _step_sched(self) -> None:
        if self.sched is not None:
            self.sched.step()

    def state_dict(self) -> Dict[str, Any]:
        s = super().state_dict()
        s.update({"q": self._save_opt_sched(self.opt, self.sched)})
        return s

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        super().load_state_dict(state)
        if "q" in state:
            self._load_opt_sched(self.opt, self.sched, state["q"])


class ActorCriticCore(BaseCore, ABC):
    """
    Base class for actor-critic update engines.

    Owns two independent optimization pipelines (actor and critic), each with
    its own optimizer, scheduler and gradient clipping.

    Required head interface (duck-typed)
    ------------------------------------
    - head.actor : nn.Module
    - head.critic : nn.Module
    """

    def __init__(
        self,
        *,
        head: Any,
        optim_name: str = "adam",
        actor_lr: float = 3e-4,
        critic_lr: float = 3e-4,
        weight_decay: float = 0.0,
        amsgrad: bool = True,
        sched_name: str = "cyclic",
        sched_kwargs: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(head=head)

        if not hasattr(self.head, "actor") or not isinstance(self.head.actor, nn.Module):
            raise ConfigurationError("ActorCriticCore requires head.actor: nn.Module")
        if not hasattr(self.head, "critic") or not isinstance(self.head.critic, nn.Module):
            raise ConfigurationError("ActorCriticCore requires head.critic: nn.Module")

        self.actor_opt = build_optimizer(
            self.head.actor.parameters(),
            name=str(optim_name),
            lr=float(actor_lr),
            weight_decay=float(weight_decay),
            amsgrad=bool(amsgrad),
        )
        self.critic_opt = build_optimizer(
            self.head.critic.parameters(),
            name=str(optim_name),
            lr=float(critic_lr),
            weight_decay=float(weight_decay),
            amsgrad=bool(amsgrad),
        )

        kw = dict(sched_kwargs or {})
        self.actor_sched = build_scheduler(self.actor_opt, name=str(sched_name), **kw)
        self.critic_sched = build_scheduler(self.critic_opt, name=str(sched_name), **kw)

    def _step_scheds(self) -> None:
        if self.actor_sched is not None:
            self.actor_sched.step()
        if self.critic_sched is not None:
            self.critic_sched.step()

    def state_dict(self) -> Dict[str, Any]:
        s = super().state_dict()
        s.update(
            {
                "actor": self._save_opt_sched(self.actor_opt, self.actor_sched),
                "critic": self._save_opt_sched(self.critic_opt, self.critic_sched),
            }
        )
        return s

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        super().load_state_dict(state)
        if "actor" in state:
            self._load_opt_sched(self.actor_opt, self.actor_sched, state["actor"])
        if "critic" in state:
            self._load_opt_sched(self.critic_opt, self.critic_sched, state["critic"])
