from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple

import torch as th
import torch.nn.functional as F

from rl_engine.common.errors import ConfigurationError
from rl_engine.common.policies.base_core import QLearningCore
from rl_engine.common.utils.common_utils import _to_scalar
from rl_engine.common.utils.policy_utils import distribution_projection


LOSS_TYPES = ("smooth_l1", "mse")


class DQNCore(QLearningCore):
    """
    DQN update engine for every variant (vanilla / noisy / categorical).

    What this core owns
    -------------------
    - TD hyperparameters: gamma, target update schedule (interval/tau)
    - Variant toggles: Double DQN, Huber vs MSE, categorical (C51) loss
    - Gradient clipping, the non-finite guard and PER priority feedback

    What `QLearningCore` provides (inherited)
    ----------------------------------------
    - `self.opt` / `self.sched`
    - `self.device` (resolved from head)
    - update counter via `_bump()`
    - `_clip_params()`, `_check_finite()`, `_maybe_update_target()`

    Expected head (duck-typed)
    --------------------------
    - head.q / head.q_target : forward(obs) -> (B, H, A_max)
    - head.q.dist / head.q_target.dist : (B, H, A_max, K) (categorical only)
    - head.variant : DQNVariant
    - head.reset_noise(generator)

    Multi-head batches
    ------------------
    ``batch.actions`` has shape (B, H). Per-sample losses are averaged over
    heads, then weighted by PER importance weights when present.
    """

    def __init__(
        self,
        *,
        head: Any,
        gamma: float = 0.99,
        target_update_interval: int = 1,
        tau: float = 0.005,
        double_dqn: bool = False,
        loss_type: str = "smooth_l1",
        max_grad_norm: float = 0.5,
        log_eps: float = 1e-6,
        generator: Optional[th.Generator] = None,
        # optimizer/scheduler (inherited)
        optim_name: str = "adam",
        lr: float = 1e-3,
        weight_decay: float = 0.0,
        sched_name: str = "cyclic",
        sched_kwargs: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(
            head=head,
            optim_name=optim_name,
            lr=lr,
            weight_decay=weight_decay,
            amsgrad=False,
            sched_name=sched_name,
            sched_kwargs=sched_kwargs,
        )

        self.gamma = float(gamma)
        self.target_update_interval = int(target_update_interval)
        self.tau = float(tau)
        self.double_dqn = bool(double_dqn)
        self.loss_type = str(loss_type).lower().strip()
        self.max_grad_norm = float(max_grad_norm)
        self.log_eps = float(log_eps)
        self.generator = generator

        if not (0.0 <= self.gamma <= 1.0):
            raise ConfigurationError(f"gamma must be in [0,1], got {self.gamma}")
        if self.target_update_interval < 1:
            raise ConfigurationError(f"target_update_interval must be >= 1, got {self.target_update_interval}")
        if not (0.0 < self.tau <= 1.0):
            raise ConfigurationError(f"tau must be in (0,1], got {self.tau}")
        if self.loss_type not in LOSS_TYPES:
            raise ConfigurationError(f"loss_type must be one of {LOSS_TYPES}, got {loss_type!r}")
        if self.max_grad_norm < 0.0:
            raise ConfigurationError(f"max_grad_norm must be >= 0, got {self.max_grad_norm}")

        self.categorical = bool(self.head.variant.categorical)
        self.head.freeze_target(self.head.q_target)

    # =============================================================================
    # Losses
    # =============================================================================
    def _td_loss(self, batch: Any) -> Tuple[th.Tensor, th.Tensor, th.Tensor, th.Tensor]:
        """
        Scalar-valued TD loss per sample.

        Returns (per_sample (B,), priorities (B,), q_sa (B, H), target (B, H)).
        """
        states, actions = batch.states, batch.actions
        rew = batch.rewards.view(-1, 1)
        done = batch.dones.view(-1, 1)

        q_all = self.head.q(states)                                          # (B, H, A)
        q_sa = q_all.gather(2, actions.unsqueeze(-1)).squeeze(-1)            # (B, H)

        with th.no_grad():
            q_next_target_all = self.head.q_target(batch.next_states)        # (B, H, A)
            if self.double_dqn:
                a_star = self.head.q(batch.next_states).argmax(dim=-1, keepdim=True)
                q_next = q_next_target_all.gather(2, a_star).squeeze(-1)
            else:
                q_next = q_next_target_all.max(dim=-1).values
            target = rew + self.gamma * (1.0 - done) * q_next                # (B, H)

        if self.loss_type == "smooth_l1":
            per_elem = F.smooth_l1_loss(q_sa, target, reduction="none")
        else:
            per_elem = F.mse_loss(q_sa, target, reduction="none")

        with th.no_grad():
            priorities = (target - q_sa).abs().mean(dim=1)

        return per_elem.mean(dim=1), priorities, q_sa, target

    def _categorical_loss(self, batch: Any) -> Tuple[th.Tensor, th.Tensor, th.Tensor, th.Tensor]:
        """
        C51 cross-entropy per sample.

        Returns (per_sample (B,), priorities (B,), q_sa (B, H), target_mean (B, H)).
        """
        states, actions = batch.states, batch.actions
        B, H = int(actions.shape[0]), int(actions.shape[1])

        dist_all = self.head.q.dist(states)                                  # (B, H, A, K)
        K = int(dist_all.shape[-1])
        idx = actions.view(B, H, 1, 1).expand(B, H, 1, K)
        dist_a = dist_all.gather(2, idx).squeeze(2)                          # (B, H, K)

        with th.no_grad():
            next_dist_all = self.head.q_target.dist(batch.next_states)       # (B, H, A, K)
            if self.double_dqn:
                a_star = self.head.q(batch.next_states).argmax(dim=-1)
            else:
                a_star = self.head.q_target.expected_values(next_dist_all).argmax(dim=-1)
            next_idx = a_star.view(B, H, 1, 1).expand(B, H, 1, K)
            next_dist = next_dist_all.gather(2, next_idx).squeeze(2)         # (B, H, K)

            proj = distribution_projection(
                next_dist=next_dist.reshape(B * H, K),
                rewards=batch.rewards.repeat_interleave(H),
                dones=batch.dones.repeat_interleave(H),
                gamma=self.gamma,
                support=self.head.q.support,
                v_min=self.head.q.v_min,
                v_max=self.head.q.v_max,
            ).view(B, H, K)

        logp = th.log(dist_a.clamp(min=self.log_eps))
        per_sample = -(proj * logp).sum(dim=-1).mean(dim=1)                  # (B,)

        with th.no_grad():
            support = self.head.q.support.view(1, 1, -1)
            q_sa = (dist_a * support).sum(dim=-1)
            target_mean = (proj * support).sum(dim=-1)

        return per_sample, per_sample.detach(), q_sa, target_mean

    # =============================================================================
    # Update
    # =============================================================================
    def update_from_batch(self, batch: Any) -> Dict[str, Any]:
        """
        One gradient step on a replay batch.

        Returns
        -------
        metrics : Dict[str, Any]
            Scalars plus ``"per/td_errors"`` (numpy, shape (B,)) for priority
            feedback.

        Raises
        ------
        NonFiniteLossError
            If the loss or the pre-clip gradient norm is NaN/Inf. Parameters
            are left untouched.
        """
        self._bump()

        self.head.q.train()
        self.head.reset_noise(self.generator)

        if self.categorical:
            per_sample, priorities, q_sa, target = self._categorical_loss(batch)
        else:
            per_sample, priorities, q_sa, target = self._td_loss(batch)

        w = batch.weights
        loss = per_sample.mean() if w is None else (per_sample * w.view(-1)).mean()
        self._check_finite("loss/q", loss)

        self.opt.zero_grad(set_to_none=True)
        loss.backward()
        grad_norm = self._clip_params(self.head.q.parameters(), max_grad_norm=self.max_grad_norm)
        if not th.isfinite(th.tensor(grad_norm)).item():
            self.opt.zero_grad(set_to_none=True)
            self._check_finite("grad_norm", grad_norm)
        self.opt.step()
        self._step_sched()

        self._maybe_update_target(
            target=self.head.q_target,
            source=self.head.q,
            interval=self.target_update_interval,
            tau=self.tau,
        )

        return {
            "loss/q": float(_to_scalar(loss)),
            "q/mean": float(_to_scalar(q_sa.mean())),
            "target/mean": float(_to_scalar(target.mean())),
            "lr": self._current_lr(self.opt),
            "grad_norm": float(grad_norm),
            "per/td_errors": priorities.detach().cpu().numpy(),
        }

    # =============================================================================
    # Persistence
    # =============================================================================
    def state_dict(self) -> Dict[str, Any]:
        s = super().state_dict()
        s.update(
            {
                "gamma": float(self.gamma),
                "target_update_interval": int(self.target_update_interval),
                "tau": float(self.tau),
                "double_dqn": bool(self.double_dqn),
                "loss_type": str(self.loss_type),
                "max_grad_norm": float(self.max_grad_norm),
            }
        )
        return s

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        # Hyperparameters are constructor-owned; only counters and optimizer state are restored.
        super().load_state_dict(state)
