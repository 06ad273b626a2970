from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Tuple

import torch as th

from rl_engine.common.errors import ConfigurationError
from rl_engine.common.policies.base_core import ActorCriticCore
from rl_engine.common.utils.common_utils import _to_scalar


class PPOCore(ActorCriticCore):
    """
    PPO update engine (single-minibatch update per call).

    Design
    ------
    This core reuses ActorCriticCore to manage:
      - actor/critic optimizers (Adam with amsgrad) + schedulers
      - update counter
      - gradient clipping helper (_clip_params), applied to actor and critic
        separately

    Batch contract (RolloutBatch)
    -----------------------------
      - states     : (B, state_size)
      - actions    : (B, action_dim)
      - log_probs  : log π_old(a|s), (B,)
      - values     : V_old(s), (B,)
      - returns    : GAE returns, (B,)
      - advantages : (normalized) advantages, (B,)

    Recurrent actors
    ----------------
    When ``head.actor.is_recurrent`` the batch must be ONE done-bounded episode
    in chronological order. It is replayed as a single sequence starting from
    ``batch.hidden`` (the zero state when the segment carries none).

    Losses
    ------
    - policy : -mean(min(r A, clip(r, 1-ε, 1+ε) A))
    - value  : mean((V - R)^2), or with ``v_clip_range > 0``
               mean(max((V - R)^2, (V_old + clip(V - V_old, ±v_clip_range) - R)^2))
    - total  : policy + c_value * value - entropy_coefficient * entropy
    """

    def __init__(
        self,
        *,
        head: Any,
        clip_epsilon: float = 0.2,
        v_clip_range: float = 0.2,
        c_value: float = 0.5,
        entropy_coefficient: float = 0.005,
        max_grad_norm: float = 0.5,
        # actor/critic opt/sched (inherited)
        optim_name: str = "adam",
        lr: float = 3e-4,
        weight_decay: float = 0.0,
        amsgrad: bool = True,
        sched_name: str = "cyclic",
        sched_kwargs: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(
            head=head,
            optim_name=optim_name,
            actor_lr=lr,
            critic_lr=lr,
            weight_decay=weight_decay,
            amsgrad=amsgrad,
            sched_name=sched_name,
            sched_kwargs=sched_kwargs,
        )

        self.clip_epsilon = float(clip_epsilon)
        self.v_clip_range = float(v_clip_range)
        self.c_value = float(c_value)
        self.entropy_coefficient = float(entropy_coefficient)
        self.max_grad_norm = float(max_grad_norm)

        if not (0.0 < self.clip_epsilon < 1.0):
            raise ConfigurationError(f"clip_epsilon must be in (0, 1), got {self.clip_epsilon}")
        if self.v_clip_range < 0.0:
            raise ConfigurationError(f"v_clip_range must be >= 0, got {self.v_clip_range}")
        if self.c_value < 0.0:
            raise ConfigurationError(f"c_value must be >= 0, got {self.c_value}")
        if self.max_grad_norm < 0.0:
            raise ConfigurationError(f"max_grad_norm must be >= 0, got {self.max_grad_norm}")

    # =============================================================================
    # Forward
    # =============================================================================
    def _evaluate(self, batch: Any) -> Tuple[th.Tensor, th.Tensor, th.Tensor]:
        """(new_logp (B,), entropy (B,), values (B,)) under the current networks."""
        actor = self.head.actor
        if actor.is_recurrent:
            dist, _ = actor.forward_recurrent(batch.states.unsqueeze(0), getattr(batch, "hidden", None))
        else:
            dist = actor(batch.states)
        return dist.log_prob(batch.actions), dist.entropy(), self.head.critic(batch.states)

    # =============================================================================
    # Update
    # =============================================================================
    def update_from_batch(self, batch: Any) -> Dict[str, float]:
        """
        Perform ONE PPO minibatch (or episode) update.

        Raises
        ------
        NonFiniteLossError
            If the total loss or either pre-clip gradient norm is NaN/Inf.
            Parameters are left untouched.
        """
        self._bump()
        self.head.set_training(True)

        old_logp = batch.log_probs.view(-1)
        old_v = batch.values.view(-1)
        ret = batch.returns.view(-1)
        adv = batch.advantages.view(-1)
        eps = self.clip_epsilon

        new_logp, entropy, v = self._evaluate(batch)

        log_ratio = new_logp - old_logp
        ratio = th.exp(log_ratio)
        surr1 = ratio * adv
        surr2 = th.clamp(ratio, 1.0 - eps, 1.0 + eps) * adv
        policy_loss = -th.min(surr1, surr2).mean()

        v_loss_unclipped = (v - ret).pow(2)
        if self.v_clip_range > 0.0:
            v_clipped = old_v + th.clamp(v - old_v, -self.v_clip_range, self.v_clip_range)
            value_loss = th.max(v_loss_unclipped, (v_clipped - ret).pow(2)).mean()
        else:
            value_loss = v_loss_unclipped.mean()

        entropy_mean = entropy.mean()
        total_loss = policy_loss + self.c_value * value_loss - self.entropy_coefficient * entropy_mean
        self._check_finite("loss/total", total_loss)

        with th.no_grad():
            approx_kl = (ratio - 1.0 - log_ratio).mean()
            clip_frac = (th.abs(ratio - 1.0) > eps).float().mean()

        # ------------------------------------------------------------------
        # Backward + optimizer steps (independent clipping)
        # ------------------------------------------------------------------
        self.actor_opt.zero_grad(set_to_none=True)
        self.critic_opt.zero_grad(set_to_none=True)
        total_loss.backward()

        actor_norm = self._clip_params(self.head.actor.parameters(), max_grad_norm=self.max_grad_norm)
        critic_norm = self._clip_params(self.head.critic.parameters(), max_grad_norm=self.max_grad_norm)
        for name, norm in (("grad_norm/actor", actor_norm), ("grad_norm/critic", critic_norm)):
            if not th.isfinite(th.tensor(norm)).item():
                self.actor_opt.zero_grad(set_to_none=True)
                self.critic_opt.zero_grad(set_to_none=True)
                self._check_finite(name, norm)

        self.actor_opt.step()
        self.critic_opt.step()
        self._step_scheds()

        return {
            "loss/policy": float(_to_scalar(policy_loss)),
            "loss/value": float(_to_scalar(value_loss)),
            "loss/entropy": float(_to_scalar(entropy_mean)),
            "loss/total": float(_to_scalar(total_loss)),
            "stats/approx_kl": float(_to_scalar(approx_kl)),
            "stats/clip_frac": float(_to_scalar(clip_frac)),
            "stats/value_mean": float(_to_scalar(v.mean())),
            "grad_norm/actor": float(actor_norm),
            "grad_norm/critic": float(critic_norm),
            "lr/actor": self._current_lr(self.actor_opt),
            "lr/critic": self._current_lr(self.critic_opt),
        }

    # =============================================================================
    # Persistence
    # =============================================================================
    def state_dict(self) -> Dict[str, Any]:
        s = super().state_dict()
        s.update(
            {
                "clip_epsilon": float(self.clip_epsilon),
                "v_clip_range": float(self.v_clip_range),
                "c_value": float(self.c_value),
                "entropy_coefficient": float(self.entropy_coefficient),
                "max_grad_norm": float(self.max_grad_norm),
            }
        )
        return s

    def load_state_dict(self, state: Mapping[str, Any]) -> None:
        super().load_state_dict(state)

        if "clip_epsilon" in state:
            self.clip_epsilon = float(state["clip_epsilon"])
        if "v_clip_range" in state:
            self.v_clip_range = float(state["v_clip_range"])
        if "c_value" in state:
            self.c_value = float(state["c_value"])
        if "entropy_coefficient" in state:
            self.entropy_coefficient = float(state["entropy_coefficient"])
        if "max_grad_norm" in state:
            self.max_grad_norm = float(state["max_grad_norm"])
