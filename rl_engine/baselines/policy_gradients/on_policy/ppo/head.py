from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple, Union

import torch as th

from rl_engine.common.networks.policy_networks import ActorNetwork, Hidden, RecurrentActorNetwork
from rl_engine.common.networks.value_networks import CriticNetwork
from rl_engine.common.policies.base_head import BaseHead


class PPOHead(BaseHead):
    """
    PPO network container (actor + critic).

    The actor is either a feed-forward :class:`ActorNetwork` or, with
    ``use_rnn=True``, a :class:`RecurrentActorNetwork`. The critic is always a
    feed-forward :class:`CriticNetwork`.

    Action layout
    -------------
    ``[discrete indices..., continuous values...]`` as float32, one row per
    state. Continuous values are clipped to `continuous_bounds` before their
    log-probability is computed, so stored and recomputed log-probs agree.
    """

    def __init__(
        self,
        *,
        state_size: int,
        discrete_sizes: Sequence[int] = (),
        continuous_bounds: Sequence[Tuple[float, float]] = (),
        width: int = 128,
        depth: int = 2,
        use_rnn: bool = False,
        device: Union[str, th.device] = "cuda" if th.cuda.is_available() else "cpu",
    ) -> None:
        super().__init__(device=device)

        self.state_size = int(state_size)
        self.use_rnn = bool(use_rnn)

        actor_cls = RecurrentActorNetwork if self.use_rnn else ActorNetwork
        self.actor = actor_cls(
            self.state_size,
            discrete_sizes=discrete_sizes,
            continuous_bounds=continuous_bounds,
            width=width,
            depth=depth,
        ).to(self.device)
        self.critic = CriticNetwork(self.state_size, width=width, depth=depth).to(self.device)

    @property
    def action_sizes(self):
        return list(self.actor.discrete_sizes)

    @property
    def continuous_bounds(self):
        return list(self.actor.continuous_bounds)

    @property
    def action_dim(self) -> int:
        return int(self.actor.action_dim)

    # ------------------------------------------------------------------
    # Acting
    # ------------------------------------------------------------------
    def _pick(self, dist: Any, deterministic: bool, generator: Optional[th.Generator]) -> Tuple[th.Tensor, th.Tensor]:
        action = dist.mode() if deterministic else dist.sample(generator)
        action = self.actor.clip_actions(action)
        return action, dist.log_prob(action)

    @th.no_grad()
    def act(
        self,
        states: Any,
        *,
        deterministic: bool = False,
        generator: Optional[th.Generator] = None,
    ) -> Tuple[th.Tensor, th.Tensor, th.Tensor]:
        """Return (actions (B, action_dim), log_probs (B,), values (B,))."""
        x = self._to_tensor_batched(states)
        action, logp = self._pick(self.actor(x), deterministic, generator)
        return action, logp, self.critic(x)

    @th.no_grad()
    def act_recurrent(
        self,
        states: Any,
        hidden: Hidden,
        *,
        deterministic: bool = False,
        generator: Optional[th.Generator] = None,
    ) -> Tuple[th.Tensor, th.Tensor, th.Tensor, Hidden]:
        """
        One recurrent step for B independent environments.

        `hidden` is a batched (h, c) pair of shape (depth, B, width). Returns
        actions, log_probs, values and the next hidden pair.
        """
        x = self._to_tensor_batched(states)
        dist, new_hidden = self.actor.forward_recurrent(x, hidden)
        action, logp = self._pick(dist, deterministic, generator)
        return action, logp, self.critic(x), new_hidden

    @th.no_grad()
    def value(self, states: Any) -> th.Tensor:
        """V(s), shape (B,)."""
        return self.critic(self._to_tensor_batched(states))

    def initial_hidden(self, batch_size: int = 1) -> Hidden:
        return self.actor.initial_hidden(batch_size, self.device)
