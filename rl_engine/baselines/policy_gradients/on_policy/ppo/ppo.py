from __future__ import annotations

from collections import defaultdict
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import torch as th
import torch.nn as nn

from rl_engine.common.buffers.base_buffer import Transition, _as_transition_list
from rl_engine.common.buffers.rollout_buffer import RolloutBuffer
from rl_engine.common.errors import ConfigurationError
from rl_engine.common.networks.policy_networks import Hidden
from rl_engine.common.policies.base_agent import BaseAgent
from rl_engine.common.utils.common_utils import _as_state_batch, _to_numpy
from rl_engine.common.utils.train_utils import make_generators, resolve_device, seeded_init
from .core import PPOCore
from .head import PPOHead


# =============================================================================
# Options
# =============================================================================
@dataclass(frozen=True)
class PPOAgentOptions:
    """
    Hyperparameters of a PPO agent.

    Rollout
    -------
    memory_size
        Steps (summed over environments) collected before ``optimize()``
        runs an update.
    gamma, gae_lambda
        GAE discount and smoothing.

    Update
    ------
    ppo_epochs, batch_size
        Passes over the rollout and minibatch size. Recurrent agents replay
        whole episodes instead of minibatches.
    clip_epsilon, v_clip_range, c_value, entropy_coefficient
        Surrogate clip, value clip (0 disables), value weight, entropy bonus.
    """

    batch_size: int = 64
    memory_size: int = 10_000
    gamma: float = 0.99
    gae_lambda: float = 0.95
    lr: float = 3e-4
    width: int = 128
    depth: int = 2
    clip_epsilon: float = 0.2
    v_clip_range: float = 0.2
    c_value: float = 0.5
    ppo_epochs: int = 3
    clip_grad_norm: float = 0.5
    entropy_coefficient: float = 0.005
    use_rnn: bool = False
    normalize_advantages: bool = True
    optimizer: str = "adam"
    amsgrad: bool = True
    scheduler: str = "cyclic"
    scheduler_total_steps: int = 0
    seed: Optional[int] = None
    device: str = "auto"

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")
        if self.memory_size <= 0:
            raise ConfigurationError(f"memory_size must be positive, got {self.memory_size}")
        if not (0.0 <= self.gamma <= 1.0):
            raise ConfigurationError(f"gamma must be in [0, 1], got {self.gamma}")
        if not (0.0 <= self.gae_lambda <= 1.0):
            raise ConfigurationError(f"gae_lambda must be in [0, 1], got {self.gae_lambda}")
        if self.lr <= 0.0:
            raise ConfigurationError(f"lr must be > 0, got {self.lr}")
        if self.width < 1 or self.depth < 1:
            raise ConfigurationError(f"width and depth must be >= 1, got width={self.width}, depth={self.depth}")
        if not (0.0 < self.clip_epsilon < 1.0):
            raise ConfigurationError(f"clip_epsilon must be in (0, 1), got {self.clip_epsilon}")
        if self.v_clip_range < 0.0:
            raise ConfigurationError(f"v_clip_range must be >= 0, got {self.v_clip_range}")
        if self.c_value < 0.0:
            raise ConfigurationError(f"c_value must be >= 0, got {self.c_value}")
        if self.ppo_epochs < 1:
            raise ConfigurationError(f"ppo_epochs must be >= 1, got {self.ppo_epochs}")
        if self.clip_grad_norm < 0.0:
            raise ConfigurationError(f"clip_grad_norm must be >= 0, got {self.clip_grad_norm}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# Agent
# =============================================================================
class PPOAgent(BaseAgent):
    """
    Clipped-surrogate PPO agent with discrete and/or continuous heads.

    Action selection caches ``(log_prob, value)`` per environment index so that
    the coordinator can hand over plain transitions: :meth:`add_transition`
    fills the missing fields from that cache using ``Transition.env_id``.

    With ``use_rnn=True`` the agent is recurrent: it keeps one ``(h, c)`` pair
    per environment, only :meth:`select_actions_recurrent` may be used for
    acting and :meth:`reset_hidden` zeroes an environment's state at episode
    end.

    Persistence components: ``modelActor``, ``modelCritic``, ``optimizer``.
    """

    def __init__(
        self,
        *,
        options: PPOAgentOptions,
        head: PPOHead,
        core: PPOCore,
        memory: RolloutBuffer,
        rng: np.random.Generator,
        generator: th.Generator,
    ) -> None:
        super().__init__(options=options, head=head, core=core, memory=memory, rng=rng, generator=generator)
        self.is_recurrent = bool(head.use_rnn)
        self._pending: Dict[int, Tuple[float, float, Optional[Hidden]]] = {}
        self._hidden: Dict[int, Hidden] = {}

    @property
    def continuous_bounds(self) -> List[Tuple[float, float]]:
        return self.head.continuous_bounds

    # ------------------------------------------------------------------
    # Acting
    # ------------------------------------------------------------------
    def _remember(self, log_probs: th.Tensor, values: th.Tensor, hidden: Optional[Hidden] = None) -> None:
        lp = _to_numpy(log_probs).reshape(-1)
        v = _to_numpy(values).reshape(-1)
        for i in range(lp.shape[0]):
            pair = None
            if hidden is not None:
                pair = (hidden[0][:, i:i + 1].detach().clone(), hidden[1][:, i:i + 1].detach().clone())
            self._pending[i] = (float(lp[i]), float(v[i]), pair)

    def select_actions(self, states: Any, is_training: bool) -> np.ndarray:
        """
        Actions for a batch of states, shape (B, action_dim), float32.

        Training samples from the policy; inference takes the argmax / mean.
        """
        if self.is_recurrent:
            raise ConfigurationError("recurrent PPO agent: use select_actions_recurrent()")

        batch = _as_state_batch(states, self.state_size)
        actions, log_probs, values = self.head.act(
            batch,
            deterministic=not bool(is_training),
            generator=self.generator,
        )
        self._remember(log_probs, values)
        return _to_numpy(actions).astype(np.float32)

    def _stack_hidden(self, hidden: Optional[Sequence[Optional[Hidden]]], n: int) -> Hidden:
        hs, cs = [], []
        for i in range(n):
            pair = None if hidden is None else hidden[i]
            if pair is None:
                pair = self._hidden.get(i)
            if pair is None:
                pair = self.head.initial_hidden(1)
            hs.append(pair[0])
            cs.append(pair[1])
        return th.cat(hs, dim=1), th.cat(cs, dim=1)

    def select_actions_recurrent(
        self,
        states: Any,
        hidden: Optional[Sequence[Optional[Hidden]]] = None,
        is_training: bool = True,
    ) -> Tuple[np.ndarray, List[Hidden]]:
        """
        Recurrent action selection, one step per environment.

        Parameters
        ----------
        states : Any
            B states, one per environment index.
        hidden : Sequence[Optional[Hidden]], optional
            Explicit ``(h, c)`` per environment, each of shape (depth, 1, width).
            ``None`` entries (or ``hidden=None``) use the agent's stored state.
        is_training : bool
            Sample (True) or act deterministically (False).

        Returns
        -------
        actions : np.ndarray
            Shape (B, action_dim).
        new_hidden : List[Hidden]
            Next ``(h, c)`` per environment; also stored on the agent.
        """
        if not self.is_recurrent:
            raise ConfigurationError("non-recurrent PPO agent: use select_actions()")

        batch = _as_state_batch(states, self.state_size)
        n = batch.shape[0]
        if hidden is not None and len(hidden) != n:
            raise ConfigurationError(f"expected {n} hidden states, got {len(hidden)}")

        h0 = self._stack_hidden(hidden, n)
        actions, log_probs, values, (h1, c1) = self.head.act_recurrent(
            batch,
            h0,
            deterministic=not bool(is_training),
            generator=self.generator,
        )
        self._remember(log_probs, values, h0)

        new_hidden: List[Hidden] = []
        for i in range(n):
            pair = (h1[:, i:i + 1].contiguous(), c1[:, i:i + 1].contiguous())
            self._hidden[i] = pair
            new_hidden.append(pair)
        return _to_numpy(actions).astype(np.float32), new_hidden

    def reset_hidden(self, env_index: int) -> None:
        """Zero the stored ``(h, c)`` of one environment."""
        if not self.is_recurrent:
            super().reset_hidden(env_index)
        self._hidden[int(env_index)] = self.head.initial_hidden(1)

    # ------------------------------------------------------------------
    # Experience
    # ------------------------------------------------------------------
    def add_transition(self, transitions: Union[Transition, Iterable[Transition]]) -> None:
        """
        Store on-policy transitions.

        Missing ``log_prob`` / ``value`` (and, for recurrent agents,
        ``recurrent_state``) are taken from the last selection for the
        transition's ``env_id``.

        Raises
        ------
        ConfigurationError
            If a transition lacks log_prob/value and no selection was made for
            its environment.
        """
        filled: List[Transition] = []
        for t in _as_transition_list(transitions):
            cached = self._pending.get(int(t.env_id))
            if t.log_prob is None or t.value is None:
                if cached is None:
                    raise ConfigurationError(
                        f"no log_prob/value recorded for env {t.env_id}; call select_actions first"
                    )
                t = replace(
                    t,
                    log_prob=cached[0] if t.log_prob is None else t.log_prob,
                    value=cached[1] if t.value is None else t.value,
                )
            if t.recurrent_state is None and cached is not None and cached[2] is not None:
                t = replace(t, recurrent_state=cached[2])
            filled.append(t)
        self.memory.push(filled)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------
    def _bootstrap_values(self) -> Dict[int, float]:
        pending = self.memory.bootstrap_states()
        if not pending:
            return {}
        envs = sorted(pending)
        values = _to_numpy(self.head.value(np.stack([pending[e] for e in envs]))).reshape(-1)
        return {e: float(v) for e, v in zip(envs, values)}

    def optimize(self, force: bool = False) -> Dict[str, float]:
        """
        Run ``ppo_epochs`` passes over the rollout, then clear it.

        Runs when the rollout holds ``>= memory_size`` steps, or on
        ``force=True`` with any data. Returns metrics averaged over all
        minibatch updates, or ``{}`` when skipped.
        """
        if self.memory.size == 0 or not (force or self.memory.full):
            return {}

        self.memory.compute_returns_and_advantage(self._bootstrap_values())

        sums: Dict[str, List[float]] = defaultdict(list)
        for _ in range(self.options.ppo_epochs):
            if self.is_recurrent:
                episodes = list(self.memory.episodes())
                batches = [episodes[i] for i in self.rng.permutation(len(episodes))]
            else:
                batches = self.memory.get(self.options.batch_size, self.rng)
            for batch in batches:
                for k, v in self.core.update_from_batch(batch).items():
                    sums[k].append(float(v))

        # the selection cache is kept: a step chosen before this update may
        # still be handed over after it
        self.memory.clear()

        metrics = {k: float(np.mean(v)) for k, v in sums.items()}
        return self._filter_scalar_metrics(metrics)

    def _model_components(self) -> Dict[str, nn.Module]:
        return {"modelActor": self.head.actor, "modelCritic": self.head.critic}


# =============================================================================
# Builder
# =============================================================================
def ppo(
    *,
    state_size: int,
    action_sizes: Sequence[int] = (),
    continuous_action_bounds: Sequence[Tuple[float, float]] = (),
    options: Optional[PPOAgentOptions] = None,
    **overrides: Any,
) -> PPOAgent:
    """
    Build a complete PPO agent.

    Composes:
      1) PPOHead : actor (optionally LSTM) + critic
      2) PPOCore : clipped surrogate + value loss, Adam(amsgrad) + schedulers
      3) RolloutBuffer : per-environment trajectories with GAE(λ)
      4) the agent-owned RNG pair (seeded from ``options.seed``)

    Parameters
    ----------
    state_size : int
        Flat state dimension.
    action_sizes : Sequence[int]
        Number of actions per discrete head (may be empty).
    continuous_action_bounds : Sequence[Tuple[float, float]]
        (low, high) per continuous dimension (may be empty).
    options : PPOAgentOptions, optional
        Hyperparameters. Defaults are used when omitted.
    **overrides
        Field overrides applied on top of `options`.

    Raises
    ------
    ConfigurationError
        If there is no action head or an option is out of range.
    """
    if options is None:
        options = PPOAgentOptions(**overrides)
    elif overrides:
        options = PPOAgentOptions(**{**asdict(options), **overrides})

    if int(state_size) < 1:
        raise ConfigurationError(f"state_size must be >= 1, got {state_size}")

    device = resolve_device(options.device)
    rng, generator = make_generators(options.seed, device)

    with seeded_init(options.seed):
        head = PPOHead(
            state_size=int(state_size),
            discrete_sizes=[int(a) for a in action_sizes],
            continuous_bounds=[(float(lo), float(hi)) for lo, hi in continuous_action_bounds],
            width=options.width,
            depth=options.depth,
            use_rnn=options.use_rnn,
            device=device,
        )

    core = PPOCore(
        head=head,
        clip_epsilon=options.clip_epsilon,
        v_clip_range=options.v_clip_range,
        c_value=options.c_value,
        entropy_coefficient=options.entropy_coefficient,
        max_grad_norm=options.clip_grad_norm,
        optim_name=options.optimizer,
        lr=options.lr,
        amsgrad=options.amsgrad,
        sched_name=options.scheduler,
        sched_kwargs={"total_steps": options.scheduler_total_steps},
    )

    memory = RolloutBuffer(
        options.memory_size,
        int(state_size),
        head.action_dim,
        gamma=options.gamma,
        gae_lambda=options.gae_lambda,
        normalize_advantages=options.normalize_advantages,
        device=device,
    )

    return PPOAgent(options=options, head=head, core=core, memory=memory, rng=rng, generator=generator)
