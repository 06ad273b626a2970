from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence, Union

import numpy as np
import torch as th
import torch.nn as nn

from rl_engine.common.buffers.prioritized_replay_buffer import PrioritizedReplayMemory
from rl_engine.common.buffers.replay_buffer import ReplayMemory
from rl_engine.common.errors import ConfigurationError
from rl_engine.common.policies.base_agent import BaseAgent
from rl_engine.common.utils.common_utils import _as_state_batch
from rl_engine.common.utils.train_utils import make_generators, resolve_device, seeded_init
from .core import LOSS_TYPES, DQNCore
from .head import DQNHead
from .selectors import DQNVariant, resolve_selector


# =============================================================================
# Options
# =============================================================================
@dataclass(frozen=True)
class DQNAgentOptions:
    """
    Hyperparameters of a DQN-family agent.

    Exploration
    -----------
    eps_start, eps_end, eps_decay
        ``eps = eps_end + (eps_start - eps_end) * exp(-episodes / eps_decay)``.
        Only the vanilla variant uses epsilon; noisy and categorical variants
        explore through their networks.

    Variants
    --------
    noisy_layers, categorical_dqn
        Select the :class:`DQNVariant` (and thus the action selector).
    dueling_dqn, double_dqn
        Architecture / target modifiers, valid with every variant.
    prioritized_experience_replay
        Use :class:`PrioritizedReplayMemory` with TD-error feedback.

    Optimization
    ------------
    scheduler : str
        Name forwarded to ``build_scheduler``; "cyclic" reproduces a
        CyclicLR between ``lr * 0.5`` and ``lr * 2``.
    target_update_interval, tau
        The target net is updated every ``target_update_interval`` updates:
        copied when ``tau == 1``, Polyak-averaged otherwise.
    learning_starts
        ``optimize()`` is a no-op until ``max(batch_size, learning_starts)``
        transitions are stored.
    """

    batch_size: int = 64
    memory_size: int = 10_000
    gamma: float = 0.99
    lr: float = 1e-3
    width: int = 128
    depth: int = 2
    # exploration
    eps_start: float = 1.0
    eps_end: float = 0.005
    eps_decay: float = 80.0
    # variants
    noisy_layers: bool = False
    noisy_layers_scale: float = 0.02
    categorical_dqn: bool = False
    num_atoms: int = 51
    v_min: float = -1.0
    v_max: float = 10.0
    dueling_dqn: bool = False
    double_dqn: bool = False
    # replay
    prioritized_experience_replay: bool = False
    per_alpha: float = 0.6
    per_beta_start: float = 0.4
    per_beta_frames: int = 100_000
    per_eps: float = 1e-6
    learning_starts: int = 0
    # optimization
    loss_type: str = "smooth_l1"
    clip_grad_norm: float = 0.5
    target_update_interval: int = 1
    tau: float = 0.005
    optimizer: str = "adam"
    scheduler: str = "cyclic"
    scheduler_total_steps: int = 0
    # runtime
    seed: Optional[int] = None
    device: str = "auto"

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")
        if self.memory_size < self.batch_size:
            raise ConfigurationError(
                f"memory_size must be >= batch_size, got {self.memory_size} < {self.batch_size}"
            )
        if not (0.0 <= self.gamma <= 1.0):
            raise ConfigurationError(f"gamma must be in [0, 1], got {self.gamma}")
        if self.lr <= 0.0:
            raise ConfigurationError(f"lr must be > 0, got {self.lr}")
        if self.width < 1 or self.depth < 1:
            raise ConfigurationError(f"width and depth must be >= 1, got width={self.width}, depth={self.depth}")
        if not (0.0 <= self.eps_end <= self.eps_start <= 1.0):
            raise ConfigurationError(
                f"require 0 <= eps_end <= eps_start <= 1, got eps_start={self.eps_start}, eps_end={self.eps_end}"
            )
        if self.eps_decay <= 0.0:
            raise ConfigurationError(f"eps_decay must be > 0, got {self.eps_decay}")
        if self.noisy_layers_scale <= 0.0:
            raise ConfigurationError(f"noisy_layers_scale must be > 0, got {self.noisy_layers_scale}")
        if self.num_atoms < 2:
            raise ConfigurationError(f"num_atoms must be >= 2, got {self.num_atoms}")
        if not self.v_max > self.v_min:
            raise ConfigurationError(f"require v_max > v_min, got v_min={self.v_min}, v_max={self.v_max}")
        if self.learning_starts < 0:
            raise ConfigurationError(f"learning_starts must be >= 0, got {self.learning_starts}")
        if str(self.loss_type) not in LOSS_TYPES:
            raise ConfigurationError(f"loss_type must be one of {LOSS_TYPES}, got {self.loss_type!r}")
        if self.clip_grad_norm < 0.0:
            raise ConfigurationError(f"clip_grad_norm must be >= 0, got {self.clip_grad_norm}")
        if self.target_update_interval < 1:
            raise ConfigurationError(f"target_update_interval must be >= 1, got {self.target_update_interval}")
        if not (0.0 < self.tau <= 1.0):
            raise ConfigurationError(f"tau must be in (0, 1], got {self.tau}")

    @property
    def variant(self) -> DQNVariant:
        return DQNVariant.from_flags(noisy=self.noisy_layers, categorical=self.categorical_dqn)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["variant"] = self.variant.value
        return d


# =============================================================================
# Agent
# =============================================================================
class DQNAgent(BaseAgent):
    """
    Discrete multi-head Q-learning agent (vanilla / noisy / C51, optionally
    dueling, double and prioritized).

    The action selector is resolved once from ``options.variant``. Actions are
    returned as an int64 array of shape (B, n_heads).

    Persistence components: ``modelPolicy``, ``modelTarget``, ``optimizer``.
    """

    def __init__(
        self,
        *,
        options: DQNAgentOptions,
        head: DQNHead,
        core: DQNCore,
        memory: Union[ReplayMemory, PrioritizedReplayMemory],
        rng: np.random.Generator,
        generator: th.Generator,
    ) -> None:
        super().__init__(options=options, head=head, core=core, memory=memory, rng=rng, generator=generator)
        self.variant = options.variant
        self._selector = resolve_selector(self.variant)

    def select_actions(self, states: Any, is_training: bool) -> np.ndarray:
        batch = _as_state_batch(states, self.state_size)
        return self._selector(
            self.head,
            batch,
            training=bool(is_training),
            episode_count=self.episode_count,
            options=self.options,
            rng=self.rng,
            generator=self.generator,
        )

    def optimize(self, force: bool = False) -> Dict[str, float]:
        """
        One gradient step if enough transitions are stored.

        ``force=True`` waives ``learning_starts`` but still needs a full batch.
        Returns ``{}`` when skipped.
        """
        need = self.options.batch_size if force else max(self.options.batch_size, self.options.learning_starts)
        if self.memory.size < need:
            return {}

        batch = self.memory.sample(self.options.batch_size)
        metrics = self.core.update_from_batch(batch)

        td_errors = metrics.pop("per/td_errors", None)
        if isinstance(self.memory, PrioritizedReplayMemory):
            if td_errors is not None:
                self.memory.update_priorities(batch.indices, td_errors)
            metrics["per/beta"] = float(self.memory.beta)

        return self._filter_scalar_metrics(metrics)

    def _model_components(self) -> Dict[str, nn.Module]:
        return {"modelPolicy": self.head.q, "modelTarget": self.head.q_target}


# =============================================================================
# Builder
# =============================================================================
def dqn(
    *,
    state_size: int,
    action_sizes: Sequence[int],
    options: Optional[DQNAgentOptions] = None,
    **overrides: Any,
) -> DQNAgent:
    """
    Build a complete DQN-family agent.

    Composes:
      1) DQNHead : online + target Q-networks for the selected variant
      2) DQNCore : TD / C51 update, Adam + scheduler, target updates
      3) ReplayMemory or PrioritizedReplayMemory
      4) the agent-owned RNG pair (seeded from ``options.seed``)

    Parameters
    ----------
    state_size : int
        Flat state dimension.
    action_sizes : Sequence[int]
        Number of discrete actions per head.
    options : DQNAgentOptions, optional
        Hyperparameters. Defaults are used when omitted.
    **overrides
        Field overrides applied on top of `options`, e.g. ``dqn(..., lr=5e-4)``.

    Raises
    ------
    ConfigurationError
        If sizes are invalid or an option is out of range.

    Examples
    --------
    >>> agent = dqn(state_size=4, action_sizes=[2], categorical_dqn=True)
    """
    if options is None:
        options = DQNAgentOptions(**overrides)
    elif overrides:
        options = DQNAgentOptions(**{**asdict(options), **overrides})

    if int(state_size) < 1:
        raise ConfigurationError(f"state_size must be >= 1, got {state_size}")
    sizes = [int(a) for a in action_sizes]
    if not sizes or any(a < 1 for a in sizes):
        raise ConfigurationError(f"action_sizes must be non-empty and positive, got {list(action_sizes)}")

    device = resolve_device(options.device)
    rng, generator = make_generators(options.seed, device)
    with seeded_init(options.seed):
        head = DQNHead(
            state_size=int(state_size),
            action_sizes=sizes,
            variant=options.variant,
            width=options.width,
            depth=options.depth,
            dueling=options.dueling_dqn,
            noisy_std=options.noisy_layers_scale,
            num_atoms=options.num_atoms,
            v_min=options.v_min,
            v_max=options.v_max,
            device=device,
        )

    core = DQNCore(
        head=head,
        gamma=options.gamma,
        target_update_interval=options.target_update_interval,
        tau=options.tau,
        double_dqn=options.double_dqn,
        loss_type=options.loss_type,
        max_grad_norm=options.clip_grad_norm,
        generator=generator,
        optim_name=options.optimizer,
        lr=options.lr,
        sched_name=options.scheduler,
        sched_kwargs={"total_steps": options.scheduler_total_steps},
    )

    if options.prioritized_experience_replay:
        memory: Union[ReplayMemory, PrioritizedReplayMemory] = PrioritizedReplayMemory(
            options.memory_size,
            int(state_size),
            (len(sizes),),
            alpha=options.per_alpha,
            beta_start=options.per_beta_start,
            beta_frames=options.per_beta_frames,
            eps=options.per_eps,
            device=device,
            rng=rng,
        )
    else:
        memory = ReplayMemory(options.memory_size, int(state_size), (len(sizes),), device=device, rng=rng)

    return DQNAgent(options=options, head=head, core=core, memory=memory, rng=rng, generator=generator)
