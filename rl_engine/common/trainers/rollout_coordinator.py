from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np

from ..buffers.base_buffer import Transition
from ..errors import ConfigurationError, CoordinatorHaltedError
from ..utils.train_utils import _make_pbar


class RolloutCoordinator:
    """
    Drive one agent over N environments with frame pooling.

    Only every ``pooling_rate``-th step is a *real* step: the agent picks
    actions, transitions are stored and ``optimize()`` runs. The steps in
    between are *ghost* steps: the env advances on its own (``ghost_step()``
    when available, otherwise by repeating the last action).

    A decision spans the ghost ticks that follow it. Its transition is held
    per env, ghost rewards are added to it and its ``next_state`` / ``done``
    follow the env. It is handed to the agent at the next real step, or as
    soon as a ghost tick ends the episode. With ``is_training=False`` nothing
    is stored and ``optimize()`` is never called.

    Env contract (duck-typed)
    -------------------------
    - ``reset() -> state``
    - ``step(action) -> (next_state, reward, done)``
    - ``state_size : int`` and ``action_sizes : Sequence[int]``
    - optional ``continuous_action_bounds``, ``ghost_step()``, ``close()``

    Timing
    ------
    ``tick(delta)`` accumulates wall/simulation time and performs one
    ``step()`` per ``step_interval / time_scale`` elapsed. ``run(n)`` calls
    ``step()`` directly.

    Initialization barrier
    ----------------------
    With ``agent=None``, call ``initialize(factory)``: the agent is built on a
    worker thread and ``tick()`` does nothing until it is ready.
    ``wait_ready()`` blocks until then.

    Failure policy
    --------------
    Any exception from the agent or an env propagates out of ``step()`` and
    halts the coordinator; later calls raise :class:`CoordinatorHaltedError`.
    """

    def __init__(
        self,
        agent: Optional[Any] = None,
        envs: Sequence[Any] = (),
        *,
        pooling_rate: int = 5,
        step_interval: float = 0.02,
        time_scale: float = 1.0,
        logger: Optional[Any] = None,
        is_training: bool = True,
    ) -> None:
        self.envs: List[Any] = list(envs)
        if not self.envs:
            raise ConfigurationError("RolloutCoordinator needs at least one environment")

        self.pooling_rate = int(pooling_rate)
        self.step_interval = float(step_interval)
        self.time_scale = float(time_scale)
        if self.pooling_rate < 1:
            raise ConfigurationError(f"pooling_rate must be >= 1, got {self.pooling_rate}")
        if self.step_interval <= 0.0:
            raise ConfigurationError(f"step_interval must be > 0, got {self.step_interval}")
        if self.time_scale <= 0.0:
            raise ConfigurationError(f"time_scale must be > 0, got {self.time_scale}")

        self.logger = logger
        self.is_training = bool(is_training)

        # counters
        self.accumulated_time = 0.0
        self.step_counter = 0
        self.total_steps = 0
        self.real_steps = 0

        n = len(self.envs)
        self._states: Optional[List[np.ndarray]] = None
        self._last_actions: List[Optional[np.ndarray]] = [None] * n
        self._held: List[Optional[Transition]] = [None] * n
        self._episode_returns = [0.0] * n
        self._episode_lengths = [0] * n
        self.completed_returns: List[float] = []

        self._halted = False
        self._pbar: Optional[Any] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._future: Optional[Future] = None

        self.agent: Optional[Any] = None
        if agent is not None:
            self._attach(agent)

        if self.logger is not None:
            self.logger.set_step_fn(lambda: self.real_steps)

    # =============================================================================
    # Agent attachment / initialization barrier
    # =============================================================================
    def _validate(self, agent: Any) -> None:
        sizes = [int(a) for a in agent.action_sizes]
        bounds = list(getattr(agent, "continuous_bounds", []))
        for i, env in enumerate(self.envs):
            if int(env.state_size) != int(agent.state_size):
                raise ConfigurationError(
                    f"env {i}: state_size {env.state_size} != agent state_size {agent.state_size}"
                )
            env_sizes = [int(a) for a in getattr(env, "action_sizes", [])]
            if env_sizes != sizes:
                raise ConfigurationError(f"env {i}: action_sizes {env_sizes} != agent action_sizes {sizes}")
            env_bounds = getattr(env, "continuous_action_bounds", None)
            if env_bounds is not None and len(list(env_bounds)) != len(bounds):
                raise ConfigurationError(
                    f"env {i}: {len(list(env_bounds))} continuous actions != agent {len(bounds)}"
                )

    def _attach(self, agent: Any) -> None:
        self._validate(agent)
        self.agent = agent

    def initialize(self, agent_factory: Callable[[], Any]) -> Future:
        """Build the agent on a worker thread; returns the pending future."""
        if self.agent is not None or self._future is not None:
            raise ConfigurationError("agent is already attached or being built")
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="agent-init")
        self._future = self._executor.submit(agent_factory)
        return self._future

    def _poll(self) -> bool:
        if self.agent is not None:
            return True
        if self._future is None or not self._future.done():
            return False
        # re-raises a failed construction
        self._attach(self._future.result())
        return True

    @property
    def ready(self) -> bool:
        return self._poll()

    def wait_ready(self, timeout: Optional[float] = None) -> Any:
        """Block until the agent is built and return it."""
        if self.agent is None:
            if self._future is None:
                raise ConfigurationError("no agent and no pending initialize()")
            self._attach(self._future.result(timeout=timeout))
        return self.agent

    # =============================================================================
    # Driving
    # =============================================================================
    def tick(self, delta: float) -> int:
        """
        Advance time by `delta` seconds.

        Returns
        -------
        steps : int
            Number of ``step()`` calls performed (0 while not ready).
        """
        if not self._poll():
            return 0
        self.accumulated_time += float(delta)
        interval = self.step_interval / self.time_scale
        n = 0
        while self.accumulated_time >= interval:
            self.step()
            self.accumulated_time -= interval
            n += 1
        return n

    def run(self, num_steps: int, *, progress: bool = True) -> List[float]:
        """Perform `num_steps` steps and return the returns of completed episodes."""
        self.wait_ready()
        pbar = _make_pbar(total=int(num_steps), desc="rollout", disable=not progress)
        self._pbar = pbar
        try:
            for _ in range(int(num_steps)):
                self.step()
                pbar.update(1)
                if self.completed_returns:
                    pbar.set_postfix({"ep": len(self.completed_returns), "ret": self.completed_returns[-1]}, refresh=False)
        finally:
            self._pbar = None
            pbar.close()
        return list(self.completed_returns)

    def step(self) -> Dict[str, float]:
        """
        One coordinator step (real or ghost).

        Returns
        -------
        metrics : Dict[str, float]
            Update metrics of a real step (``{}`` for ghost steps or skipped
            updates).
        """
        if self._halted:
            raise CoordinatorHaltedError("coordinator halted after a failed step")
        if self.agent is None:
            raise ConfigurationError("agent is not ready; call initialize() / wait_ready() first")

        try:
            if self._states is None:
                self._states = [np.asarray(env.reset(), dtype=np.float32) for env in self.envs]

            if self.step_counter % self.pooling_rate == self.pooling_rate - 1:
                metrics = self._real_step()
            else:
                self._ghost_step()
                metrics = {}
        except Exception:
            self._halted = True
            raise

        self.step_counter = (self.step_counter + 1) % self.pooling_rate
        self.total_steps += 1
        return metrics

    # ------------------------------------------------------------------
    # Step kinds
    # ------------------------------------------------------------------
    def _select(self, states: List[np.ndarray]) -> np.ndarray:
        if self.agent.is_recurrent:
            actions, _ = self.agent.select_actions_recurrent(states, None, self.is_training)
        else:
            actions = self.agent.select_actions(states, self.is_training)
        return np.asarray(actions)

    def _real_step(self) -> Dict[str, float]:
        # decisions of the previous real step are complete now
        self._hand_over([i for i, t in enumerate(self._held) if t is not None])

        states = self._states
        actions = self._select(states)

        ready: List[Transition] = []
        dones: List[int] = []
        for i, env in enumerate(self.envs):
            next_state, reward, done = env.step(actions[i])
            next_state = np.asarray(next_state, dtype=np.float32)
            self._last_actions[i] = actions[i]
            self._accumulate(i, reward)

            if self.is_training:
                t = Transition(
                    state=states[i],
                    action=actions[i],
                    reward=float(reward),
                    next_state=next_state,
                    done=bool(done),
                    env_id=i,
                )
                if done or self.pooling_rate == 1:
                    ready.append(t)
                else:
                    self._held[i] = t

            states[i] = next_state
            if done:
                dones.append(i)

        if ready:
            self.agent.add_transition(ready)
        for i in dones:
            self._end_episode(i)

        self.real_steps += 1
        if not self.is_training:
            return {}

        metrics = self.agent.optimize()
        if metrics and self.logger is not None:
            self.logger.log(metrics, step=self.real_steps, pbar=self._pbar, prefix="train")
        return metrics

    def _ghost_step(self) -> None:
        for i, env in enumerate(self.envs):
            ghost = getattr(env, "ghost_step", None)
            if callable(ghost):
                out = ghost()
            elif self._last_actions[i] is not None:
                out = env.step(self._last_actions[i])
            else:
                # nothing to repeat before the first real step of an episode
                continue
            if out is None:
                continue

            next_state, reward, done = out
            next_state = np.asarray(next_state, dtype=np.float32)
            self._states[i] = next_state
            self._accumulate(i, reward)

            held = self._held[i]
            if held is not None:
                self._held[i] = replace(
                    held,
                    reward=held.reward + float(reward),
                    next_state=next_state,
                    done=bool(done),
                )
            if done:
                self._hand_over([i])
                self._end_episode(i)

    def _hand_over(self, env_ids: List[int]) -> None:
        """Pass the held transitions of `env_ids` to the agent and forget them."""
        batch = [self._held[i] for i in env_ids if self._held[i] is not None]
        for i in env_ids:
            self._held[i] = None
        if batch:
            self.agent.add_transition(batch)

    # ------------------------------------------------------------------
    # Episode bookkeeping
    # ------------------------------------------------------------------
    def _accumulate(self, i: int, reward: Any) -> None:
        self._episode_returns[i] += float(reward)
        self._episode_lengths[i] += 1

    def _end_episode(self, i: int) -> None:
        ep_return = self._episode_returns[i]
        ep_len = self._episode_lengths[i]
        self.completed_returns.append(ep_return)

        self.agent.on_episode_end(1)
        if self.agent.is_recurrent:
            self.agent.reset_hidden(i)

        if self.logger is not None:
            self.logger.log(
                {"episode_return": ep_return, "episode_length": ep_len, "env_id": i},
                step=self.real_steps,
                pbar=self._pbar,
                prefix="rollout",
            )

        self._episode_returns[i] = 0.0
        self._episode_lengths[i] = 0
        self._last_actions[i] = None
        self._states[i] = np.asarray(self.envs[i].reset(), dtype=np.float32)

    # =============================================================================
    # Cleanup
    # =============================================================================
    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        for env in self.envs:
            close = getattr(env, "close", None)
            if callable(close):
                close()

    def __enter__(self) -> "RolloutCoordinator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
