from __future__ import annotations

from typing import Any, List, Optional, Tuple

import gymnasium as gym
import numpy as np

from ..errors import ConfigurationError


class GymEnvAdapter:
    """
    Wrap a gymnasium environment into the coordinator's env contract.

    Contract
    --------
    - ``reset() -> state``                     flat float32 vector
    - ``step(action) -> (next_state, reward, done)``
    - ``state_size``, ``action_sizes``, ``continuous_action_bounds``

    ``done`` is ``terminated or truncated``. The adapter exposes no
    ``ghost_step``; the coordinator repeats the last action instead.

    Supported spaces
    ----------------
    Observations: any space with a shape (flattened).
    Actions:
      - Discrete      -> ``action_sizes = [n]``
      - MultiDiscrete -> ``action_sizes = list(nvec)``
      - Box           -> ``continuous_action_bounds = [(low_i, high_i), ...]``

    Parameters
    ----------
    env : gymnasium.Env
        Environment instance.
    seed : int, optional
        Seed passed to the first ``reset()`` only.
    """

    def __init__(self, env: gym.Env, *, seed: Optional[int] = None) -> None:
        self.env = env
        self._seed = seed

        obs_shape = getattr(env.observation_space, "shape", None)
        if not obs_shape:
            raise ConfigurationError(f"observation space must have a shape, got {env.observation_space!r}")
        self.state_size = int(np.prod(obs_shape))

        space = env.action_space
        self.action_sizes: List[int] = []
        self.continuous_action_bounds: List[Tuple[float, float]] = []
        if isinstance(space, gym.spaces.Discrete):
            self.action_sizes = [int(space.n)]
        elif isinstance(space, gym.spaces.MultiDiscrete):
            self.action_sizes = [int(n) for n in np.asarray(space.nvec).reshape(-1)]
        elif isinstance(space, gym.spaces.Box):
            low = np.asarray(space.low, dtype=np.float64).reshape(-1)
            high = np.asarray(space.high, dtype=np.float64).reshape(-1)
            self.continuous_action_bounds = [(float(lo), float(hi)) for lo, hi in zip(low, high)]
        else:
            raise ConfigurationError(f"unsupported action space: {space!r}")

    @classmethod
    def make(cls, env_id: str, *, seed: Optional[int] = None, **kwargs: Any) -> "GymEnvAdapter":
        """Build the adapter around ``gymnasium.make(env_id, **kwargs)``."""
        return cls(gym.make(env_id, **kwargs), seed=seed)

    # ------------------------------------------------------------------
    # Env contract
    # ------------------------------------------------------------------
    def _flatten(self, obs: Any) -> np.ndarray:
        return np.asarray(obs, dtype=np.float32).reshape(-1)

    def _format_action(self, action: Any) -> Any:
        a = np.asarray(action).reshape(-1)
        space = self.env.action_space
        if isinstance(space, gym.spaces.Discrete):
            return int(a[0])
        if isinstance(space, gym.spaces.MultiDiscrete):
            return a.astype(np.int64).reshape(space.shape)
        return a.astype(np.float32).reshape(space.shape)

    def reset(self) -> np.ndarray:
        if self._seed is not None:
            obs, _ = self.env.reset(seed=int(self._seed))
            self._seed = None
        else:
            obs, _ = self.env.reset()
        return self._flatten(obs)

    def step(self, action: Any) -> Tuple[np.ndarray, float, bool]:
        obs, reward, terminated, truncated, _ = self.env.step(self._format_action(action))
        return self._flatten(obs), float(reward), bool(terminated or truncated)

    def close(self) -> None:
        self.env.close()
