from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple, Union

import numpy as np
import torch as th

from ..errors import BatchShapeError


# =============================================================================
# Transition record
# =============================================================================
@dataclass(frozen=True)
class Transition:
    """
    One environment step as seen by the learner.

    Attributes
    ----------
    state : np.ndarray
        s_t, flat shape (state_size,).
    action : np.ndarray
        a_t. Discrete agents store one index per head; PPO stores the
        concatenation ``[discrete indices..., continuous values...]``.
    reward : float
        r_t.
    next_state : np.ndarray
        s_{t+1}.
    done : bool
        Episode ended after this step.
    log_prob : Optional[float]
        log π(a_t|s_t) at collection time (PPO).
    value : Optional[float]
        V(s_t) at collection time (PPO).
    recurrent_state : Optional[Tuple[th.Tensor, th.Tensor]]
        (h, c) fed to the actor when a_t was chosen (recurrent PPO).
    env_id : int
        Index of the producing environment. On-policy storage keeps one
        trajectory per env so GAE never mixes environments.
    """

    state: np.ndarray
    action: np.ndarray
    reward: float
    next_state: np.ndarray
    done: bool
    log_prob: Optional[float] = None
    value: Optional[float] = None
    recurrent_state: Optional[Tuple[th.Tensor, th.Tensor]] = None
    env_id: int = 0


def _as_transition_list(transitions: Union[Transition, Iterable[Transition]]) -> List[Transition]:
    if isinstance(transitions, Transition):
        return [transitions]
    out = list(transitions)
    for t in out:
        if not isinstance(t, Transition):
            raise BatchShapeError(f"expected Transition, got {type(t).__name__}")
    return out


# =============================================================================
# Base: replay memory (off-policy)
# =============================================================================
class BaseReplayMemory(ABC):
    """
    Abstract base for **off-policy** experience memory.

    Storage is a circular ring of numpy arrays bounded by ``capacity``:

    - ``pos`` is the next insertion slot.
    - ``full`` flips to True the first time the cursor wraps.
    - Inserting past capacity overwrites the oldest transition.

    Subclasses implement :meth:`sample`. :meth:`update_priorities` is a PER
    hook and a no-op by default.

    Parameters
    ----------
    capacity : int
        Maximum number of stored transitions.
    state_size : int
        Flat state dimension.
    action_shape : Tuple[int, ...]
        Action shape, e.g. ``(n_heads,)``.
    device : Union[str, torch.device]
        Device of sampled tensors.
    dtype_act : Any
        Numpy dtype for action storage (int64 for discrete heads).
    rng : Optional[numpy.random.Generator]
        Owner-supplied generator used for sampling. A fresh unseeded generator
        is created when omitted.
    """

    def __init__(
        self,
        capacity: int,
        state_size: int,
        action_shape: Tuple[int, ...],
        *,
        device: Union[str, th.device] = "cpu",
        dtype_act: Any = np.int64,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        if state_size <= 0:
            raise ValueError(f"state_size must be positive, got {state_size}")

        self.capacity = int(capacity)
        self.state_size = int(state_size)
        self.action_shape = tuple(int(d) for d in action_shape)
        self.device = device
        self.dtype_act = dtype_act
        self.rng = rng if rng is not None else np.random.default_rng()

        self.clear()

    @property
    def size(self) -> int:
        """Number of valid transitions currently stored."""
        return self.capacity if self.full else self.pos

    def __len__(self) -> int:
        return self.size

    def clear(self) -> None:
        """Drop every stored transition and reallocate storage."""
        self.pos = 0
        self.full = False

        self.states = np.zeros((self.capacity, self.state_size), dtype=np.float32)
        self.next_states = np.zeros((self.capacity, self.state_size), dtype=np.float32)
        self.actions = np.zeros((self.capacity, *self.action_shape), dtype=self.dtype_act)
        self.rewards = np.zeros((self.capacity,), dtype=np.float32)
        self.dones = np.zeros((self.capacity,), dtype=np.float32)

    def push(self, transitions: Union[Transition, Iterable[Transition]]) -> None:
        """Insert one transition or an iterable of transitions, oldest first."""
        for t in _as_transition_list(transitions):
            self._push_one(t)

    def _push_one(self, t: Transition) -> int:
        state = np.asarray(t.state, dtype=np.float32).reshape(-1)
        next_state = np.asarray(t.next_state, dtype=np.float32).reshape(-1)
        action = np.asarray(t.action, dtype=self.dtype_act)

        if state.shape[0] != self.state_size or next_state.shape[0] != self.state_size:
            raise BatchShapeError(
                f"state/next_state must have size {self.state_size}, got {state.shape} / {next_state.shape}"
            )
        if action.size != int(np.prod(self.action_shape)):
            raise BatchShapeError(f"action must have shape {self.action_shape}, got {action.shape}")
        action = action.reshape(self.action_shape)

        idx = self.pos
        self.states[idx] = state
        self.next_states[idx] = next_state
        self.actions[idx] = action
        self.rewards[idx] = float(t.reward)
        self.dones[idx] = 1.0 if bool(t.done) else 0.0

        self.pos += 1
        if self.pos >= self.capacity:
            self.pos = 0
            self.full = True
        return idx

    def ordered_indices(self) -> np.ndarray:
        """Storage indices of valid transitions from oldest to newest."""
        if not self.full:
            return np.arange(self.pos, dtype=np.int64)
        return (np.arange(self.capacity, dtype=np.int64) + self.pos) % self.capacity

    def transitions(self) -> List[Transition]:
        """Stored transitions in insertion order (oldest first)."""
        return [
            Transition(
                state=self.states[i].copy(),
                action=self.actions[i].copy(),
                reward=float(self.rewards[i]),
                next_state=self.next_states[i].copy(),
                done=bool(self.dones[i] > 0.5),
            )
            for i in self.ordered_indices().tolist()
        ]

    @abstractmethod
    def sample(self, batch_size: int) -> Any:
        """Return a batch of tensors on ``self.device``."""
        raise NotImplementedError

    def update_priorities(self, indices: np.ndarray, priorities: np.ndarray) -> None:
        """PER hook; uniform memories ignore it."""
        return


# =============================================================================
# Base: rollout buffer (on-policy)
# =============================================================================
class BaseRolloutBuffer(ABC):
    """
    Abstract base for **on-policy** rollout storage.

    Holds the trajectories collected under the current policy until the next
    update, then is cleared. Subclasses compute returns/advantages and yield
    minibatches.

    Parameters
    ----------
    capacity : int
        Number of steps (summed over environments) that triggers an update.
    state_size : int
        Flat state dimension.
    action_dim : int
        Width of the stored action vector.
    device : Union[str, torch.device]
        Device of yielded tensors.
    """

    def __init__(
        self,
        capacity: int,
        state_size: int,
        action_dim: int,
        *,
        device: Union[str, th.device] = "cpu",
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = int(capacity)
        self.state_size = int(state_size)
        self.action_dim = int(action_dim)
        self.device = device
        self.clear()

    @abstractmethod
    def clear(self) -> None:
        raise NotImplementedError

    @property
    @abstractmethod
    def size(self) -> int:
        raise NotImplementedError

    def __len__(self) -> int:
        return self.size

    @property
    def full(self) -> bool:
        return self.size >= self.capacity

    def push(self, transitions: Union[Transition, Iterable[Transition]]) -> None:
        for t in _as_transition_list(transitions):
            self._push_one(t)

    @abstractmethod
    def _push_one(self, t: Transition) -> None:
        raise NotImplementedError
