from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping, Optional, Tuple, Union

import numpy as np
import torch as th

from .base_buffer import BaseRolloutBuffer, Transition
from ..errors import BatchShapeError, InsufficientDataError
from ..utils.buffer_utils import compute_gae
from ..utils.common_utils import _to_numpy, _to_tensor


# =============================================================================
# Batch: RolloutBatch
# =============================================================================
@dataclass
class RolloutBatch:
    """
    A mini-batch (or one episode segment) of on-policy transitions.

    Attributes
    ----------
    states : torch.Tensor
        Shape (B, state_size).
    actions : torch.Tensor
        Shape (B, action_dim). Discrete indices are stored as floats and cast
        back by the actor.
    log_probs, values, returns, advantages, dones : torch.Tensor
        Shape (B,).
    hidden : Optional[Tuple[torch.Tensor, torch.Tensor]]
        Actor (h, c) in effect before the first step of an episode segment,
        shape (depth, 1, width). None for shuffled minibatches and for
        segments recorded without a recurrent state.
    """

    states: th.Tensor
    actions: th.Tensor
    log_probs: th.Tensor
    values: th.Tensor
    returns: th.Tensor
    advantages: th.Tensor
    dones: th.Tensor
    hidden: Optional[Tuple[th.Tensor, th.Tensor]] = None


_FIELDS = ("states", "actions", "rewards", "dones", "values", "log_probs")


# =============================================================================
# Concrete: RolloutBuffer with GAE(λ)
# =============================================================================
class RolloutBuffer(BaseRolloutBuffer):
    """
    On-policy storage with one ordered trajectory per environment.

    Transitions are grouped by ``Transition.env_id`` so that the backward GAE
    recursion walks each environment's own time axis. After
    :meth:`compute_returns_and_advantage` the trajectories are flattened
    (env-major, time-minor) for minibatching.

    Parameters
    ----------
    capacity : int
        Steps (summed over environments) at which the owner should update.
    state_size, action_dim, device
        See :class:`BaseRolloutBuffer`.
    gamma : float, default=0.99
        Discount factor in [0, 1].
    gae_lambda : float, default=0.95
        GAE λ in [0, 1].
    normalize_advantages : bool, default=True
        Standardize advantages over the whole rollout.
    adv_eps : float, default=1e-8
        Added to the std during normalization.

    Notes
    -----
    Usage per update:

    1) :meth:`push` transitions (any env order).
    2) :meth:`bootstrap_states` gives the s_T whose value the owner must
       estimate for non-terminated trajectories.
    3) :meth:`compute_returns_and_advantage` with those values.
    4) :meth:`get` for shuffled minibatches or :meth:`episodes` for
       done-bounded sequences (recurrent actors).
    5) :meth:`clear`.
    """

    def __init__(
        self,
        capacity: int,
        state_size: int,
        action_dim: int,
        *,
        gamma: float = 0.99,
        gae_lambda: float = 0.95,
        normalize_advantages: bool = True,
        adv_eps: float = 1e-8,
        device: Union[str, th.device] = "cpu",
    ) -> None:
        if not (0.0 <= gamma <= 1.0):
            raise ValueError(f"gamma must be in [0, 1], got {gamma}")
        if not (0.0 <= gae_lambda <= 1.0):
            raise ValueError(f"gae_lambda must be in [0, 1], got {gae_lambda}")
        if adv_eps <= 0.0:
            raise ValueError(f"adv_eps must be > 0, got {adv_eps}")

        self.gamma = float(gamma)
        self.gae_lambda = float(gae_lambda)
        self.normalize_advantages = bool(normalize_advantages)
        self.adv_eps = float(adv_eps)

        super().__init__(capacity, state_size, action_dim, device=device)

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------
    def clear(self) -> None:
        self._traj: Dict[int, Dict[str, List]] = {}
        self._last_next_state: Dict[int, np.ndarray] = {}
        self._count = 0

        self._flat: Dict[str, np.ndarray] = {}
        self._segments: List[Tuple[int, int]] = []
        self._hidden: List[Optional[Tuple[np.ndarray, np.ndarray]]] = []
        self.computed = False

    @property
    def size(self) -> int:
        return self._count

    def _push_one(self, t: Transition) -> None:
        if t.log_prob is None or t.value is None:
            raise BatchShapeError("on-policy transitions require log_prob and value")

        state = np.asarray(t.state, dtype=np.float32).reshape(-1)
        action = np.asarray(t.action, dtype=np.float32).reshape(-1)
        if state.shape[0] != self.state_size:
            raise BatchShapeError(f"state must have size {self.state_size}, got {state.shape}")
        if action.shape[0] != self.action_dim:
            raise BatchShapeError(f"action must have size {self.action_dim}, got {action.shape}")

        env = int(t.env_id)
        traj = self._traj.setdefault(env, {**{k: [] for k in _FIELDS}, "hidden": []})
        traj["states"].append(state)
        traj["actions"].append(action)
        traj["rewards"].append(float(t.reward))
        traj["dones"].append(1.0 if bool(t.done) else 0.0)
        traj["values"].append(float(t.value))
        traj["log_probs"].append(float(t.log_prob))
        if t.recurrent_state is None:
            traj["hidden"].append(None)
        else:
            h, c = t.recurrent_state
            traj["hidden"].append((_to_numpy(h).astype(np.float32), _to_numpy(c).astype(np.float32)))
        self._last_next_state[env] = np.asarray(t.next_state, dtype=np.float32).reshape(-1)

        self._count += 1
        self.computed = False

    def bootstrap_states(self) -> Dict[int, np.ndarray]:
        """s_T for every trajectory whose last step did not end an episode."""
        return {
            env: self._last_next_state[env]
            for env, traj in self._traj.items()
            if traj["dones"] and traj["dones"][-1] < 0.5
        }

    # -------------------------------------------------------------------------
    # Returns / advantages
    # -------------------------------------------------------------------------
    def compute_returns_and_advantage(self, last_values: Mapping[int, float]) -> None:
        """
        Run GAE per environment and flatten the rollout.

        Parameters
        ----------
        last_values : Mapping[int, float]
            env_id -> V(s_T) for the trajectories returned by
            :meth:`bootstrap_states`. Missing entries bootstrap with 0.

        Raises
        ------
        InsufficientDataError
            If the buffer is empty.
        """
        if self._count == 0:
            raise InsufficientDataError("compute_returns_and_advantage() called on an empty rollout")

        cols: Dict[str, List[np.ndarray]] = {k: [] for k in (*_FIELDS, "advantages", "returns")}
        segments: List[Tuple[int, int]] = []
        hidden: List[Optional[Tuple[np.ndarray, np.ndarray]]] = []
        offset = 0

        for env in sorted(self._traj):
            traj = self._traj[env]
            rewards = np.asarray(traj["rewards"], dtype=np.float32)
            values = np.asarray(traj["values"], dtype=np.float32)
            dones = np.asarray(traj["dones"], dtype=np.float32)

            adv = compute_gae(
                rewards,
                values,
                dones,
                last_value=float(last_values.get(env, 0.0)),
                last_done=bool(dones[-1] > 0.5),
                gamma=self.gamma,
                gae_lambda=self.gae_lambda,
            )

            cols["states"].append(np.stack(traj["states"]))
            cols["actions"].append(np.stack(traj["actions"]))
            for k in ("rewards", "dones", "values", "log_probs"):
                cols[k].append(np.asarray(traj[k], dtype=np.float32))
            cols["advantages"].append(adv)
            cols["returns"].append(adv + values)
            hidden.extend(traj["hidden"])

            start = 0
            for t in range(len(dones)):
                if dones[t] > 0.5:
                    segments.append((offset + start, offset + t + 1))
                    start = t + 1
            if start < len(dones):
                segments.append((offset + start, offset + len(dones)))
            offset += len(dones)

        flat = {k: np.concatenate(v, axis=0) for k, v in cols.items()}
        if self.normalize_advantages:
            adv = flat["advantages"]
            flat["advantages"] = (adv - adv.mean()) / (adv.std() + self.adv_eps)

        self._flat = flat
        self._segments = segments
        self._hidden = hidden
        self.computed = True

    @property
    def advantages(self) -> np.ndarray:
        self._require_computed()
        return self._flat["advantages"]

    @property
    def returns(self) -> np.ndarray:
        self._require_computed()
        return self._flat["returns"]

    def _require_computed(self) -> None:
        if not self.computed:
            raise InsufficientDataError("call compute_returns_and_advantage() first")

    # -------------------------------------------------------------------------
    # Batching
    # -------------------------------------------------------------------------
    def _batch(self, idx: Union[np.ndarray, slice]) -> RolloutBatch:
        f = self._flat
        dev = self.device
        return RolloutBatch(
            states=_to_tensor(f["states"][idx], device=dev),
            actions=_to_tensor(f["actions"][idx], device=dev),
            log_probs=_to_tensor(f["log_probs"][idx], device=dev),
            values=_to_tensor(f["values"][idx], device=dev),
            returns=_to_tensor(f["returns"][idx], device=dev),
            advantages=_to_tensor(f["advantages"][idx], device=dev),
            dones=_to_tensor(f["dones"][idx], device=dev),
        )

    def get(self, batch_size: int, rng: np.random.Generator) -> Iterator[RolloutBatch]:
        """Yield shuffled minibatches covering every stored step once."""
        self._require_computed()
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        perm = rng.permutation(self._count)
        for start in range(0, self._count, int(batch_size)):
            yield self._batch(perm[start:start + int(batch_size)])

    def episodes(self) -> Iterator[RolloutBatch]:
        """
        Yield done-bounded segments in chronological order, one env at a time.

        Each segment carries the recurrent state stored with its first step, so
        a segment cut by an earlier update resumes from its true (h, c).
        """
        self._require_computed()
        for start, end in self._segments:
            batch = self._batch(slice(start, end))
            first = self._hidden[start]
            if first is not None:
                batch.hidden = (
                    _to_tensor(first[0], device=self.device),
                    _to_tensor(first[1], device=self.device),
                )
            yield batch

    def num_episodes(self) -> int:
        return len(self._segments)
