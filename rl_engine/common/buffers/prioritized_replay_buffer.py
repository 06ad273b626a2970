from __future__ import annotations

from typing import Any, Optional, Tuple, Union

import numpy as np
import torch as th

from .base_buffer import BaseReplayMemory, Transition
from .replay_buffer import ReplayBatch, make_replay_batch
from ..errors import BatchShapeError, InsufficientDataError
from ..utils.buffer_utils import MinSegmentTree, SumSegmentTree, stratified_prefixsum_indices
from ..utils.common_utils import _to_numpy


class PrioritizedReplayMemory(BaseReplayMemory):
    """
    Prioritized Experience Replay (proportional variant).

    Each stored transition carries a raw priority p_i (typically
    ``|TD-error| + eps``). Trees store the transformed value ``p_i ** alpha`` so
    that

    .. math::

        P(i) = \\frac{p_i^{\\alpha}}{\\sum_j p_j^{\\alpha}}, \\qquad
        w_i = \\frac{(N \\cdot P(i))^{-\\beta}}{\\max_j (N \\cdot P(j))^{-\\beta}}

    The max weight is taken over all N stored transitions (via the min tree),
    so weights lie in (0, 1].

    Parameters
    ----------
    capacity, state_size, action_shape, device, dtype_act, rng
        See :class:`BaseReplayMemory`.
    alpha : float, default=0.6
        Priority exponent. 0 gives uniform sampling.
    beta_start : float, default=0.4
        Initial importance-sampling exponent.
    beta_frames : int, default=100_000
        Number of :meth:`sample` calls over which beta is annealed linearly
        to 1.0.
    eps : float, default=1e-6
        Added to every fed-back priority so no transition becomes unsampleable.

    Notes
    -----
    New transitions receive the running ``max_priority`` so each is replayed
    at least once with high probability. Eviction is the same FIFO ring as the
    uniform memory; low-priority items are not removed early.
    """

    def __init__(
        self,
        capacity: int,
        state_size: int,
        action_shape: Tuple[int, ...],
        *,
        alpha: float = 0.6,
        beta_start: float = 0.4,
        beta_frames: int = 100_000,
        eps: float = 1e-6,
        device: Union[str, th.device] = "cpu",
        dtype_act: Any = np.int64,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        if alpha < 0.0:
            raise ValueError(f"alpha must be >= 0, got {alpha}")
        if not (0.0 <= beta_start <= 1.0):
            raise ValueError(f"beta_start must be in [0, 1], got {beta_start}")
        if beta_frames <= 0:
            raise ValueError(f"beta_frames must be positive, got {beta_frames}")
        if eps <= 0.0:
            raise ValueError(f"eps must be > 0, got {eps}")

        self.alpha = float(alpha)
        self.beta_start = float(beta_start)
        self.beta_frames = int(beta_frames)
        self.eps = float(eps)

        super().__init__(
            capacity=capacity,
            state_size=state_size,
            action_shape=action_shape,
            device=device,
            dtype_act=dtype_act,
            rng=rng,
        )

    def clear(self) -> None:
        super().clear()
        self.sum_tree = SumSegmentTree(self.capacity)
        self.min_tree = MinSegmentTree(self.capacity)
        self.max_priority = 1.0
        self.frame = 0

    # -------------------------------------------------------------------------
    # Priority helpers
    # -------------------------------------------------------------------------
    @property
    def beta(self) -> float:
        """Current IS exponent, annealed from beta_start to 1.0."""
        frac = min(1.0, self.frame / float(self.beta_frames))
        return self.beta_start + frac * (1.0 - self.beta_start)

    def _set_priority(self, idx: int, priority: float) -> None:
        tree_val = float(priority) ** self.alpha
        self.sum_tree[idx] = tree_val
        self.min_tree[idx] = tree_val
        self.max_priority = max(self.max_priority, float(priority))

    def probabilities(self) -> np.ndarray:
        """Sampling probability of each valid slot (storage order), shape (size,)."""
        if self.size == 0:
            return np.zeros((0,), dtype=np.float64)
        vals = np.asarray([self.sum_tree[i] for i in range(self.size)], dtype=np.float64)
        return vals / self.sum_tree.total()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    def _push_one(self, t: Transition) -> int:
        idx = super()._push_one(t)
        self._set_priority(idx, self.max_priority)
        return idx

    def sample(self, batch_size: int) -> ReplayBatch:
        """
        Sample a batch proportional to priority, with normalized IS weights.

        Raises
        ------
        InsufficientDataError
            If fewer than `batch_size` transitions are stored.
        """
        batch_size = int(batch_size)
        if self.size == 0 or batch_size > self.size:
            raise InsufficientDataError(
                f"Requested batch_size={batch_size} but only {self.size} transitions stored."
            )

        beta = self.beta
        self.frame += 1

        indices = stratified_prefixsum_indices(
            sum_tree=self.sum_tree,
            size=self.size,
            batch_size=batch_size,
            rng=self.rng,
        )

        total_p = self.sum_tree.total()
        p_min = max(self.min_tree.min(0, self.size) / total_p, 1e-12)
        max_w = (self.size * p_min) ** (-beta)

        p_samples = np.asarray([self.sum_tree[int(i)] for i in indices], dtype=np.float64) / total_p
        weights = (self.size * np.maximum(p_samples, 1e-12)) ** (-beta)
        weights = (weights / max_w).astype(np.float32)

        return make_replay_batch(self, indices, self.device, weights=weights)

    def update_priorities(self, indices: np.ndarray, priorities: np.ndarray) -> None:
        """
        Replace the priorities of sampled transitions with ``|p| + eps``.

        Raises
        ------
        BatchShapeError
            If `indices` and `priorities` differ in length or an index is not a
            stored slot.
        """
        idx = _to_numpy(indices).astype(np.int64).reshape(-1)
        pr = _to_numpy(priorities).astype(np.float64).reshape(-1)
        if idx.shape != pr.shape:
            raise BatchShapeError(f"indices and priorities must match, got {idx.shape} vs {pr.shape}")

        bad = idx[(idx < 0) | (idx >= self.size)]
        if bad.size:
            raise BatchShapeError(f"indices out of range [0, {self.size}): {bad.tolist()}")

        for i, p in zip(idx.tolist(), pr.tolist()):
            self._set_priority(i, abs(p) + self.eps)
