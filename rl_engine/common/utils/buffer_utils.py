from __future__ import annotations

from typing import Callable, Optional
import operator

import numpy as np

from ..errors import InsufficientDataError


# =============================================================================
# GAE utility
# =============================================================================
def compute_gae(
    rewards: np.ndarray,
    values: np.ndarray,
    dones: np.ndarray,
    *,
    last_value: float,
    last_done: bool,
    gamma: float,
    gae_lambda: float,
) -> np.ndarray:
    """
    Compute Generalized Advantage Estimation (GAE-λ) for one trajectory.

    Parameters
    ----------
    rewards : np.ndarray
        Reward sequence, shape (T,).
    values : np.ndarray
        Value estimates V(s_t), shape (T,).
    dones : np.ndarray
        Done flags after each transition, shape (T,).
        Convention: dones[t] == 1 means the episode ended after step t and the
        recursion restarts with zero carry-over.
    last_value : float
        Bootstrap value V(s_T) used at t=T-1 when last_done is False.
    last_done : bool
        Whether the trajectory ended with a terminal transition.
    gamma : float
        Discount factor in [0, 1].
    gae_lambda : float
        GAE smoothing parameter λ in [0, 1].

    Returns
    -------
    advantages : np.ndarray
        Advantage estimates, shape (T,).

    Notes
    -----
    δ_t = r_t + γ (1 - done_t) V_{t+1} - V_t
    A_t = δ_t + γ λ (1 - done_t) A_{t+1}
    """
    rewards = np.asarray(rewards, dtype=np.float32)
    values = np.asarray(values, dtype=np.float32)
    dones = np.asarray(dones, dtype=np.float32)

    if rewards.ndim != 1 or values.ndim != 1 or dones.ndim != 1:
        raise ValueError(
            f"rewards/values/dones must be 1D, got {rewards.shape}, {values.shape}, {dones.shape}"
        )
    if rewards.shape[0] != values.shape[0] or rewards.shape[0] != dones.shape[0]:
        raise ValueError(
            f"Shape mismatch: rewards={rewards.shape}, values={values.shape}, dones={dones.shape}"
        )
    if not (0.0 <= gamma <= 1.0):
        raise ValueError(f"gamma must be in [0, 1], got {gamma}")
    if not (0.0 <= gae_lambda <= 1.0):
        raise ValueError(f"gae_lambda must be in [0, 1], got {gae_lambda}")

    T = rewards.shape[0]
    advantages = np.zeros((T,), dtype=np.float32)
    bootstrap_v = 0.0 if bool(last_done) else float(last_value)

    gae = 0.0
    for t in reversed(range(T)):
        nonterminal = 1.0 - float(dones[t])
        v_next = bootstrap_v if (t == T - 1) else float(values[t + 1])

        delta = float(rewards[t]) + gamma * nonterminal * v_next - float(values[t])
        gae = delta + gamma * gae_lambda * nonterminal * gae
        advantages[t] = gae

    return advantages


# =============================================================================
# Index sampling
# =============================================================================
def uniform_indices(size: int, batch_size: int, rng: np.random.Generator) -> np.ndarray:
    """
    Draw `batch_size` distinct indices uniformly from [0, size).

    Raises
    ------
    InsufficientDataError
        If the buffer is empty or holds fewer than `batch_size` items.
    """
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    if size <= 0:
        raise InsufficientDataError("Cannot sample from an empty buffer.")
    if batch_size > size:
        raise InsufficientDataError(f"Requested batch_size={batch_size} but only {size} transitions stored.")
    return rng.choice(int(size), size=int(batch_size), replace=False).astype(np.int64)


def stratified_prefixsum_indices(
    *,
    sum_tree: "SumSegmentTree",
    size: int,
    batch_size: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Stratified proportional sampling over the prefix sums of `sum_tree`.

    The total mass [0, total) is split into `batch_size` equal segments and one
    value is drawn per segment, so a single batch covers the whole
    distribution while each index is still drawn with probability
    proportional to its leaf value.
    """
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    if size <= 0:
        raise InsufficientDataError("Cannot sample from an empty buffer.")

    total_p = sum_tree.total()
    if total_p <= 0.0:
        raise InsufficientDataError("Total priority mass is zero.")

    seg = total_p / float(batch_size)
    idx = np.empty((batch_size,), dtype=np.int64)
    for i in range(batch_size):
        s = float(rng.uniform(seg * i, seg * (i + 1)))
        # float round-off can push s onto the upper edge
        s = min(s, np.nextafter(total_p, 0.0))
        j = sum_tree.retrieve(s)
        while j >= size:
            j = sum_tree.retrieve(float(rng.uniform(0.0, total_p)))
        idx[i] = j
    return idx


# =============================================================================
# Segment trees (PER)
# =============================================================================
def next_power_of_two(n: int) -> int:
    """Smallest power of two >= n (1 for n <= 1)."""
    if n <= 1:
        return 1
    return 1 << (n - 1).bit_length()


class SegmentTree:
    """
    Array-backed segment tree with point updates and range reductions.

    Layout is the usual implicit binary heap: root at 1, leaves at
    [capacity, 2 * capacity). Index 0 is unused.

    Parameters
    ----------
    capacity : int
        Requested number of leaves; rounded up to a power of two.
    operation : Callable[[float, float], float]
        Associative reduction (sum, min).
    neutral : float
        Identity element of `operation`.
    """

    def __init__(self, capacity: int, operation: Callable[[float, float], float], neutral: float) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.capacity = next_power_of_two(int(capacity))
        self.operation = operation
        self.neutral = float(neutral)
        self.tree = np.full((2 * self.capacity,), self.neutral, dtype=np.float64)

    def reduce(self, start: int = 0, end: Optional[int] = None) -> float:
        """Reduce over the half-open leaf interval [start, end)."""
        if end is None:
            end = self.capacity
        if not (0 <= start < end <= self.capacity):
            raise IndexError(f"invalid range [{start}, {end}) for capacity {self.capacity}")

        result = self.neutral
        lo = start + self.capacity
        hi = end + self.capacity
        while lo < hi:
            if lo & 1:
                result = self.operation(result, float(self.tree[lo]))
                lo += 1
            if hi & 1:
                hi -= 1
                result = self.operation(result, float(self.tree[hi]))
            lo //= 2
            hi //= 2
        return result

    def __setitem__(self, idx: int, val: float) -> None:
        if not (0 <= idx < self.capacity):
            raise IndexError(f"idx out of range: {idx}")
        i = idx + self.capacity
        self.tree[i] = float(val)
        i //= 2
        while i >= 1:
            self.tree[i] = self.operation(float(self.tree[2 * i]), float(self.tree[2 * i + 1]))
            i //= 2

    def __getitem__(self, idx: int) -> float:
        if not (0 <= idx < self.capacity):
            raise IndexError(f"idx out of range: {idx}")
        return float(self.tree[self.capacity + idx])


class SumSegmentTree(SegmentTree):
    """Sum tree used for proportional (prefix-sum) sampling."""

    def __init__(self, capacity: int) -> None:
        super().__init__(capacity, operator.add, 0.0)

    def sum(self, start: int = 0, end: Optional[int] = None) -> float:
        return self.reduce(start, end)

    def total(self) -> float:
        return float(self.tree[1])

    def retrieve(self, upperbound: float) -> int:
        """
        Return the smallest leaf index i whose inclusive prefix sum exceeds
        `upperbound`.
        """
        total = float(self.tree[1])
        if total <= 0.0:
            raise InsufficientDataError("Cannot retrieve from an empty sum tree.")
        if not (0.0 <= upperbound < total):
            raise ValueError(f"upperbound must be in [0, {total}), got {upperbound}")

        idx = 1
        ub = float(upperbound)
        while idx < self.capacity:
            left = 2 * idx
            if self.tree[left] > ub:
                idx = left
            else:
                ub -= float(self.tree[left])
                idx = left + 1
        return idx - self.capacity


class MinSegmentTree(SegmentTree):
    """Min tree used to normalize importance-sampling weights."""

    def __init__(self, capacity: int) -> None:
        super().__init__(capacity, min, float("inf"))

    def min(self, start: int = 0, end: Optional[int] = None) -> float:
        return self.reduce(start, end)
