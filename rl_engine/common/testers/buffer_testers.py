from __future__ import annotations

from typing import Any, Callable, List, Tuple

import numpy as np
import torch as th

from rl_engine.common.buffers import PrioritizedReplayMemory, ReplayMemory, RolloutBuffer, Transition
from rl_engine.common.errors import BatchShapeError, InsufficientDataError
from rl_engine.common.testers.test_utils import (
    assert_allclose,
    assert_close,
    assert_eq,
    assert_raises,
    assert_shape,
    assert_true,
    run_tests,
)


def _tr(t: float, *, state_size: int = 2, heads: int = 1, done: bool = False, **kw: Any) -> Transition:
    return Transition(
        state=np.full((state_size,), t, np.float32),
        action=np.zeros((heads,), np.int64),
        reward=float(t),
        next_state=np.full((state_size,), t + 1, np.float32),
        done=done,
        **kw,
    )


# =============================================================================
# Tests: ReplayMemory
# =============================================================================
def test_replay_ring_evicts_oldest_first():
    mem = ReplayMemory(3, 2, (1,), rng=np.random.default_rng(0))
    mem.push([_tr(t) for t in range(5)])

    assert_eq(mem.size, 3)
    assert_true(mem.full)
    assert_eq([t.reward for t in mem.transitions()], [2.0, 3.0, 4.0])


def test_replay_push_single_and_list():
    mem = ReplayMemory(8, 2, (1,), rng=np.random.default_rng(0))
    mem.push(_tr(0))
    mem.push([_tr(1), _tr(2)])
    assert_eq(len(mem), 3)
    assert_eq([t.reward for t in mem.transitions()], [0.0, 1.0, 2.0])


def test_replay_sample_shapes_without_replacement():
    mem = ReplayMemory(16, 2, (3,), rng=np.random.default_rng(1))
    mem.push([_tr(t, heads=3) for t in range(10)])

    batch = mem.sample(10)
    assert_shape(batch.states, (10, 2))
    assert_shape(batch.actions, (10, 3))
    assert_shape(batch.rewards, (10,))
    assert_eq(batch.actions.dtype, th.int64)
    assert_true(batch.weights is None)
    assert_eq(sorted(batch.indices.tolist()), list(range(10)))


def test_replay_insufficient_data_raises():
    mem = ReplayMemory(8, 2, (1,), rng=np.random.default_rng(0))
    assert_raises(InsufficientDataError, lambda: mem.sample(1))
    mem.push([_tr(t) for t in range(3)])
    assert_raises(InsufficientDataError, lambda: mem.sample(4))


def test_replay_bad_shapes_raise():
    mem = ReplayMemory(8, 2, (1,))
    assert_raises(BatchShapeError, lambda: mem.push(_tr(0, state_size=3)))
    assert_raises(BatchShapeError, lambda: mem.push(_tr(0, heads=2)))
    assert_raises(BatchShapeError, lambda: mem.push([object()]))


# =============================================================================
# Tests: PrioritizedReplayMemory
# =============================================================================
def test_per_new_items_get_max_priority():
    mem = PrioritizedReplayMemory(8, 2, (1,), alpha=1.0, rng=np.random.default_rng(0))
    mem.push([_tr(t) for t in range(2)])
    mem.update_priorities(np.array([0]), np.array([5.0]))
    mem.push(_tr(2))

    probs = mem.probabilities()
    # item 0 and the new item 2 share the max priority
    assert_close(probs[0], probs[2], rtol=1e-6)
    assert_true(probs[1] < probs[0])


def test_per_sampling_is_proportional_to_priority():
    mem = PrioritizedReplayMemory(4, 2, (1,), alpha=1.0, eps=1e-6, rng=np.random.default_rng(123))
    mem.push([_tr(0), _tr(1)])
    mem.update_priorities(np.array([0, 1]), np.array([1.0, 3.0]))

    assert_allclose(mem.probabilities(), [0.25, 0.75], atol=1e-5)

    hits = 0
    n = 4000
    for _ in range(n):
        hits += int(mem.sample(1).indices[0] == 1)
    assert_close(hits / n, 0.75, atol=0.03)


def test_per_feedback_uses_abs_plus_eps():
    mem = PrioritizedReplayMemory(4, 2, (1,), alpha=1.0, eps=0.5, rng=np.random.default_rng(0))
    mem.push([_tr(0), _tr(1)])
    mem.update_priorities(np.array([0, 1]), np.array([-1.5, 0.0]))

    # |-1.5| + 0.5 = 2.0 and 0 + 0.5 = 0.5
    assert_allclose(mem.probabilities(), [0.8, 0.2], atol=1e-6)
    assert_close(mem.max_priority, 2.0)


def test_per_weights_and_beta_annealing():
    mem = PrioritizedReplayMemory(
        16, 2, (1,), alpha=0.6, beta_start=0.4, beta_frames=10, rng=np.random.default_rng(0)
    )
    mem.push([_tr(t) for t in range(8)])
    mem.update_priorities(np.arange(8), np.arange(1, 9, dtype=np.float64))

    assert_close(mem.beta, 0.4)
    batch = mem.sample(4)
    assert_true(batch.weights is not None)
    assert_shape(batch.weights, (4,))
    assert_true(float(batch.weights.max()) <= 1.0 + 1e-6)
    assert_true(float(batch.weights.min()) > 0.0)

    for _ in range(20):
        mem.sample(4)
    assert_close(mem.beta, 1.0)


def test_per_shape_mismatch_raises():
    mem = PrioritizedReplayMemory(8, 2, (1,))
    mem.push([_tr(t) for t in range(3)])
    assert_raises(BatchShapeError, lambda: mem.update_priorities(np.array([0, 1]), np.array([1.0])))
    assert_raises(BatchShapeError, lambda: mem.update_priorities(np.array([3]), np.array([1.0])))
    assert_raises(BatchShapeError, lambda: mem.update_priorities(np.array([-1, 0]), np.array([1.0, 1.0])))
    assert_close(mem.max_priority, 1.0, msg="a rejected update leaves priorities untouched")


def test_per_empty_raises():
    mem = PrioritizedReplayMemory(8, 2, (1,))
    assert_raises(InsufficientDataError, lambda: mem.sample(1))


# =============================================================================
# Tests: RolloutBuffer
# =============================================================================
def _brute_force_advantages(rewards, values, dones, last_value, gamma, lam):
    T = len(rewards)
    next_values = list(values[1:]) + [last_value]
    deltas = [
        rewards[t] + gamma * (1.0 - dones[t]) * next_values[t] - values[t]
        for t in range(T)
    ]
    out = []
    for t in range(T):
        acc, coef = 0.0, 1.0
        for k in range(t, T):
            acc += coef * deltas[k]
            if dones[k]:
                break
            coef *= gamma * lam
        out.append(acc)
    return np.asarray(out)


def _rollout_tr(t: int, r: float, v: float, done: bool, env_id: int = 0) -> Transition:
    return Transition(
        state=np.full((2,), t, np.float32),
        action=np.zeros((1,), np.float32),
        reward=r,
        next_state=np.full((2,), t + 1, np.float32),
        done=done,
        log_prob=-0.5,
        value=v,
        env_id=env_id,
    )


def test_rollout_gae_matches_brute_force():
    gamma, lam = 0.9, 0.8
    rng = np.random.default_rng(7)
    rewards = rng.normal(size=6).astype(np.float32).tolist()
    values = rng.normal(size=6).astype(np.float32).tolist()
    dones = [0, 0, 1, 0, 0, 0]
    last_value = 0.7

    buf = RolloutBuffer(6, 2, 1, gamma=gamma, gae_lambda=lam, normalize_advantages=False)
    buf.push([_rollout_tr(t, rewards[t], values[t], bool(dones[t])) for t in range(6)])
    assert_true(buf.full)
    assert_eq(list(buf.bootstrap_states().keys()), [0])

    buf.compute_returns_and_advantage({0: last_value})
    expected = _brute_force_advantages(rewards, values, dones, last_value, gamma, lam)
    assert_allclose(buf.advantages, expected, atol=1e-5)
    assert_allclose(buf.returns, expected + np.asarray(values), atol=1e-5)
    assert_eq(buf.num_episodes(), 2)


def test_rollout_envs_are_not_mixed():
    buf = RolloutBuffer(4, 2, 1, gamma=1.0, gae_lambda=1.0, normalize_advantages=False)
    # interleaved pushes from two environments, each ends its episode
    buf.push([_rollout_tr(0, 1.0, 0.0, False, env_id=0), _rollout_tr(0, 10.0, 0.0, False, env_id=1)])
    buf.push([_rollout_tr(1, 1.0, 0.0, True, env_id=0), _rollout_tr(1, 10.0, 0.0, True, env_id=1)])

    assert_eq(buf.bootstrap_states(), {})
    buf.compute_returns_and_advantage({})
    assert_allclose(buf.advantages, [2.0, 1.0, 20.0, 10.0])


def test_rollout_minibatches_cover_every_step_once():
    buf = RolloutBuffer(10, 2, 1, normalize_advantages=True)
    buf.push([_rollout_tr(t, 1.0, 0.0, t == 9) for t in range(10)])
    buf.compute_returns_and_advantage({})

    assert_close(float(buf.advantages.mean()), 0.0, atol=1e-5)

    seen = []
    for batch in buf.get(4, np.random.default_rng(0)):
        assert_true(batch.states.shape[0] <= 4)
        seen.extend(batch.states[:, 0].tolist())
    assert_eq(sorted(seen), [float(t) for t in range(10)])


def test_rollout_requires_log_prob_and_value():
    buf = RolloutBuffer(4, 2, 1)
    assert_raises(BatchShapeError, lambda: buf.push(_tr(0, heads=1)))
    assert_raises(InsufficientDataError, lambda: buf.compute_returns_and_advantage({}))


# =============================================================================
# Simple runner
# =============================================================================
TESTS: List[Tuple[str, Callable[[], Any]]] = [
    # ReplayMemory
    ("replay_ring_evicts_oldest_first", test_replay_ring_evicts_oldest_first),
    ("replay_push_single_and_list", test_replay_push_single_and_list),
    ("replay_sample_shapes", test_replay_sample_shapes_without_replacement),
    ("replay_insufficient_data", test_replay_insufficient_data_raises),
    ("replay_bad_shapes", test_replay_bad_shapes_raise),

    # PrioritizedReplayMemory
    ("per_new_items_max_priority", test_per_new_items_get_max_priority),
    ("per_proportional_sampling", test_per_sampling_is_proportional_to_priority),
    ("per_feedback_abs_plus_eps", test_per_feedback_uses_abs_plus_eps),
    ("per_weights_beta", test_per_weights_and_beta_annealing),
    ("per_shape_mismatch", test_per_shape_mismatch_raises),
    ("per_empty", test_per_empty_raises),

    # RolloutBuffer
    ("rollout_gae_brute_force", test_rollout_gae_matches_brute_force),
    ("rollout_envs_not_mixed", test_rollout_envs_are_not_mixed),
    ("rollout_minibatches", test_rollout_minibatches_cover_every_step_once),
    ("rollout_requires_logp_value", test_rollout_requires_log_prob_and_value),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="buffers")


if __name__ == "__main__":
    raise SystemExit(main())
