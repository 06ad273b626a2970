from __future__ import annotations

import os
from typing import Any, Callable, List, Tuple

import numpy as np
import torch as th

from rl_engine.baselines.q_learning.dqn import DQNAgent, dqn
from rl_engine.common.buffers import PrioritizedReplayMemory, Transition
from rl_engine.common.errors import ConfigurationError, NonFiniteLossError
from rl_engine.common.testers.test_utils import (
    assert_allclose,
    assert_eq,
    assert_file_exists,
    assert_finite,
    assert_in,
    assert_params_equal,
    assert_raises,
    assert_true,
    mk_tmp_dir,
    params_snapshot,
    rm_tmp_dir,
    run_tests,
)
from rl_engine.common.utils.policy_utils import distribution_projection


def _fill(agent: DQNAgent, n: int, *, reward: float = 1.0, seed: int = 0) -> None:
    rng = np.random.default_rng(seed)
    heads = len(agent.action_sizes)
    agent.add_transition(
        [
            Transition(
                state=rng.normal(size=agent.state_size).astype(np.float32),
                action=np.asarray([rng.integers(0, a) for a in agent.action_sizes], np.int64).reshape(heads),
                reward=reward,
                next_state=rng.normal(size=agent.state_size).astype(np.float32),
                done=bool(i % 5 == 4),
            )
            for i in range(n)
        ]
    )


def _small(**kw: Any) -> DQNAgent:
    base = dict(state_size=4, action_sizes=[2], batch_size=8, memory_size=64, width=16, depth=2, seed=0, device="cpu")
    base.update(kw)
    return dqn(**base)


# =============================================================================
# C51 projection
# =============================================================================
def test_c51_projection_conserves_mass():
    th.manual_seed(0)
    K, B = 11, 32
    support = th.linspace(-1.0, 10.0, K)
    next_dist = th.softmax(th.randn(B, K), dim=-1)
    rewards = th.empty(B).uniform_(-5.0, 15.0)
    dones = (th.rand(B) < 0.3).float()

    proj = distribution_projection(next_dist, rewards, dones, 0.99, support, -1.0, 10.0)
    assert_allclose(proj.sum(dim=-1), th.ones(B), atol=1e-5)
    assert_true(bool((proj >= 0).all()))


def test_c51_projection_exact_grid_points():
    K = 5
    support = th.linspace(0.0, 4.0, K)
    next_dist = th.zeros(2, K)
    next_dist[:, 1] = 1.0
    # row 0: r=1, gamma=1 -> atom 1 moves to 2 exactly; row 1: terminal, r=3 -> all mass at atom 3
    proj = distribution_projection(next_dist, th.tensor([1.0, 3.0]), th.tensor([0.0, 1.0]), 1.0, support, 0.0, 4.0)

    expected = th.zeros(2, K)
    expected[0, 2] = 1.0
    expected[1, 3] = 1.0
    assert_allclose(proj, expected, atol=1e-6)


def test_c51_projection_clamps_to_support_edges():
    support = th.linspace(0.0, 4.0, 5)
    next_dist = th.full((1, 5), 0.2)
    proj = distribution_projection(next_dist, th.tensor([100.0]), th.tensor([0.0]), 0.9, support, 0.0, 4.0)
    assert_allclose(proj[0, -1], 1.0, atol=1e-6)


# =============================================================================
# Optimization
# =============================================================================
def test_optimize_skips_until_batch_available():
    agent = _small(learning_starts=20)
    _fill(agent, 7)
    assert_eq(agent.optimize(), {})
    _fill(agent, 5)
    assert_eq(agent.optimize(), {}, "learning_starts not reached")

    metrics = agent.optimize(force=True)
    for k in ("loss/q", "q/mean", "target/mean", "lr", "grad_norm"):
        assert_in(k, metrics)
    assert_true("per/td_errors" not in metrics)
    assert_eq(agent.update_calls, 1)


def test_every_variant_updates_finitely():
    for kw in (
        {},
        {"double_dqn": True, "dueling_dqn": True},
        {"noisy_layers": True},
        {"categorical_dqn": True, "num_atoms": 11},
        {"categorical_dqn": True, "noisy_layers": True, "double_dqn": True, "num_atoms": 11},
        {"loss_type": "mse", "action_sizes": [3, 2]},
    ):
        agent = _small(**kw)
        _fill(agent, 16)
        before = params_snapshot(agent.head.q)
        metrics = agent.optimize()
        assert_finite(metrics["loss/q"], f"variant {kw}")
        changed = any(not th.equal(p.detach(), q) for p, q in zip(agent.head.q.parameters(), before))
        assert_true(changed, f"variant {kw} did not move parameters")


def test_non_finite_loss_raises_and_keeps_params():
    agent = _small()
    _fill(agent, 16, reward=float("nan"))
    before = params_snapshot(agent.head.q)

    err = assert_raises(NonFiniteLossError, lambda: agent.optimize())
    assert_eq(err.name, "loss/q")
    assert_eq(err.update, 1)
    assert_params_equal(agent.head.q, before)
    assert_true(isinstance(err, FloatingPointError))


def test_per_feedback_changes_sampling_distribution():
    agent = _small(prioritized_experience_replay=True, per_alpha=1.0)
    assert_true(isinstance(agent.memory, PrioritizedReplayMemory))
    _fill(agent, 16)
    assert_allclose(agent.memory.probabilities(), np.full(16, 1.0 / 16))

    metrics = agent.optimize()
    assert_in("per/beta", metrics)
    assert_true("per/td_errors" not in metrics)
    assert_eq(agent.memory.frame, 1)
    probs = agent.memory.probabilities()
    assert_true(float(probs.max() - probs.min()) > 0.0, "priorities must be refreshed from TD errors")


def test_hard_target_update_on_interval():
    agent = _small(tau=1.0, target_update_interval=2)
    _fill(agent, 32)
    init_target = params_snapshot(agent.head.q_target)
    assert_params_equal(agent.head.q, init_target, "target starts as a copy of the online net")

    agent.optimize()
    assert_params_equal(agent.head.q_target, init_target, "no update before the interval")
    agent.optimize()
    assert_params_equal(agent.head.q_target, params_snapshot(agent.head.q))
    assert_true(all(not p.requires_grad for p in agent.head.q_target.parameters()))


def test_soft_target_update_blends():
    agent = _small(tau=0.5, target_update_interval=1)
    _fill(agent, 16)
    old_target = params_snapshot(agent.head.q_target)
    agent.optimize()
    for t, o, s in zip(agent.head.q_target.parameters(), old_target, agent.head.q.parameters()):
        assert_allclose(t, 0.5 * o + 0.5 * s.detach(), atol=1e-6)


def test_builder_validation():
    assert_raises(ConfigurationError, lambda: dqn(state_size=0, action_sizes=[2]))
    assert_raises(ConfigurationError, lambda: dqn(state_size=4, action_sizes=[]))
    assert_raises(ConfigurationError, lambda: dqn(state_size=4, action_sizes=[2], eps_start=0.1, eps_end=0.5))
    assert_raises(ConfigurationError, lambda: dqn(state_size=4, action_sizes=[2], batch_size=64, memory_size=8))
    assert_raises(ConfigurationError, lambda: dqn(state_size=4, action_sizes=[2], loss_type="l1"))
    assert_raises(ConfigurationError, lambda: dqn(state_size=4, action_sizes=[2], v_min=1.0, v_max=1.0))
    assert_raises(ValueError, lambda: dqn(state_size=4, action_sizes=[2], tau=0.0))


def test_same_seed_same_weights():
    a, b = _small(seed=5), _small(seed=5)
    assert_params_equal(a.head.q, params_snapshot(b.head.q))
    c = _small(seed=6)
    assert_true(any(not th.equal(p, q) for p, q in zip(a.head.q.parameters(), c.head.q.parameters())))


# =============================================================================
# Persistence
# =============================================================================
def test_save_load_is_versioned():
    tmp = mk_tmp_dir()
    try:
        agent = _small()
        _fill(agent, 16)
        agent.optimize()
        p1 = agent.save(tmp)
        assert_eq(sorted(p1.keys()), ["modelPolicy", "modelTarget", "optimizer"])
        assert_true(p1["modelPolicy"].endswith("modelPolicy_1.pt"))

        agent.optimize()
        agent.on_episode_end(3)
        p2 = agent.save(tmp)
        for name in ("modelPolicy", "modelTarget", "optimizer"):
            assert_true(p2[name].endswith(f"{name}_2.pt"))
            assert_file_exists(os.path.join(tmp, f"{name}_1.pt"))

        fresh = _small(seed=123)
        fresh.load(tmp)
        assert_params_equal(fresh.head.q, params_snapshot(agent.head.q))
        assert_params_equal(fresh.head.q_target, params_snapshot(agent.head.q_target))
        assert_eq(fresh.update_calls, 2)
        assert_eq(fresh.episode_count, 3)

        # the restored optimizer continues training
        _fill(fresh, 16)
        assert_finite(fresh.optimize()["loss/q"])
    finally:
        rm_tmp_dir(tmp)


def test_load_missing_artifacts_raises():
    tmp = mk_tmp_dir()
    try:
        assert_raises(FileNotFoundError, lambda: _small().load(tmp))
    finally:
        rm_tmp_dir(tmp)


# =============================================================================
# Simple runner
# =============================================================================
TESTS: List[Tuple[str, Callable[[], Any]]] = [
    # projection
    ("c51_mass_conservation", test_c51_projection_conserves_mass),
    ("c51_exact_grid_points", test_c51_projection_exact_grid_points),
    ("c51_clamps_edges", test_c51_projection_clamps_to_support_edges),

    # optimization
    ("optimize_skips_until_ready", test_optimize_skips_until_batch_available),
    ("every_variant_updates", test_every_variant_updates_finitely),
    ("non_finite_loss", test_non_finite_loss_raises_and_keeps_params),
    ("per_feedback", test_per_feedback_changes_sampling_distribution),
    ("hard_target_update", test_hard_target_update_on_interval),
    ("soft_target_update", test_soft_target_update_blends),
    ("builder_validation", test_builder_validation),
    ("same_seed_same_weights", test_same_seed_same_weights),

    # persistence
    ("save_load_versioned", test_save_load_is_versioned),
    ("load_missing_raises", test_load_missing_artifacts_raises),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="dqn")


if __name__ == "__main__":
    raise SystemExit(main())
