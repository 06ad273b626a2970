from __future__ import annotations

from typing import Any, Callable, List, Tuple

import numpy as np
import torch as th

from rl_engine.baselines.policy_gradients.on_policy.ppo import PPOAgent, ppo
from rl_engine.common.buffers import Transition
from rl_engine.common.errors import ConfigurationError, NonFiniteLossError
from rl_engine.common.testers.test_utils import (
    assert_allclose,
    assert_eq,
    assert_finite,
    assert_in,
    assert_params_equal,
    assert_raises,
    assert_shape,
    assert_true,
    mk_tmp_dir,
    params_snapshot,
    rm_tmp_dir,
    run_tests,
)


METRIC_KEYS = (
    "loss/policy",
    "loss/value",
    "loss/entropy",
    "loss/total",
    "stats/approx_kl",
    "stats/clip_frac",
    "grad_norm/actor",
    "grad_norm/critic",
    "lr/actor",
    "lr/critic",
)


def _small(**kw: Any) -> PPOAgent:
    base = dict(
        state_size=3,
        action_sizes=[2],
        batch_size=4,
        memory_size=16,
        width=16,
        depth=1,
        ppo_epochs=2,
        seed=0,
        device="cpu",
    )
    base.update(kw)
    return ppo(**base)


def _collect(agent: PPOAgent, n_steps: int, *, n_envs: int = 2, done_every: int = 5, reward: float = 1.0, seed: int = 0) -> None:
    rng = np.random.default_rng(seed)
    states = rng.normal(size=(n_envs, agent.state_size)).astype(np.float32)
    for t in range(n_steps):
        if agent.is_recurrent:
            actions, _ = agent.select_actions_recurrent(states, None, True)
        else:
            actions = agent.select_actions(states, True)
        next_states = rng.normal(size=(n_envs, agent.state_size)).astype(np.float32)
        done = t % done_every == done_every - 1
        agent.add_transition(
            [
                Transition(state=states[i], action=actions[i], reward=reward, next_state=next_states[i], done=done, env_id=i)
                for i in range(n_envs)
            ]
        )
        if done and agent.is_recurrent:
            for i in range(n_envs):
                agent.reset_hidden(i)
        states = next_states


# =============================================================================
# API misuse
# =============================================================================
def test_recurrent_api_misuse_raises():
    flat = _small()
    states = np.zeros((2, 3), np.float32)
    assert_raises(ConfigurationError, lambda: flat.select_actions_recurrent(states, None, True))
    assert_raises(ConfigurationError, lambda: flat.reset_hidden(0))

    rec = _small(use_rnn=True)
    assert_true(rec.is_recurrent)
    assert_raises(ConfigurationError, lambda: rec.select_actions(states, True))
    assert_raises(ConfigurationError, lambda: rec.select_actions_recurrent(states, [None], True))


def test_transition_without_selection_raises():
    agent = _small()
    t = Transition(state=np.zeros(3, np.float32), action=np.zeros(1, np.float32), reward=0.0,
                   next_state=np.zeros(3, np.float32), done=False)
    assert_raises(ConfigurationError, lambda: agent.add_transition(t))

    explicit = Transition(state=np.zeros(3, np.float32), action=np.zeros(1, np.float32), reward=0.0,
                          next_state=np.zeros(3, np.float32), done=False, log_prob=-0.7, value=0.1)
    agent.add_transition(explicit)
    assert_eq(agent.memory.size, 1)


def test_builder_needs_an_action_head():
    assert_raises(ConfigurationError, lambda: ppo(state_size=3, device="cpu"))
    assert_raises(ConfigurationError, lambda: ppo(state_size=3, action_sizes=[2], clip_epsilon=1.5))


# =============================================================================
# Acting
# =============================================================================
def test_mixed_actions_respect_bounds_and_cached_log_prob():
    agent = _small(action_sizes=[3], continuous_action_bounds=[(-0.1, 0.1), (1.0, 2.0)])
    states = np.random.default_rng(1).normal(size=(16, 3)).astype(np.float32)
    actions = agent.select_actions(states, True)

    assert_shape(actions, (16, 3))
    assert_eq(actions.dtype, np.float32)
    assert_true(bool(np.isin(actions[:, 0], [0.0, 1.0, 2.0]).all()))
    assert_true(bool(((actions[:, 1] >= -0.1) & (actions[:, 1] <= 0.1)).all()))
    assert_true(bool(((actions[:, 2] >= 1.0) & (actions[:, 2] <= 2.0)).all()))

    with th.no_grad():
        logp = agent.head.actor(th.as_tensor(states)).log_prob(th.as_tensor(actions))
    cached = np.asarray([agent._pending[i][0] for i in range(16)])
    assert_allclose(cached, logp.numpy(), atol=1e-5)


def test_inference_is_deterministic():
    agent = _small(action_sizes=[4], continuous_action_bounds=[(-1.0, 1.0)])
    states = np.random.default_rng(2).normal(size=(5, 3)).astype(np.float32)
    a = agent.select_actions(states, False)
    assert_allclose(a, agent.select_actions(states, False))


def test_recurrent_hidden_is_per_env_and_resettable():
    agent = _small(use_rnn=True, depth=2, width=8)
    states = np.ones((2, 3), np.float32)

    _, h1 = agent.select_actions_recurrent(states, None, True)
    assert_eq(len(h1), 2)
    assert_shape(h1[0][0], (2, 1, 8))
    _, h2 = agent.select_actions_recurrent(states, None, True)
    assert_true(not th.allclose(h1[0][0], h2[0][0]), "stored hidden state must be carried forward")

    agent.reset_hidden(0)
    assert_allclose(agent._hidden[0][0], th.zeros(2, 1, 8))
    assert_true(bool(agent._hidden[1][0].abs().sum() > 0))

    # explicit hidden overrides the stored one
    zeros = agent.head.initial_hidden(1)
    _, h3 = agent.select_actions_recurrent(states[:1], [zeros], True)
    _, h4 = agent.select_actions_recurrent(states[:1], [zeros], True)
    assert_allclose(h3[0][0], h4[0][0])


# =============================================================================
# Optimization
# =============================================================================
def test_optimize_waits_for_full_rollout():
    agent = _small()
    assert_eq(agent.optimize(), {})
    assert_eq(agent.optimize(force=True), {})

    _collect(agent, 4)
    assert_eq(agent.memory.size, 8)
    assert_eq(agent.optimize(), {})
    assert_eq(agent.memory.size, 8)


def test_update_returns_metrics_and_clears_rollout():
    agent = _small()
    _collect(agent, 8)
    assert_true(agent.memory.full)
    before = params_snapshot(agent.head.actor)

    metrics = agent.optimize()
    for k in METRIC_KEYS:
        assert_in(k, metrics)
        assert_finite(metrics[k])
    assert_true(metrics["loss/entropy"] > 0.0)
    # 16 steps / batch 4 * 2 epochs
    assert_eq(agent.update_calls, 8)
    assert_eq(agent.memory.size, 0)
    assert_eq(sorted(agent._pending), [0, 1], "selection cache outlives the update")
    assert_true(any(not th.equal(p.detach(), q) for p, q in zip(agent.head.actor.parameters(), before)))


def test_forced_optimize_on_partial_rollout():
    agent = _small(action_sizes=[], continuous_action_bounds=[(-1.0, 1.0)])
    _collect(agent, 3, n_envs=1)
    metrics = agent.optimize(force=True)
    assert_in("loss/total", metrics)
    assert_eq(agent.memory.size, 0)


def test_recurrent_update_replays_episodes():
    agent = _small(use_rnn=True, action_sizes=[2, 3])
    _collect(agent, 8, done_every=4)
    metrics = agent.optimize()
    assert_finite(metrics["loss/total"])
    # 2 envs x 2 episodes each, replayed for 2 epochs
    assert_eq(agent.update_calls, 8)


def test_recurrent_segment_resumes_from_stored_hidden():
    agent = _small(use_rnn=True, memory_size=64, width=8)
    _collect(agent, 3, done_every=100)
    agent.optimize(force=True)
    assert_eq(agent.memory.size, 0)

    # the episodes continue after the update with a non-zero (h, c)
    _collect(agent, 4, done_every=100, seed=1)
    agent.memory.compute_returns_and_advantage({})
    segments = list(agent.memory.episodes())
    assert_eq(len(segments), 2)
    for batch in segments:
        assert_true(batch.hidden is not None)
        assert_shape(batch.hidden[0], (1, 1, 8))
        assert_true(bool(batch.hidden[0].abs().sum() > 0))
        with th.no_grad():
            new_logp, _, _ = agent.core._evaluate(batch)
        assert_allclose(new_logp, batch.log_probs, atol=1e-5, msg="replay must reproduce the collected log-probs")

    fresh = _small(use_rnn=True, memory_size=64, width=8)
    _collect(fresh, 2, done_every=100)
    fresh.memory.compute_returns_and_advantage({})
    first = next(iter(fresh.memory.episodes()))
    assert_allclose(first.hidden[0], th.zeros(1, 1, 8))


def test_non_finite_loss_raises_and_keeps_params():
    agent = _small()
    _collect(agent, 8, reward=float("nan"))
    actor_before = params_snapshot(agent.head.actor)
    critic_before = params_snapshot(agent.head.critic)

    err = assert_raises(NonFiniteLossError, lambda: agent.optimize())
    assert_eq(err.name, "loss/total")
    assert_params_equal(agent.head.actor, actor_before)
    assert_params_equal(agent.head.critic, critic_before)


def test_save_load_roundtrip_components():
    tmp = mk_tmp_dir()
    try:
        agent = _small()
        _collect(agent, 8)
        agent.optimize()
        paths = agent.save(tmp)
        assert_eq(sorted(paths.keys()), ["modelActor", "modelCritic", "optimizer"])

        fresh = _small(seed=42)
        fresh.load(tmp)
        assert_params_equal(fresh.head.actor, params_snapshot(agent.head.actor))
        assert_params_equal(fresh.head.critic, params_snapshot(agent.head.critic))
        assert_eq(fresh.update_calls, agent.update_calls)
    finally:
        rm_tmp_dir(tmp)


# =============================================================================
# Simple runner
# =============================================================================
TESTS: List[Tuple[str, Callable[[], Any]]] = [
    # misuse
    ("recurrent_api_misuse", test_recurrent_api_misuse_raises),
    ("transition_without_selection", test_transition_without_selection_raises),
    ("builder_needs_head", test_builder_needs_an_action_head),

    # acting
    ("mixed_actions_bounds_logp", test_mixed_actions_respect_bounds_and_cached_log_prob),
    ("inference_deterministic", test_inference_is_deterministic),
    ("recurrent_hidden_per_env", test_recurrent_hidden_is_per_env_and_resettable),

    # optimization
    ("optimize_waits_for_full", test_optimize_waits_for_full_rollout),
    ("update_metrics_and_clear", test_update_returns_metrics_and_clears_rollout),
    ("forced_optimize_partial", test_forced_optimize_on_partial_rollout),
    ("recurrent_update_episodes", test_recurrent_update_replays_episodes),
    ("recurrent_segment_hidden", test_recurrent_segment_resumes_from_stored_hidden),
    ("non_finite_loss", test_non_finite_loss_raises_and_keeps_params),
    ("save_load_components", test_save_load_roundtrip_components),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="ppo")


if __name__ == "__main__":
    raise SystemExit(main())
