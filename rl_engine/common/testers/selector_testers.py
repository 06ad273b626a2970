from __future__ import annotations

import math
from typing import Any, Callable, List, Tuple

import numpy as np
import torch as th

from rl_engine.baselines.q_learning.dqn import (
    SELECTORS,
    DQNAgentOptions,
    DQNVariant,
    dqn,
    epsilon_threshold,
    resolve_selector,
)
from rl_engine.baselines.q_learning.dqn.selectors import select_epsilon_greedy, select_greedy, select_noisy
from rl_engine.common.testers.test_utils import (
    assert_close,
    assert_eq,
    assert_shape,
    assert_true,
    run_tests,
)


def _states(n: int, d: int = 4, seed: int = 0) -> np.ndarray:
    return np.random.default_rng(seed).normal(size=(n, d)).astype(np.float32)


def _greedy(agent: Any, states: np.ndarray) -> np.ndarray:
    with th.no_grad():
        q = agent.head.q(th.as_tensor(states, device=agent.device))
    return q.argmax(dim=-1).cpu().numpy()


# =============================================================================
# Tests
# =============================================================================
def test_epsilon_schedule_values():
    opts = DQNAgentOptions(eps_start=1.0, eps_end=0.1, eps_decay=10.0)
    assert_close(epsilon_threshold(opts, 0), 1.0)
    assert_close(epsilon_threshold(opts, 10), 0.1 + 0.9 * math.exp(-1.0))
    assert_close(epsilon_threshold(opts, 10_000), 0.1, atol=1e-9)

    prev = 2.0
    for e in range(0, 50, 5):
        cur = epsilon_threshold(opts, e)
        assert_true(cur <= prev, "epsilon must be non-increasing")
        prev = cur


def test_variant_table_is_resolved_from_flags():
    assert_eq(DQNAgentOptions().variant, DQNVariant.VANILLA)
    assert_eq(DQNAgentOptions(noisy_layers=True).variant, DQNVariant.NOISY)
    assert_eq(DQNAgentOptions(categorical_dqn=True).variant, DQNVariant.CATEGORICAL)
    assert_eq(DQNAgentOptions(noisy_layers=True, categorical_dqn=True).variant, DQNVariant.CATEGORICAL_NOISY)

    assert_eq(set(SELECTORS.keys()), set(DQNVariant))
    assert_true(resolve_selector(DQNVariant.VANILLA) is select_epsilon_greedy)
    assert_true(resolve_selector("noisy") is select_noisy)
    assert_true(resolve_selector(DQNVariant.CATEGORICAL) is select_greedy)
    assert_true(resolve_selector(DQNVariant.CATEGORICAL_NOISY) is select_noisy)


def test_end_to_end_epsilon_scenario():
    agent = dqn(
        state_size=4,
        action_sizes=[2],
        eps_start=1.0,
        eps_end=0.0,
        eps_decay=1.0,
        seed=0,
        device="cpu",
    )
    states = _states(400)

    # episode 0: eps == 1, every action is a uniform draw
    actions = agent.select_actions(states, True)
    assert_shape(actions, (400, 1))
    assert_eq(actions.dtype, np.int64)
    frac_one = float((actions[:, 0] == 1).mean())
    assert_close(frac_one, 0.5, atol=0.1)
    greedy = _greedy(agent, states)
    assert_true(bool((actions != greedy).any()), "random actions must sometimes disagree with argmax")

    # far past the decay horizon: deterministic argmax
    agent.on_episode_end(200)
    assert_close(epsilon_threshold(agent.options, agent.episode_count), 0.0, atol=1e-12)
    for _ in range(3):
        assert_eq(agent.select_actions(states, True).tolist(), greedy.tolist())


def test_inference_is_greedy_even_with_full_epsilon():
    agent = dqn(state_size=4, action_sizes=[3, 2], eps_start=1.0, eps_end=1.0, seed=1, device="cpu")
    states = _states(32, seed=1)
    actions = agent.select_actions(states, False)
    assert_shape(actions, (32, 2))
    assert_eq(actions.tolist(), _greedy(agent, states).tolist())
    assert_true(bool((actions[:, 1] < 2).all()))


def test_random_actions_respect_head_sizes():
    agent = dqn(state_size=4, action_sizes=[3, 2], eps_start=1.0, eps_end=1.0, seed=2, device="cpu")
    actions = agent.select_actions(_states(300, seed=2), True)
    assert_eq(sorted(set(actions[:, 0].tolist())), [0, 1, 2])
    assert_eq(sorted(set(actions[:, 1].tolist())), [0, 1])


def test_categorical_selection_uses_expected_value():
    agent = dqn(
        state_size=4,
        action_sizes=[3],
        categorical_dqn=True,
        num_atoms=21,
        v_min=-5.0,
        v_max=5.0,
        seed=3,
        device="cpu",
    )
    states = _states(16, seed=3)
    x = th.as_tensor(states)
    with th.no_grad():
        prob = agent.head.q.dist(x)
        ev = (prob * th.linspace(-5.0, 5.0, 21).view(1, 1, 1, -1)).sum(dim=-1)
    expected = ev.argmax(dim=-1).numpy()

    assert_eq(agent.select_actions(states, True).tolist(), expected.tolist())
    assert_eq(agent.select_actions(states, False).tolist(), expected.tolist())


def test_noisy_selection_is_reproducible_per_seed():
    states = _states(8, seed=4)
    a1 = dqn(state_size=4, action_sizes=[4], noisy_layers=True, noisy_layers_scale=0.5, seed=9, device="cpu")
    a2 = dqn(state_size=4, action_sizes=[4], noisy_layers=True, noisy_layers_scale=0.5, seed=9, device="cpu")

    assert_eq(a1.select_actions(states, True).tolist(), a2.select_actions(states, True).tolist())

    # eval mode uses the mean weights only
    e1 = a1.select_actions(states, False)
    assert_eq(e1.tolist(), a1.select_actions(states, False).tolist())
    a1.head.q.eval()
    assert_eq(e1.tolist(), _greedy(a1, states).tolist())


# =============================================================================
# Simple runner
# =============================================================================
TESTS: List[Tuple[str, Callable[[], Any]]] = [
    ("epsilon_schedule", test_epsilon_schedule_values),
    ("variant_table", test_variant_table_is_resolved_from_flags),
    ("end_to_end_epsilon", test_end_to_end_epsilon_scenario),
    ("inference_greedy", test_inference_is_greedy_even_with_full_epsilon),
    ("random_actions_head_sizes", test_random_actions_respect_head_sizes),
    ("categorical_expected_value", test_categorical_selection_uses_expected_value),
    ("noisy_reproducible", test_noisy_selection_is_reproducible_per_seed),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="selectors")


if __name__ == "__main__":
    raise SystemExit(main())
