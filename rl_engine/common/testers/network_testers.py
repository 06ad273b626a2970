from __future__ import annotations

from typing import Any, Callable, List, Tuple

import torch as th

from rl_engine.common.errors import ConfigurationError
from rl_engine.common.networks import (
    ActorNetwork,
    CategoricalQNetwork,
    CriticNetwork,
    NoisyLinear,
    QNetwork,
    RecurrentActorNetwork,
    reset_noise,
)
from rl_engine.common.testers.test_utils import (
    assert_allclose,
    assert_eq,
    assert_raises,
    assert_shape,
    assert_true,
    run_tests,
)


# =============================================================================
# Q-networks
# =============================================================================
def test_qnetwork_pads_smaller_heads_with_neg_inf():
    th.manual_seed(0)
    net = QNetwork(4, [3, 2], width=16, depth=2)
    q = net(th.randn(5, 4))

    assert_shape(q, (5, 2, 3))
    assert_true(bool(th.isinf(q[:, 1, 2]).all()), "padded slot must be -inf")
    assert_true(bool((q[:, 1].argmax(dim=-1) < 2).all()), "argmax must never pick a padded slot")
    assert_true(bool(th.isfinite(q[:, 0]).all()))


def test_qnetwork_dueling_and_single_state():
    th.manual_seed(0)
    net = QNetwork(3, [4], width=8, depth=1, dueling=True)
    assert_shape(net(th.randn(3)), (1, 1, 4))


def test_qnetwork_rejects_empty_heads():
    assert_raises(ConfigurationError, lambda: QNetwork(3, []))
    assert_raises(ConfigurationError, lambda: QNetwork(3, [0]))


def test_noisy_network_train_vs_eval():
    th.manual_seed(0)
    net = QNetwork(4, [2], width=16, depth=2, noisy=True, noisy_std=0.5)
    x = th.randn(3, 4)
    gen = th.Generator().manual_seed(1)

    assert_true(reset_noise(net, gen) >= 2)
    net.train()
    a = net(x)
    reset_noise(net, gen)
    b = net(x)
    assert_true(not th.allclose(a, b), "fresh noise must change training outputs")

    net.eval()
    assert_allclose(net(x), net(x))
    assert_true(any(isinstance(m, NoisyLinear) for m in net.modules()))


def test_noise_is_reproducible_with_generator():
    th.manual_seed(0)
    net = QNetwork(4, [2], width=8, depth=2, noisy=True)
    x = th.randn(2, 4)
    net.train()

    reset_noise(net, th.Generator().manual_seed(5))
    a = net(x)
    reset_noise(net, th.Generator().manual_seed(5))
    assert_allclose(net(x), a)


def test_categorical_network_probabilities_and_expectation():
    th.manual_seed(0)
    net = CategoricalQNetwork(4, [3, 1], num_atoms=11, v_min=-2.0, v_max=3.0, width=16, depth=1)
    x = th.randn(6, 4)

    prob = net.dist(x)
    assert_shape(prob, (6, 2, 3, 11))
    assert_allclose(prob.sum(dim=-1), th.ones(6, 2, 3), atol=1e-5)

    q = net(x)
    expected = (prob * th.linspace(-2.0, 3.0, 11)).sum(dim=-1)
    assert_allclose(q[:, 0], expected[:, 0], atol=1e-5)
    assert_allclose(q[:, 1, 0], expected[:, 1, 0], atol=1e-5)
    assert_true(bool(th.isinf(q[:, 1, 1:]).all()))


# =============================================================================
# Actor / critic
# =============================================================================
def test_actor_mixed_heads_sample_and_log_prob():
    th.manual_seed(0)
    actor = ActorNetwork(5, discrete_sizes=[3], continuous_bounds=[(-1.0, 1.0), (0.0, 2.0)], width=16, depth=2)
    assert_eq(actor.action_dim, 3)

    dist = actor(th.randn(7, 5))
    a = actor.clip_actions(dist.sample(th.Generator().manual_seed(0)))
    assert_shape(a, (7, 3))
    assert_true(bool(((a[:, 0] >= 0) & (a[:, 0] < 3)).all()))
    assert_true(bool(((a[:, 1] >= -1.0) & (a[:, 1] <= 1.0)).all()))
    assert_true(bool(((a[:, 2] >= 0.0) & (a[:, 2] <= 2.0)).all()))
    assert_shape(dist.log_prob(a), (7,))
    assert_shape(dist.entropy(), (7,))
    assert_allclose(dist.mode(), dist.mode())


def test_actor_validation():
    assert_raises(ConfigurationError, lambda: ActorNetwork(3))
    assert_raises(ConfigurationError, lambda: ActorNetwork(3, continuous_bounds=[(1.0, 1.0)]))


def test_recurrent_actor_shapes():
    th.manual_seed(0)
    actor = RecurrentActorNetwork(4, discrete_sizes=[2], width=8, depth=2)
    h = actor.initial_hidden(3)
    assert_shape(h[0], (2, 3, 8))

    dist, (h1, c1) = actor.forward_recurrent(th.randn(3, 4), h)
    assert_shape(dist.logits[0], (3, 2))
    assert_shape(h1, (2, 3, 8))

    seq_dist, _ = actor.forward_recurrent(th.randn(1, 6, 4), None)
    assert_shape(seq_dist.logits[0], (6, 2))


def test_recurrent_step_by_step_matches_sequence():
    th.manual_seed(0)
    actor = RecurrentActorNetwork(3, discrete_sizes=[2], width=8, depth=1)
    xs = th.randn(4, 3)

    seq_dist, _ = actor.forward_recurrent(xs.unsqueeze(0), None)
    hidden = None
    step_logits = []
    for t in range(4):
        d, hidden = actor.forward_recurrent(xs[t:t + 1], hidden)
        step_logits.append(d.logits[0])
    assert_allclose(th.cat(step_logits, dim=0), seq_dist.logits[0], atol=1e-5)


def test_critic_output_shape():
    critic = CriticNetwork(4, width=8, depth=2)
    assert_shape(critic(th.randn(9, 4)), (9,))


# =============================================================================
# Simple runner
# =============================================================================
TESTS: List[Tuple[str, Callable[[], Any]]] = [
    ("qnet_padding", test_qnetwork_pads_smaller_heads_with_neg_inf),
    ("qnet_dueling_single_state", test_qnetwork_dueling_and_single_state),
    ("qnet_rejects_empty_heads", test_qnetwork_rejects_empty_heads),
    ("noisy_train_vs_eval", test_noisy_network_train_vs_eval),
    ("noisy_reproducible", test_noise_is_reproducible_with_generator),
    ("categorical_prob_expectation", test_categorical_network_probabilities_and_expectation),
    ("actor_mixed_heads", test_actor_mixed_heads_sample_and_log_prob),
    ("actor_validation", test_actor_validation),
    ("recurrent_actor_shapes", test_recurrent_actor_shapes),
    ("recurrent_step_matches_sequence", test_recurrent_step_by_step_matches_sequence),
    ("critic_shape", test_critic_output_shape),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="networks")


if __name__ == "__main__":
    raise SystemExit(main())
