from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from rl_engine.baselines import dqn, ppo
from rl_engine.common.errors import ConfigurationError, CoordinatorHaltedError
from rl_engine.common.testers.test_utils import (
    assert_allclose,
    assert_eq,
    assert_in,
    assert_raises,
    assert_true,
    run_tests,
)
from rl_engine.common.trainers import GymEnvAdapter, RolloutCoordinator


# =============================================================================
# Fakes
# =============================================================================
class CountingEnv:
    """Deterministic env: reward 1 per step, episode ends every `episode_len` steps."""

    def __init__(self, state_size: int = 4, action_sizes=(2,), episode_len: int = 1000) -> None:
        self.state_size = state_size
        self.action_sizes = list(action_sizes)
        self.episode_len = episode_len
        self.t = 0
        self.resets = 0
        self.step_calls = 0
        self.actions: List[Any] = []

    def _obs(self) -> np.ndarray:
        return np.full((self.state_size,), self.t / 10.0, np.float32)

    def reset(self) -> np.ndarray:
        self.t = 0
        self.resets += 1
        return self._obs()

    def step(self, action: Any) -> Tuple[np.ndarray, float, bool]:
        self.step_calls += 1
        self.actions.append(np.asarray(action).copy())
        self.t += 1
        return self._obs(), 1.0, self.t >= self.episode_len


class GhostEnv(CountingEnv):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.ghost_calls = 0

    def ghost_step(self) -> Tuple[np.ndarray, float, bool]:
        self.ghost_calls += 1
        self.t += 1
        return self._obs(), 0.5, self.t >= self.episode_len


class ScriptedAgent:
    """Duck-typed agent; `fail_at` makes optimize() raise on that call."""

    is_recurrent = False

    def __init__(self, state_size: int = 4, action_sizes=(2,), fail_at: Optional[int] = None) -> None:
        self.state_size = state_size
        self.action_sizes = list(action_sizes)
        self.fail_at = fail_at
        self.optimize_calls = 0
        self.episode_count = 0
        self.transitions: List[Any] = []

    def select_actions(self, states: Any, is_training: bool) -> np.ndarray:
        return np.ones((len(states), len(self.action_sizes)), np.int64)

    def add_transition(self, transitions: Any) -> None:
        self.transitions.extend(transitions)

    def optimize(self, force: bool = False) -> Dict[str, float]:
        self.optimize_calls += 1
        if self.fail_at is not None and self.optimize_calls == self.fail_at:
            raise RuntimeError("update failed")
        return {"loss": 0.25}

    def on_episode_end(self, n: int = 1) -> None:
        self.episode_count += n


class RecordingLogger:
    def __init__(self) -> None:
        self.rows: List[Tuple[str, Dict[str, Any], Optional[int]]] = []
        self.step_fn: Optional[Callable[[], int]] = None

    def set_step_fn(self, fn: Optional[Callable[[], int]]) -> None:
        self.step_fn = fn

    def log(self, metrics: Dict[str, Any], step: Optional[int] = None, *, pbar: Any = None, prefix: str = "") -> None:
        self.rows.append((prefix, dict(metrics), step))


def _small_dqn(**kw: Any):
    base = dict(state_size=4, action_sizes=[2], batch_size=4, memory_size=32, width=8, depth=1, seed=0, device="cpu")
    base.update(kw)
    return dqn(**base)


# =============================================================================
# Construction
# =============================================================================
def test_empty_envs_raise():
    assert_raises(ConfigurationError, lambda: RolloutCoordinator(ScriptedAgent(), []))


def test_size_mismatch_raises():
    agent = ScriptedAgent(state_size=4, action_sizes=[2])
    assert_raises(ConfigurationError, lambda: RolloutCoordinator(agent, [CountingEnv(state_size=3)]))
    assert_raises(ConfigurationError, lambda: RolloutCoordinator(agent, [CountingEnv(action_sizes=[3])]))
    assert_raises(ConfigurationError, lambda: RolloutCoordinator(agent, [CountingEnv(), CountingEnv(action_sizes=[2, 2])]))
    assert_raises(ConfigurationError, lambda: RolloutCoordinator(agent, [CountingEnv()], pooling_rate=0))


# =============================================================================
# Pooling
# =============================================================================
def test_one_real_step_in_five():
    env = GhostEnv()
    coord = RolloutCoordinator(_small_dqn(), [env], pooling_rate=5)

    counters = []
    real_at = []
    for i in range(50):
        before = env.step_calls
        coord.step()
        counters.append(coord.step_counter)
        if env.step_calls > before:
            real_at.append(i)

    assert_eq(env.step_calls, 10)
    assert_eq(env.ghost_calls, 40)
    assert_eq(coord.real_steps, 10)
    assert_eq(real_at, list(range(4, 50, 5)))
    assert_eq(counters[:10], [1, 2, 3, 4, 0, 1, 2, 3, 4, 0])
    # the last decision is held until the next real step
    assert_eq(len(coord.agent.memory.transitions()), 9)


def test_ghost_falls_back_to_last_action():
    env = CountingEnv()
    agent = ScriptedAgent()
    coord = RolloutCoordinator(agent, [env], pooling_rate=5)

    for _ in range(4):
        coord.step()
    assert_eq(env.step_calls, 0, "nothing to repeat before the first decision")
    coord.step()
    assert_eq(env.step_calls, 1)
    for _ in range(5):
        coord.step()
    assert_eq(env.step_calls, 6)
    assert_true(all(int(a[0]) == 1 for a in env.actions))
    assert_eq(len(agent.transitions), 1)
    # 1.0 for the decision + 4 repeated ticks at 1.0
    assert_eq(agent.transitions[0].reward, 5.0)


def test_ghost_rewards_count_toward_episode_return():
    env = GhostEnv(episode_len=10)
    agent = ScriptedAgent()
    logger = RecordingLogger()
    coord = RolloutCoordinator(agent, [env], pooling_rate=5, logger=logger)
    for _ in range(10):
        coord.step()

    # 8 ghost steps at 0.5 + 2 real steps at 1.0
    assert_eq(coord.completed_returns, [6.0])
    assert_eq(agent.episode_count, 1)
    assert_eq(env.resets, 2)
    rollout = [r for r in logger.rows if r[0] == "rollout"]
    assert_eq(len(rollout), 1)
    assert_eq(rollout[0][1]["episode_return"], 6.0)
    assert_eq(rollout[0][1]["episode_length"], 10)

    # decision at t=5 plus the 4 ghost rewards after it, then the final decision
    assert_eq([t.reward for t in agent.transitions], [3.0, 1.0])
    assert_eq([t.done for t in agent.transitions], [False, True])


def test_episode_ending_on_ghost_tick_reaches_learner():
    env = GhostEnv(episode_len=8)
    agent = ScriptedAgent()
    coord = RolloutCoordinator(agent, [env], pooling_rate=5)

    # ghost t=1..4, decision at t=5, ghost t=6..8 ends the episode
    for _ in range(8):
        coord.step()

    assert_eq(agent.episode_count, 1)
    assert_eq(len(agent.transitions), 1)
    t = agent.transitions[0]
    assert_true(t.done, "terminal on a ghost tick must be stored")
    assert_eq(t.reward, 2.5)
    assert_allclose(t.state, np.full(4, 0.4, np.float32))
    assert_allclose(t.next_state, np.full(4, 0.8, np.float32))
    assert_eq(coord.completed_returns, [4.5])

    # the fresh episode has no decision yet: nothing else is handed over
    coord.step()
    coord.step()
    assert_eq(len(agent.transitions), 1)


def test_inference_mode_stores_nothing():
    agent = ScriptedAgent()
    coord = RolloutCoordinator(agent, [GhostEnv(episode_len=7), CountingEnv(episode_len=3)], pooling_rate=2, is_training=False)
    coord.run(30, progress=False)
    assert_eq(agent.transitions, [])
    assert_eq(agent.optimize_calls, 0)
    assert_true(agent.episode_count > 0)

    rec = ppo(state_size=4, action_sizes=[2], use_rnn=True, memory_size=4, width=8, depth=1, seed=0, device="cpu")
    RolloutCoordinator(rec, [GhostEnv(episode_len=5)], pooling_rate=1, is_training=False).run(20, progress=False)
    assert_eq(rec.memory.size, 0)
    assert_eq(rec.update_calls, 0)


def test_train_metrics_are_logged_with_prefix():
    logger = RecordingLogger()
    coord = RolloutCoordinator(ScriptedAgent(), [CountingEnv(), CountingEnv()], pooling_rate=1, logger=logger)
    coord.run(3, progress=False)

    train = [r for r in logger.rows if r[0] == "train"]
    assert_eq([r[2] for r in train], [1, 2, 3])
    assert_eq(train[0][1], {"loss": 0.25})
    assert_true(logger.step_fn is not None)
    assert_eq(logger.step_fn(), 3)


# =============================================================================
# Timing / barrier
# =============================================================================
def test_tick_accumulates_time():
    coord = RolloutCoordinator(ScriptedAgent(), [CountingEnv()], pooling_rate=1, step_interval=0.25, time_scale=2.0)
    assert_eq(coord.tick(1.0), 8)
    assert_eq(coord.tick(0.0625), 0)
    assert_eq(coord.tick(0.0625), 1)
    assert_eq(coord.total_steps, 9)


def test_initialize_barrier():
    gate = threading.Event()

    def factory():
        gate.wait(timeout=10.0)
        return ScriptedAgent()

    env = CountingEnv()
    coord = RolloutCoordinator(None, [env], pooling_rate=1, step_interval=0.5)
    coord.initialize(factory)
    try:
        assert_eq(coord.tick(2.0), 0)
        assert_eq(coord.accumulated_time, 0.0)
        assert_raises(ConfigurationError, lambda: coord.step())
        assert_raises(ConfigurationError, lambda: coord.initialize(factory))

        gate.set()
        agent = coord.wait_ready(timeout=10.0)
        assert_true(isinstance(agent, ScriptedAgent))
        assert_eq(coord.tick(1.0), 2)
        assert_eq(env.step_calls, 2)
    finally:
        gate.set()
        coord.close()


def test_failed_update_halts_coordinator():
    agent = ScriptedAgent(fail_at=2)
    coord = RolloutCoordinator(agent, [CountingEnv()], pooling_rate=1)
    coord.step()
    assert_raises(RuntimeError, lambda: coord.step())
    assert_raises(CoordinatorHaltedError, lambda: coord.step())
    assert_eq(agent.optimize_calls, 2)


# =============================================================================
# Real agents
# =============================================================================
def test_recurrent_ppo_through_coordinator():
    agent = ppo(
        state_size=4,
        action_sizes=[2],
        use_rnn=True,
        memory_size=12,
        batch_size=4,
        ppo_epochs=1,
        width=8,
        depth=1,
        seed=0,
        device="cpu",
    )
    envs = [GhostEnv(episode_len=4), GhostEnv(episode_len=6)]
    coord = RolloutCoordinator(agent, envs, pooling_rate=1)
    coord.run(6, progress=False)

    assert_eq(agent.memory.size, 0, "a full rollout triggers an update and is cleared")
    assert_true(agent.update_calls > 0)
    assert_eq(agent.episode_count, 2)


def test_gym_adapter_cartpole_with_dqn():
    env = GymEnvAdapter.make("CartPole-v1", seed=0)
    assert_eq(env.state_size, 4)
    assert_eq(env.action_sizes, [2])
    assert_eq(env.continuous_action_bounds, [])

    agent = _small_dqn()
    with RolloutCoordinator(agent, [env], pooling_rate=2) as coord:
        returns = coord.run(400, progress=False)
    assert_eq(coord.real_steps, 200)
    assert_true(len(returns) >= 1)
    assert_true(agent.update_calls > 0)


def test_gym_adapter_box_actions():
    env = GymEnvAdapter.make("Pendulum-v1", seed=0)
    assert_eq(env.action_sizes, [])
    assert_eq(len(env.continuous_action_bounds), 1)
    lo, hi = env.continuous_action_bounds[0]
    assert_eq((lo, hi), (-2.0, 2.0))

    s = env.reset()
    assert_eq(s.shape, (env.state_size,))
    ns, r, done = env.step(np.array([0.5], np.float32))
    assert_eq(ns.dtype, np.float32)
    assert_true(isinstance(r, float) and isinstance(done, bool))

    agent = ppo(state_size=env.state_size, continuous_action_bounds=env.continuous_action_bounds, device="cpu", seed=0)
    RolloutCoordinator(agent, [env], pooling_rate=1).run(5, progress=False)
    assert_in("modelActor", agent._model_components())
    env.close()


# =============================================================================
# Simple runner
# =============================================================================
TESTS: List[Tuple[str, Callable[[], Any]]] = [
    # construction
    ("empty_envs", test_empty_envs_raise),
    ("size_mismatch", test_size_mismatch_raises),

    # pooling
    ("one_real_in_five", test_one_real_step_in_five),
    ("ghost_fallback_last_action", test_ghost_falls_back_to_last_action),
    ("ghost_rewards_episode_return", test_ghost_rewards_count_toward_episode_return),
    ("ghost_tick_episode_end", test_episode_ending_on_ghost_tick_reaches_learner),
    ("inference_stores_nothing", test_inference_mode_stores_nothing),
    ("train_metrics_logged", test_train_metrics_are_logged_with_prefix),

    # timing / barrier
    ("tick_accumulates", test_tick_accumulates_time),
    ("initialize_barrier", test_initialize_barrier),
    ("failed_update_halts", test_failed_update_halts_coordinator),

    # real agents
    ("recurrent_ppo", test_recurrent_ppo_through_coordinator),
    ("gym_cartpole_dqn", test_gym_adapter_cartpole_with_dqn),
    ("gym_box_actions", test_gym_adapter_box_actions),
]


def main(argv=None) -> int:
    return run_tests(TESTS, argv=argv, suite_name="coordinator")


if __name__ == "__main__":
    raise SystemExit(main())
