import argparse

import gymnasium as gym

from rl_engine import GymEnvAdapter, RolloutCoordinator, build_logger, dqn, ppo


# -----------------------------
# Env factories
# -----------------------------
def make_env(env_id: str, seed: int):
    """
    Factory helper: wrap a fresh gymnasium env with a given seed.
    """
    return GymEnvAdapter(gym.make(env_id), seed=seed)


# -----------------------------
# CLI
# -----------------------------
parser = argparse.ArgumentParser(description="Train a DQN or PPO agent on a gymnasium task.")
parser.add_argument("--algo", choices=("dqn", "ppo"), default="dqn")
parser.add_argument("--env", default="CartPole-v1")
parser.add_argument("--n-envs", type=int, default=4)
parser.add_argument("--steps", type=int, default=50_000, help="coordinator steps, ghost steps included")
parser.add_argument("--pooling-rate", type=int, default=1)
parser.add_argument("--seed", type=int, default=0)
parser.add_argument("--device", default="auto")
parser.add_argument("--log-dir", default="./runs")
parser.add_argument("--save-dir", default="./checkpoints")
args = parser.parse_args()

envs = [make_env(args.env, seed=args.seed + i) for i in range(args.n_envs)]
probe = envs[0]


# -----------------------------
# Build agent + coordinator
# -----------------------------
if args.algo == "dqn":
    agent = dqn(
        state_size=probe.state_size,
        action_sizes=probe.action_sizes,
        double_dqn=True,
        dueling_dqn=True,
        seed=args.seed,
        device=args.device,
    )
else:
    agent = ppo(
        state_size=probe.state_size,
        action_sizes=probe.action_sizes,
        continuous_action_bounds=probe.continuous_action_bounds,
        seed=args.seed,
        device=args.device,
    )

logger = build_logger(log_dir=args.log_dir, exp_name=f"{args.env}_{args.algo}", console_every=0)
logger.dump_config({"algo": args.algo, "env": args.env, "n_envs": args.n_envs, **agent.options.to_dict()})

with logger, RolloutCoordinator(agent, envs, pooling_rate=args.pooling_rate, logger=logger) as coordinator:
    returns = coordinator.run(args.steps)

paths = agent.save(args.save_dir)
print(f"episodes={len(returns)} last_return={returns[-1] if returns else float('nan'):.1f}")
for name, path in paths.items():
    print(f"saved {name} -> {path}")
