from __future__ import annotations

import argparse
import csv
import json
import logging
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Tuple
from datetime import datetime

from cliff_gym import ACTIONS
from cliff_host import CliffHost
from qagent.episode import EpisodeResult, play_episode
from qagent.mission import EXIT_MISSION_START_FAILED, retry, wait_for_start
from qagent.policy import annealed_linear, fixed_eps_schedule
from qagent.qlearner import TabularQAgent
from qagent.synchronizer import ObservationSynchronizer, SyncConfig

logger = logging.getLogger("run_experiment")

TRAIN_FIELDS = [
    "map", "seed", "episode", "epsilon", "return", "steps",
    "outcome", "skipped", "states_visited", "start_tries",
]
EVAL_FIELDS = ["map", "block_episode", "episode", "return", "steps", "outcome"]


def _print_progress(current: int, total: int, label: str) -> None:
    """
    Print a progress bar to the console
    """
    width = 30
    filled = int(width * current / total)
    bar = "#" * filled + "-" * (width - filled)
    msg = f"\r[{label}] |{bar}| {current}/{total}"
    print(msg, end="", flush=True)

def get_git_commit() -> str:
    """
    Return the current Git commit hash.
    """
    try:
        out = subprocess.check_output(["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL)
        return out.decode().strip()
    except (OSError, subprocess.CalledProcessError):
        return "unknown"


def run_mission(
    host: CliffHost, # simulated agent host
    agent: TabularQAgent, # agent playing the mission
    sync: ObservationSynchronizer, # synchronizer bound to the host
    max_retries: int, # attempts to start the mission
    retry_delay: float, # seconds between start attempts
    start_timeout: float, # seconds to wait for the mission to report running
) -> Tuple[EpisodeResult, int]:
    """
    Start one mission, play it to the end and shut the host down.

    Exits the process with EXIT_MISSION_START_FAILED when the mission cannot
    be started within `max_retries` attempts.
    """
    attempt = retry(host.start_mission, attempts=max_retries, delay=retry_delay)
    if not attempt.ok:
        logger.critical("failed to start the mission %d times (%s), exiting",
                        attempt.tries, attempt.error)
        sys.exit(EXIT_MISSION_START_FAILED)
    try:
        if not wait_for_start(host, timeout=start_timeout):
            return EpisodeResult(0.0, 0, "ended_before_start"), attempt.tries
        return play_episode(host, agent, sync), attempt.tries
    finally:
        host.stop()


def evaluate_policy(host: CliffHost, # simulated agent host
                    agent: TabularQAgent, # agent under evaluation
                    sync: ObservationSynchronizer, # synchronizer bound to the host
                    n_episodes: int, # number of episodes to evaluate
                    block_ep: int, # training episode this block follows
                    map_idx: int, # map index for logging
                    max_retries: int,
                    retry_delay: float,
                    start_timeout: float):
    """
    Evaluate the greedy policy (epsilon = 0) without touching the table.

    Training is switched off for the block and restored afterwards.
    """
    rows = []
    training, epsilon = agent.training, agent.epsilon
    agent.training, agent.epsilon = False, 0.0
    try:
        for i in range(n_episodes):
            result, _ = run_mission(host, agent, sync, max_retries, retry_delay, start_timeout)
            rows.append({
                "map": map_idx, # map index
                "block_episode": block_ep, # training episode before this block
                "episode": i, # evaluation episode index
                "return": result.total_reward, # total reward of the episode
                "steps": result.steps, # intermediate decisions taken
                "outcome": result.outcome, # how the episode ended
            })
    finally:
        agent.training, agent.epsilon = training, epsilon
    return rows


def run_single_map(
    map_idx: int,  # index of the map (lava layout)
    seed: int,  # random seed for the map and the agent
    n_episodes: int,  # number of training episodes on this map
    eps_fn: Callable[[int], float],  # exploration rate per episode
    alpha: float,  # learning rate
    gamma: float,  # discount factor
    sync_config: SyncConfig,  # synchronizer knobs
    host_kwargs: dict,  # CliffHost timing and noise settings
    max_retries: int,  # attempts to start each mission
    retry_delay: float,  # seconds between start attempts
    start_timeout: float,  # seconds to wait for a mission to run
    eval_every: int,  # run an evaluation block every N training episodes
    eval_episodes: int,  # number of eval episodes per evaluation block
) -> Tuple[list[float], list, list, TabularQAgent]:
    """
    Train a fresh agent on one map for `n_episodes` missions.

    Every map gets its own lava layout and its own table, so maps are
    independent repetitions of the whole learning run.
    """
    host = CliffHost(map_seed=seed, seed=seed, **host_kwargs)
    agent = TabularQAgent(ACTIONS, epsilon=eps_fn(0), alpha=alpha, gamma=gamma, seed=seed)
    sync = ObservationSynchronizer(host, sync_config)

    episode_returns: list[float] = []
    train_rows: list[dict] = []
    eval_rows: list[dict] = []
    for ep in range(n_episodes):
        agent.epsilon = eps_fn(ep)
        result, tries = run_mission(host, agent, sync, max_retries, retry_delay, start_timeout)
        logger.info("map %d episode %d: reward %.1f (%s)", map_idx, ep + 1,
                    result.total_reward, result.outcome)
        episode_returns.append(result.total_reward)
        train_rows.append({
            "map": map_idx,
            "seed": seed,
            "episode": ep + 1,
            "epsilon": agent.epsilon,
            "return": result.total_reward,
            "steps": result.steps,
            "outcome": result.outcome,
            "skipped": result.skipped,
            "states_visited": len(agent.q_table),
            "start_tries": tries,
        })
        if (ep + 1) % max(1, eval_every) == 0 and eval_episodes > 0:
            eval_rows.extend(
                evaluate_policy(
                    host, agent, sync,
                    n_episodes=eval_episodes,
                    block_ep=ep + 1,
                    map_idx=map_idx,
                    max_retries=max_retries,
                    retry_delay=retry_delay,
                    start_timeout=start_timeout,
                )
            )
        _print_progress(ep + 1, n_episodes, f"map {map_idx}")

    print() # Newline after progress bar

    return episode_returns, train_rows, eval_rows, agent


def _write_rows(path: Path, fieldnames: list[str], rows: list[dict]) -> None:
    with path.open("w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Tabular Q-learning on the cliff-walking simulator"
    )
    parser.add_argument(
        "--maps", "-m", type=int, default=1,
        help="Number of maps (lava layouts), each with a fresh agent"
    )
    parser.add_argument(
        "--episodes", "-p", type=int, default=200,
        help="Number of training episodes per map"
    )
    parser.add_argument(
        "--alpha", "-a", type=float, default=0.1,
        help="Learning rate α"
    )
    parser.add_argument(
        "--gamma", "-g", type=float, default=1.0,
        help="Discount factor γ"
    )
    parser.add_argument(
        "--eps", "-e", type=float, default=0.01,
        help="ε for the fixed schedule"
    )
    parser.add_argument(
        "--schedule", choices=["fixed", "annealed"], default="fixed",
        help="Exploration schedule"
    )
    parser.add_argument(
        "--eps_start", "-es", type=float, default=0.5,
        help="Starting ε for the annealed schedule"
    )
    parser.add_argument(
        "--eps_end", "-ee", type=float, default=0.01,
        help="Final ε for the annealed schedule"
    )
    parser.add_argument(
        "--seed", "-s", type=int, default=10,
        help="Starting seed (map k uses seed+k)"
    )
    parser.add_argument(
        "--max_retries", type=int, default=3,
        help="Attempts to start a mission before giving up"
    )
    parser.add_argument(
        "--retry_delay", type=float, default=2.0,
        help="Seconds between mission start attempts"
    )
    parser.add_argument(
        "--start_timeout", type=float, default=10.0,
        help="Seconds to wait for a started mission to report running"
    )
    parser.add_argument(
        "--require_move", action=argparse.BooleanOptionalAction, default=False,
        help="Only accept observations whose position changed"
    )
    parser.add_argument(
        "--max_polls", type=int, default=None,
        help="Abort an episode after this many polls without a fresh observation"
    )
    parser.add_argument(
        "--poll_interval", type=float, default=0.0,
        help="Seconds to sleep between polls (0 spins)"
    )
    parser.add_argument(
        "--max_steps", type=int, default=200,
        help="Commands per mission before it times out"
    )
    parser.add_argument(
        "--time_limit", type=float, default=30.0,
        help="Wall clock limit per mission in seconds"
    )
    parser.add_argument(
        "--frame_interval", type=float, default=0.002,
        help="Seconds between simulated video frames"
    )
    parser.add_argument(
        "--latency", type=float, default=0.0,
        help="Seconds before a command takes effect"
    )
    parser.add_argument(
        "--empty_obs", type=float, default=0.0,
        help="Probability that a frame carries an empty observation"
    )
    parser.add_argument(
        "--eval_every", type=int, default=50,
        help="Run an evaluation block every N training episodes"
    )
    parser.add_argument(
        "--eval_episodes", type=int, default=0,
        help="Number of eval episodes per evaluation block"
    )
    parser.add_argument(
        "--plot_q", action="store_true",
        help="Save a picture of each map's final Q-table"
    )
    parser.add_argument(
        "--debug", action="store_true",
        help="Log every decision"
    )
    return parser


def main(argv: List[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.schedule == "annealed":
        eps_fn = annealed_linear(args.eps_start, args.eps_end, args.episodes)
    else:
        eps_fn = fixed_eps_schedule(args.eps)

    sync_config = SyncConfig(
        require_move=args.require_move,
        poll_interval=args.poll_interval,
        max_polls=args.max_polls,
    )
    host_kwargs = dict(
        max_steps=args.max_steps,
        time_limit=args.time_limit,
        frame_interval=args.frame_interval,
        latency=args.latency,
        empty_observation_prob=args.empty_obs,
    )
    seeds = [args.seed + k for k in range(args.maps)]

    # create timestamped results directory
    timestamp = datetime.now().strftime("%Y_%m_%d_%H%M%S")
    results_dir = Path("results") / f"{timestamp}_({args.maps}maps_{args.episodes}ep_{args.eps:.2f}e_{args.alpha:.2f}a_{args.gamma:.2f}g)"

    results_dir.mkdir(parents=True, exist_ok=True)

    meta = {
        "git_commit": get_git_commit(),
        "actions": list(ACTIONS),
        "maps": args.maps,
        "episodes": args.episodes,
        "alpha": args.alpha,
        "gamma": args.gamma,
        "schedule": args.schedule,
        "eps": args.eps,
        "eps_start": args.eps_start,
        "eps_end": args.eps_end,
        "seeds": seeds,
        "sync": {
            "require_move": sync_config.require_move,
            "move_tolerance": sync_config.move_tolerance,
            "poll_interval": sync_config.poll_interval,
            "max_polls": sync_config.max_polls,
        },
        "host": host_kwargs,
    }
    with (results_dir / "run_meta.json").open("w") as mf:
        json.dump(meta, mf, indent=2)

    all_rows: List[Tuple[int, int, int, float]] = []  # map, seed, episode, return

    for map_idx, seed in enumerate(seeds):
        ep_returns, train_rows, eval_rows, agent = run_single_map(
            map_idx, seed, args.episodes, eps_fn, args.alpha, args.gamma,
            sync_config, host_kwargs,
            max_retries=args.max_retries,
            retry_delay=args.retry_delay,
            start_timeout=args.start_timeout,
            eval_every=args.eval_every,
            eval_episodes=args.eval_episodes,
        )

        _write_rows(results_dir / f"train_metrics_map{map_idx}.csv", TRAIN_FIELDS, train_rows)
        if eval_rows:
            _write_rows(results_dir / f"eval_metrics_map{map_idx}.csv", EVAL_FIELDS, eval_rows)

        if args.plot_q:
            # matplotlib is only needed for this
            from analyze_results import plot_q_table
            plot_q_table(agent.q_table, results_dir / "plots", f"q_table_map{map_idx}")

        for ep_idx, r in enumerate(ep_returns, start=1):
            all_rows.append((map_idx, seed, ep_idx, r))

    out_file = results_dir / "experiment_summary.csv"
    with out_file.open("w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["map", "seed", "episode", "return"])
        writer.writerows(all_rows)

    print(f"Results saved to → {out_file}")
    print(f"Metadata saved to → {results_dir / 'run_meta.json'}")


if __name__ == "__main__":
    main()
