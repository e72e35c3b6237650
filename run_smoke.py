import logging

from cliff_gym import ACTIONS
from cliff_host import CliffHost
from qagent.episode import play_episode
from qagent.mission import wait_for_start
from qagent.qlearner import TabularQAgent


def main(episodes: int = 3) -> TabularQAgent:
    host = CliffHost(map_seed=0, seed=0, max_steps=50)
    agent = TabularQAgent(ACTIONS, epsilon=0.3, alpha=0.1, gamma=1.0, seed=0)

    for ep in range(episodes):
        host.start_mission()
        wait_for_start(host)
        result = play_episode(host, agent)
        host.stop()
        print(f"ep={ep} | r={result.total_reward:+.1f} | steps={result.steps} | {result.outcome}")
    print(f"states in table: {len(agent.q_table)}")
    return agent


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    main()
