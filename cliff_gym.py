import numpy as np
import gymnasium as gym
from gymnasium import spaces
from typing import Optional

__all__ = ["CliffWalkEnv", "ACTIONS"]

# Grid layout
WIDTH, DEPTH = 6, 14
START = (4, 1)
GOAL_Z = DEPTH - 1
LAVA_ROWS = range(2, 12, 2)
LAVA_X_RANGE = (1, 3) # inclusive range of columns a lava hole can occupy

# Rewards
STEP_REWARD = -1.0
LAVA_REWARD = -100.0
GOAL_REWARD = 100.0

# Discrete movement commands, aligned with the action indices
ACTIONS = ("movenorth 1", "movesouth 1", "movewest 1", "moveeast 1")
MOVES = ((0, -1), (0, 1), (-1, 0), (1, 0))


class CliffWalkEnv(gym.Env):
    """
    Cliff-walking grid world.

    The agent starts near the north edge and has to reach the south edge
    without stepping into a lava hole. Walls keep the agent in place.
    Actions: north (0), south (1), west (2), east (3).
    Reward: -1 per command, -100 for lava, +100 for the goal row.
    """
    metadata = {"render_modes": []}

    def __init__(
        self,
        *,
        max_steps: int = 200, # time limit per episode
        seed: Optional[int] = None, # seed of the lava layout
    ) -> None:
        super().__init__()

        self.rng = np.random.default_rng(seed)
        self.max_steps = max_steps
        # one lava hole per row, x drawn once per map
        self.lava = {
            (int(self.rng.integers(LAVA_X_RANGE[0], LAVA_X_RANGE[1] + 1)), z)
            for z in LAVA_ROWS
        }

        self.action_space = spaces.Discrete(len(ACTIONS))
        self.observation_space = spaces.MultiDiscrete([WIDTH, DEPTH])

        self.position = START
        self.t = 0

    def reset(self, *, seed: Optional[int] = None, options=None):
        super().reset(seed=seed)
        self.position = START
        self.t = 0
        return self.observe(), {}

    def step(self, action: int):
        assert self.action_space.contains(action)

        dx, dz = MOVES[action]
        x = min(max(self.position[0] + dx, 0), WIDTH - 1)
        z = min(max(self.position[1] + dz, 0), DEPTH - 1)
        self.position = (x, z)
        self.t += 1

        # the host publishes each component as its own reward record
        components = [STEP_REWARD]
        terminated = False
        if self.position in self.lava:
            components.append(LAVA_REWARD)
            terminated = True
        elif z == GOAL_Z:
            components.append(GOAL_REWARD)
            terminated = True
        truncated = not terminated and self.t >= self.max_steps

        return self.observe(), sum(components), terminated, truncated, {"rewards": components}

    def observe(self) -> np.ndarray:
        return np.array(self.position, dtype=np.int64)
