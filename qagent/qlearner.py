import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from qagent.policy import select
from qagent.q_table import QTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Transition:
    """One step of experience: (s, a, r, s')."""
    state: str
    action: int
    reward: float # reward accumulated since the decision in `state`
    next_state: str


class QLearner:
    # Applies the TD(0) update rule to a QTable

    def __init__(
        self,
        q_table: QTable,
        alpha: float = 0.1, # learning rate
        gamma: float = 1.0, # discount factor for future rewards
    ):
        self.q = q_table
        self.alpha = alpha
        self.gamma = gamma

    def update(self, transition: Transition) -> float:
        """
        Update Q(s,a) for a transition that has a successor state.

        Uses the standard Q-learning rule:
          Q(s,a) <- Q(s,a) + alpha * (reward + gamma * max_a' Q(s',a') - Q(s,a))
        """
        # a successor seen for the first time bootstraps off zeros
        best_future = float(np.max(self.q.get_or_init(transition.next_state)))
        old_q = self.q.value(transition.state, transition.action)
        new_q = old_q + self.alpha * (transition.reward + self.gamma * best_future - old_q)
        self.q.update(transition.state, transition.action, new_q)
        return new_q

    def update_terminal(self, state: str, action: int, reward: float) -> float:
        """
        Update Q(s,a) for the last decision of an episode.

        There is no successor state, so there is no bootstrap term:
          Q(s,a) <- Q(s,a) + alpha * (reward - Q(s,a))
        """
        old_q = self.q.value(state, action)
        new_q = old_q + self.alpha * (reward - old_q)
        self.q.update(state, action, new_q)
        return new_q


class TabularQAgent:
    """
    Epsilon-greedy tabular Q agent over a fixed, ordered set of command strings.

    The agent owns its table; learning calls are ignored while
    `training` is False (evaluation mode reads the table only).
    """

    def __init__(
        self,
        actions: Sequence[str], # command strings, identified by index
        epsilon: float = 0.01, # exploration rate
        alpha: float = 0.1, # learning rate
        gamma: float = 1.0, # discount factor
        training: bool = True,
        seed: int | None = None # random seed for reproducibility
    ):
        self.actions = tuple(actions)
        if not self.actions:
            raise ValueError("the action set must not be empty")
        if len(set(self.actions)) != len(self.actions):
            raise ValueError(f"duplicate actions in {self.actions}")
        self.epsilon = epsilon
        self.training = training
        self.q_table = QTable(len(self.actions))
        self.learner = QLearner(self.q_table, alpha=alpha, gamma=gamma)
        self.rng = np.random.default_rng(seed)

    @property
    def n_actions(self) -> int:
        return len(self.actions)

    def act(self, state: str) -> int:
        """
        Choose an action index for `state`. While training the state gets a
        row in the table; greedy evaluation only reads.
        """
        if self.training:
            row = self.q_table.get_or_init(state)
        else:
            row = self.q_table.lookup(state)
        action = select(row, self.epsilon, self.rng)
        logger.debug("state %s values %s -> %s", state, row, self.actions[action])
        return action

    def command(self, action: int) -> str:
        return self.actions[action]

    def learn(self, transition: Transition) -> float | None:
        if not self.training:
            return None
        return self.learner.update(transition)

    def learn_terminal(self, state: str, action: int, reward: float) -> float | None:
        if not self.training:
            return None
        return self.learner.update_terminal(state, action, reward)

    def get_q_table(self) -> dict:
        """
        Return the learned Q-table as a regular dictionary.
        """
        return self.q_table.as_dict()
