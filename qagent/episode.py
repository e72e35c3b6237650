import logging
from dataclasses import dataclass, replace

from qagent.environment import EnvironmentClient
from qagent.qlearner import TabularQAgent, Transition
from qagent.synchronizer import (
    Aborted,
    Fresh,
    ObservationSynchronizer,
    Skipped,
    Terminated,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AgentMemory:
    """
    The previous (state, action) decision carried between steps.

    Either both fields are set or neither is. `consumed` marks a memory whose
    terminal update has already been applied.
    """
    state: str | None = None
    action: int | None = None
    consumed: bool = False

    def __post_init__(self):
        if (self.state is None) != (self.action is None):
            raise ValueError("AgentMemory must be fully set or fully unset")

    @classmethod
    def empty(cls) -> "AgentMemory":
        return cls()

    @classmethod
    def remember(cls, state: str, action: int) -> "AgentMemory":
        return cls(state=state, action=action)

    @property
    def is_set(self) -> bool:
        return self.state is not None

    def consume(self) -> "AgentMemory":
        return replace(self, consumed=True)


@dataclass(slots=True)
class EpisodeResult:
    total_reward: float
    steps: int # intermediate updates (decisions after the first)
    outcome: str # terminated | no_frames | stalled | ended_before_start
    skipped: int = 0 # ticks lost to malformed observations


def begin(agent: TabularQAgent, client: EnvironmentClient, state: str) -> AgentMemory:
    """Choose and send an action for `state`; no learning happens here."""
    action = agent.act(state)
    client.send_command(agent.command(action))
    return AgentMemory.remember(state, action)


def step(
    agent: TabularQAgent,
    client: EnvironmentClient,
    memory: AgentMemory,
    state: str,
    reward: float, # reward collected since the decision held in memory
) -> AgentMemory:
    """
    Learn from the transition memory -> state, then act in `state`.
    """
    if memory.is_set and not memory.consumed:
        agent.learn(Transition(memory.state, memory.action, reward, state))
    return begin(agent, client, state)


def repeat(agent: TabularQAgent, client: EnvironmentClient, memory: AgentMemory) -> None:
    """Resend the remembered action so the environment keeps advancing."""
    if memory.is_set and not memory.consumed:
        client.send_command(agent.command(memory.action))


def finish(agent: TabularQAgent, memory: AgentMemory, reward: float) -> AgentMemory:
    """
    Terminal update for the last decision of an episode.

    Applies at most once per memory: an empty or consumed memory is
    returned unchanged.
    """
    if not memory.is_set or memory.consumed:
        logger.debug("no pending decision, skipping terminal update")
        return memory
    agent.learn_terminal(memory.state, memory.action, reward)
    return memory.consume()


def play_episode(
    client: EnvironmentClient,
    agent: TabularQAgent,
    sync: ObservationSynchronizer | None = None,
) -> EpisodeResult:
    """
    Run one episode: wait for the first observation, then alternate
    learning and acting on every fresh observation until the environment
    stops, and finish with the terminal update.
    """
    sync = sync or ObservationSynchronizer(client)
    sync.reset()
    memory = AgentMemory.empty()
    total_reward = 0.0
    pending = 0.0 # reward since the last decision
    steps = 0
    skipped = 0

    event = sync.next_event(first=True)
    while isinstance(event, Skipped):
        # nothing to learn from before the first decision
        total_reward += event.reward
        skipped += 1
        event = sync.next_event(first=True)
    if isinstance(event, Terminated):
        logger.warning("mission ended before the first observation")
        return EpisodeResult(total_reward + event.reward, 0, "ended_before_start", skipped)
    if isinstance(event, Aborted):
        return EpisodeResult(total_reward, 0, event.reason, skipped)

    logger.info("initial position: %s", event.key)
    total_reward += event.reward
    memory = begin(agent, client, event.key)

    while True:
        event = sync.next_event()
        if isinstance(event, Fresh):
            total_reward += event.reward
            pending += event.reward
            memory = step(agent, client, memory, event.key, pending)
            pending = 0.0
            steps += 1
        elif isinstance(event, Skipped):
            total_reward += event.reward
            pending += event.reward
            skipped += 1
            # no new state to learn from; pending stays on the remembered decision
            repeat(agent, client, memory)
        elif isinstance(event, Terminated):
            total_reward += event.reward
            pending += event.reward
            memory = finish(agent, memory, pending)
            logger.info("final reward: %.2f (episode total %.2f)", pending, total_reward)
            return EpisodeResult(total_reward, steps, "terminated", skipped)
        else:
            logger.error("episode aborted (%s) after %d steps", event.reason, steps)
            return EpisodeResult(total_reward, steps, event.reason, skipped)


def run_episode(client: EnvironmentClient, agent: TabularQAgent,
                sync: ObservationSynchronizer | None = None) -> float:
    """Run one episode and return its total reward."""
    return play_episode(client, agent, sync).total_reward
