import logging
from dataclasses import dataclass
from typing import Protocol

# Boundary types for the simulation backend the agent talks to


@dataclass(frozen=True, slots=True)
class Snapshot:
    """
    One publication of the environment status.

    Lists hold whatever accumulated since the previous get_snapshot() call.
    """
    is_running: bool
    frame_counter: int = 0 # total frames published, non-decreasing while running
    video_frame_count: int = 0 # frames since the previous get_snapshot()
    observations: tuple[str, ...] = ()
    rewards: tuple[float, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def total_reward(self) -> float:
        return float(sum(self.rewards))


class EnvironmentClient(Protocol):
    def peek_snapshot(self) -> Snapshot:
        """Latest snapshot, without consuming anything."""
        ...

    def get_snapshot(self) -> Snapshot:
        """Latest snapshot; clears pending observations, rewards and errors."""
        ...

    def send_command(self, action: str) -> None:
        ...


def log_errors(snapshot: Snapshot, logger: logging.Logger) -> int:
    """Report the environment's diagnostic messages; they never stop an episode."""
    for message in snapshot.errors:
        logger.warning("environment: %s", message)
    return len(snapshot.errors)
