"""
Turns the environment's asynchronous snapshot stream into discrete,
reward-bearing observation events.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Union

from qagent.environment import EnvironmentClient, Snapshot, log_errors
from qagent.state_key import (
    MalformedObservation,
    Position,
    decode_observation,
    encode_position,
    is_empty_observation,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SyncConfig:
    require_move: bool = False # a fresh frame must also show a new position
    move_tolerance: float = 0.01 # minimum distance that counts as a move
    poll_interval: float = 0.0 # seconds to sleep between peeks, 0 spins
    max_polls: int | None = None # give up on a frame after this many peeks


@dataclass(frozen=True, slots=True)
class Fresh:
    key: str
    position: Position
    reward: float # sum of the reward records dequeued with this observation
    frame: int


@dataclass(frozen=True, slots=True)
class Skipped:
    """Dequeued snapshot whose observation could not be decoded."""
    reward: float


@dataclass(frozen=True, slots=True)
class Terminated:
    reward: float # rewards still pending when the episode stopped


@dataclass(frozen=True, slots=True)
class Aborted:
    reason: str # "no_frames" or "stalled"


SyncEvent = Union[Fresh, Skipped, Terminated, Aborted]


class ObservationSynchronizer:
    """
    Polls an EnvironmentClient until a fresh observation is available.

    A snapshot is fresh when the episode is running, its frame counter is
    past the last consumed one, its first observation record decodes, and it
    carries at least one reward. With `require_move` the decoded position
    must also differ from the last consumed one. The first observation of an
    episode needs neither a reward nor a move.
    """

    def __init__(
        self,
        client: EnvironmentClient,
        config: SyncConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.config = config or SyncConfig()
        self.sleep = sleep
        self.last_frame: int | None = None
        self.last_position: Position | None = None

    def reset(self) -> None:
        self.last_frame = None
        self.last_position = None

    def next_event(self, first: bool = False) -> SyncEvent:
        polls = 0
        while True:
            snapshot = self.client.peek_snapshot()
            if not snapshot.is_running:
                logger.debug("mission ended")
                return self._drain()
            if self._is_fresh(snapshot, first):
                return self._consume(snapshot.frame_counter)
            polls += 1
            if self.config.max_polls is not None and polls >= self.config.max_polls:
                logger.error("no fresh observation after %d polls", polls)
                return Aborted("stalled")
            if self.config.poll_interval > 0:
                self.sleep(self.config.poll_interval)

    def _is_fresh(self, snapshot: Snapshot, first: bool) -> bool:
        if self.last_frame is not None and snapshot.frame_counter <= self.last_frame:
            return False
        if not snapshot.observations or any(is_empty_observation(o) for o in snapshot.observations):
            return False
        if not first and not snapshot.rewards:
            return False
        try:
            position = decode_observation(snapshot.observations[0])
        except MalformedObservation:
            # not yet usable, keep polling
            return False
        if self.config.require_move and not first and self.last_position is not None:
            moved = math.hypot(position.x - self.last_position.x,
                               position.z - self.last_position.z)
            if moved <= self.config.move_tolerance:
                return False
        return True

    def _consume(self, peeked_frame: int) -> SyncEvent:
        snapshot = self.client.get_snapshot()
        log_errors(snapshot, logger)
        reward = snapshot.total_reward
        # out-of-order counters never move the watermark backwards
        self.last_frame = max(peeked_frame, snapshot.frame_counter)

        if not snapshot.is_running:
            return Terminated(reward)
        if snapshot.video_frame_count <= 0:
            logger.error("no video frames received, dropping reward %.2f", reward)
            return Aborted("no_frames")
        if not snapshot.observations:
            logger.warning("dequeued snapshot carries no observation")
            return Skipped(reward)
        try:
            position = decode_observation(snapshot.observations[0])
        except MalformedObservation as exc:
            logger.warning("invalid observation: %s", exc)
            return Skipped(reward)

        self.last_position = position
        return Fresh(key=encode_position(position), position=position,
                     reward=reward, frame=self.last_frame)

    def _drain(self) -> Terminated:
        # a reward can land after the running flag drops
        snapshot = self.client.get_snapshot()
        log_errors(snapshot, logger)
        return Terminated(snapshot.total_reward)
