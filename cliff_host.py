import json
import logging
import threading
import time
from collections import deque
from typing import Optional

import numpy as np

from cliff_gym import ACTIONS, CliffWalkEnv
from qagent.environment import Snapshot

__all__ = ["CliffHost", "MissionStartError"]

logger = logging.getLogger(__name__)

# Height the agent walks at, reported like a real observation would
FLOOR_Y = 46.0


class MissionStartError(RuntimeError):
    """The host could not start a mission."""


class CliffHost:
    """
    Simulated agent host running a CliffWalkEnv on its own thread.

    The world advances independently of the agent: video frames tick every
    `frame_interval` seconds whether or not the agent moved, commands are
    applied `latency` seconds after they are received, and each applied
    command publishes its reward records. Observations are JSON text in the
    {"XPos", "YPos", "ZPos"} shape, occasionally replaced by the empty
    placeholder "{}".
    """

    def __init__(
        self,
        *,
        map_seed: Optional[int] = None, # lava layout
        max_steps: int = 200, # commands per mission
        time_limit: float = 30.0, # wall clock limit per mission, seconds
        frame_interval: float = 0.002, # seconds between video frames
        latency: float = 0.0, # delay before a command takes effect
        empty_observation_prob: float = 0.0, # chance a frame carries "{}"
        video: bool = True, # False publishes no video frames at all
        fail_starts: int = 0, # number of start_mission calls that fail first
        seed: Optional[int] = None,
    ) -> None:
        self.env = CliffWalkEnv(max_steps=max_steps, seed=map_seed)
        self.time_limit = time_limit
        self.frame_interval = frame_interval
        self.latency = latency
        self.empty_observation_prob = empty_observation_prob
        self.video = video
        self.fail_starts = fail_starts
        self.rng = np.random.default_rng(seed)

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._commands: deque[str] = deque()
        self._reset_state()

    def _reset_state(self) -> None:
        self._running = False
        self._frame_counter = 0
        self._frames_since_get = 0
        self._observations: list[str] = []
        self._rewards: list[float] = []
        self._errors: list[str] = []
        self._commands.clear()

    # ----- mission control -----

    def start_mission(self, seed: Optional[int] = None) -> None:
        if self.fail_starts > 0:
            self.fail_starts -= 1
            raise MissionStartError("simulated start failure")
        if self._thread is not None and self._thread.is_alive():
            raise MissionStartError("a mission is already running")
        with self._lock:
            self._reset_state()
            obs, _ = self.env.reset(seed=seed)
            self._running = True
            self._publish(obs, [])
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="cliff-host", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        with self._lock:
            self._running = False

    # ----- EnvironmentClient -----

    def peek_snapshot(self) -> Snapshot:
        with self._lock:
            return self._snapshot()

    def get_snapshot(self) -> Snapshot:
        with self._lock:
            snapshot = self._snapshot()
            self._observations.clear()
            self._rewards.clear()
            self._errors.clear()
            self._frames_since_get = 0
            return snapshot

    def send_command(self, action: str) -> None:
        with self._lock:
            if not self._running:
                self._errors.append(f"command '{action}' sent while no mission is running")
                return
            self._commands.append(action)

    # ----- world thread -----

    def _run(self) -> None:
        started = time.monotonic()
        while not self._stop.is_set():
            if time.monotonic() - started > self.time_limit:
                logger.info("mission time limit reached")
                self._end()
                return
            with self._lock:
                command = self._commands.popleft() if self._commands else None
            if command is None:
                self._tick()
            elif self._apply(command):
                return
            self._stop.wait(self.frame_interval)

    def _tick(self) -> None:
        # a frame without movement
        with self._lock:
            self._publish(self.env.observe(), [])

    def _apply(self, command: str) -> bool:
        """Apply one command; True when the mission is over."""
        if self.latency > 0:
            self._stop.wait(self.latency)
        if command not in ACTIONS:
            with self._lock:
                self._errors.append(f"unknown command '{command}'")
            return False
        obs, _, terminated, truncated, info = self.env.step(ACTIONS.index(command))
        with self._lock:
            self._publish(obs, info["rewards"])
            # the closing rewards and the stop flag appear together
            if terminated or truncated:
                self._running = False
        return terminated or truncated

    def _end(self) -> None:
        with self._lock:
            self._running = False

    def _publish(self, obs: np.ndarray, rewards: list[float]) -> None:
        # caller holds the lock
        self._frame_counter += 1
        if self.video:
            self._frames_since_get += 1
        if self.rng.random() < self.empty_observation_prob:
            text = "{}"
        else:
            text = json.dumps({
                "XPos": float(obs[0]) + 0.5,
                "YPos": FLOOR_Y,
                "ZPos": float(obs[1]) + 0.5,
            })
        # only the latest observation is kept
        self._observations[:] = [text]
        self._rewards.extend(rewards)

    def _snapshot(self) -> Snapshot:
        return Snapshot(
            is_running=self._running,
            frame_counter=self._frame_counter,
            video_frame_count=self._frames_since_get,
            observations=tuple(self._observations),
            rewards=tuple(self._rewards),
            errors=tuple(self._errors),
        )
