import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from qagent.environment import EnvironmentClient, log_errors

logger = logging.getLogger(__name__)

# Exit status of a run that could not start its mission
EXIT_MISSION_START_FAILED = 2


@dataclass(slots=True)
class Attempt:
    """Outcome of a retried call."""
    ok: bool
    value: Any = None
    error: Exception | None = None
    tries: int = 0


def retry(
    action: Callable[[], Any],
    attempts: int = 3, # total number of calls before giving up
    delay: float = 2.0, # fixed pause between calls, seconds
    sleep: Callable[[float], None] = time.sleep,
) -> Attempt:
    """
    Call `action` until it returns without raising, at most `attempts` times.

    Failures are reported through the returned Attempt instead of being
    re-raised, so callers decide what exhausting the budget means.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    last_error = None
    for i in range(1, attempts + 1):
        try:
            return Attempt(ok=True, value=action(), tries=i)
        except Exception as exc:
            last_error = exc
            logger.warning("attempt %d/%d failed: %s", i, attempts, exc)
            if i < attempts:
                sleep(delay)
    return Attempt(ok=False, error=last_error, tries=attempts)


def wait_for_start(
    client: EnvironmentClient,
    timeout: float = 30.0, # seconds before giving up
    interval: float = 0.1, # seconds between checks
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Poll until the mission reports itself running. Returns False on timeout.
    """
    deadline = clock() + timeout
    while True:
        snapshot = client.get_snapshot()
        log_errors(snapshot, logger)
        if snapshot.is_running:
            return True
        if clock() >= deadline:
            logger.error("mission did not start within %.1fs", timeout)
            return False
        sleep(interval)
