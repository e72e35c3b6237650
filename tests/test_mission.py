import pytest

from qagent.mission import retry, wait_for_start
from scripted import ScriptedClient, ended, snap


class Flaky:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"failure {self.calls}")
        return "started"


def test_retry_succeeds_after_failures():
    naps = []
    attempt = retry(Flaky(2), attempts=3, delay=2.0, sleep=naps.append)
    assert attempt.ok and attempt.value == "started"
    assert attempt.tries == 3
    assert naps == [2.0, 2.0]


def test_retry_gives_up():
    naps = []
    action = Flaky(10)
    attempt = retry(action, attempts=3, delay=0.5, sleep=naps.append)
    assert not attempt.ok
    assert str(attempt.error) == "failure 3"
    assert action.calls == 3
    # no pause after the last attempt
    assert naps == [0.5, 0.5]


def test_retry_needs_an_attempt():
    with pytest.raises(ValueError):
        retry(Flaky(0), attempts=0)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def test_wait_for_start_polls_until_running(caplog):
    clock = FakeClock()
    client = ScriptedClient([])
    pending = [ended(errors=["not yet"]), ended(), snap(1, pos=(0, 0))]
    client.get_snapshot = lambda: pending.pop(0)
    assert wait_for_start(client, timeout=5.0, interval=0.1, sleep=clock.sleep, clock=clock)
    assert clock.now == pytest.approx(0.2)
    assert "not yet" in caplog.text


def test_wait_for_start_times_out():
    clock = FakeClock()
    client = ScriptedClient([])
    client.get_snapshot = ended
    assert not wait_for_start(client, timeout=1.0, interval=0.25, sleep=clock.sleep, clock=clock)
