import logging
from dataclasses import replace

import pytest

from qagent.synchronizer import (
    Aborted,
    Fresh,
    ObservationSynchronizer,
    Skipped,
    SyncConfig,
    Terminated,
)
from scripted import ScriptedClient, ended, obs, snap


def _sync(script, **config):
    client = ScriptedClient(script)
    return client, ObservationSynchronizer(client, SyncConfig(**config))


def test_first_observation_needs_no_reward():
    client, sync = _sync([snap(1, pos=(4, 1)), ended(1)])
    event = sync.next_event(first=True)
    assert event == Fresh(key="4:1", position=event.position, reward=0.0, frame=1)
    assert client.gets == 1


def test_later_observation_needs_a_reward():
    _, sync = _sync([
        snap(1, pos=(0, 0)),
        snap(2, pos=(1, 0)), # moved, but nothing to learn from yet
        snap(3, pos=(1, 0), rewards=[-1]),
        ended(3),
    ])
    sync.next_event(first=True)
    event = sync.next_event()
    assert isinstance(event, Fresh) and event.frame == 3


def test_rewards_are_summed_from_the_dequeued_snapshot():
    _, sync = _sync([
        snap(1, pos=(0, 0)),
        (snap(2, pos=(1, 0), rewards=[-1]), snap(2, pos=(1, 0), rewards=[-1, -1, 5])),
        ended(2),
    ])
    sync.next_event(first=True)
    assert sync.next_event().reward == pytest.approx(3.0)


def test_stale_frames_are_never_consumed_twice():
    client, sync = _sync([
        snap(1, pos=(0, 0)),
        snap(1, pos=(1, 0), rewards=[-1]), # counter did not advance
        snap(2, pos=(1, 0), rewards=[-1]),
        snap(2, pos=(2, 0), rewards=[-1]), # duplicate publication
        snap(1, pos=(2, 0), rewards=[-1]), # out of order
        snap(3, pos=(2, 0), rewards=[-1]),
        ended(3),
    ])
    frames = [sync.next_event(first=True).frame]
    frames.append(sync.next_event().frame)
    frames.append(sync.next_event().frame)
    assert frames == [1, 2, 3]
    assert client.gets == 3
    assert isinstance(sync.next_event(), Terminated)


def test_empty_placeholder_is_not_fresh():
    _, sync = _sync([
        snap(1, raw="{}"),
        snap(2, raw='{"YPos": 46.0}'), # decodable fields missing
        snap(3, pos=(4, 1)),
        ended(3),
    ])
    event = sync.next_event(first=True)
    assert event.key == "4:1" and event.frame == 3


def test_placeholder_in_any_record_is_not_fresh():
    partial = replace(snap(1, pos=(0, 0)), observations=(obs(0, 0), "{}"))
    _, sync = _sync([partial, snap(2, pos=(2, 3)), ended(2)])
    event = sync.next_event(first=True)
    assert event.key == "2:3" and event.frame == 2


def test_require_move_waits_for_a_new_position():
    script = [
        snap(1, pos=(0, 0)),
        snap(2, pos=(0, 0), rewards=[-1]), # new frame, same place
        snap(3, pos=(0, 1), rewards=[-1]),
        ended(3),
    ]
    _, sync = _sync(list(script), require_move=True)
    sync.next_event(first=True)
    assert sync.next_event().frame == 3

    _, sync = _sync(list(script), require_move=False)
    sync.next_event(first=True)
    assert sync.next_event().frame == 2


def test_termination_drains_trailing_rewards():
    _, sync = _sync([snap(1, pos=(0, 0)), ended(1, rewards=[-1, 100])])
    sync.next_event(first=True)
    assert sync.next_event() == Terminated(99.0)


def test_no_video_frames_aborts():
    _, sync = _sync([
        snap(1, pos=(0, 0)),
        snap(2, pos=(1, 0), rewards=[-1], video=0),
        ended(2),
    ])
    sync.next_event(first=True)
    assert sync.next_event() == Aborted("no_frames")


def test_malformed_dequeued_observation_is_skipped(caplog):
    _, sync = _sync([
        snap(1, pos=(0, 0)),
        (snap(2, pos=(1, 0), rewards=[-1]), snap(2, raw='{"XPos": 1.5}', rewards=[-1])),
        ended(2),
    ])
    sync.next_event(first=True)
    with caplog.at_level(logging.WARNING):
        assert sync.next_event() == Skipped(-1.0)
    assert "ZPos" in caplog.text


def test_stalled_stream_gives_up_after_max_polls():
    client, sync = _sync([snap(1, pos=(0, 0))], max_polls=5)
    sync.next_event(first=True)
    peeks = client.peeks
    assert sync.next_event() == Aborted("stalled")
    assert client.peeks - peeks == 5


def test_poll_interval_sleeps_between_peeks():
    naps = []
    client = ScriptedClient([snap(1, raw="{}"), snap(2, raw="{}"), snap(3, pos=(0, 0)), ended(3)])
    sync = ObservationSynchronizer(client, SyncConfig(poll_interval=0.01), sleep=naps.append)
    sync.next_event(first=True)
    assert naps == [0.01, 0.01]


def test_environment_errors_are_logged_not_raised(caplog):
    _, sync = _sync([
        snap(1, pos=(0, 0), errors=["socket hiccup"]),
        ended(1, errors=["mission closed"]),
    ])
    with caplog.at_level(logging.WARNING):
        assert isinstance(sync.next_event(first=True), Fresh)
        assert isinstance(sync.next_event(), Terminated)
    assert "socket hiccup" in caplog.text
    assert "mission closed" in caplog.text


def test_reset_forgets_the_previous_episode():
    _, sync = _sync([snap(5, pos=(0, 0)), snap(1, pos=(0, 0)), ended(1)])
    sync.next_event(first=True)
    sync.reset()
    # a restarted mission counts frames from the beginning again
    assert sync.next_event(first=True).frame == 1
