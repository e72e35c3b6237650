import logging

import numpy as np
import pytest

from qagent.episode import AgentMemory, finish, play_episode, repeat, run_episode, step
from qagent.qlearner import TabularQAgent
from qagent.synchronizer import ObservationSynchronizer, SyncConfig
from scripted import ScriptedClient, ended, snap

ACTIONS = ("left", "right")


def _agent(**kwargs):
    params = dict(epsilon=0.0, alpha=0.5, gamma=1.0, seed=7)
    params.update(kwargs)
    return TabularQAgent(ACTIONS, **params)


def _walk_script():
    # -1 for every intermediate step, +10 when the mission ends
    return [
        snap(1, pos=(0, 0)),
        snap(2, pos=(1, 0), rewards=[-1]),
        snap(3, pos=(2, 0), rewards=[-1]),
        ended(3, rewards=[10]),
    ]


def test_golden_episode():
    client = ScriptedClient(_walk_script())
    agent = _agent()
    result = play_episode(client, agent)

    assert result.outcome == "terminated"
    assert result.total_reward == pytest.approx(8.0)
    assert result.steps == 2
    assert len(client.commands) == 3

    # alpha=0.5, gamma=1: two intermediate updates off zero rows, one terminal update
    expected = {"0:0": -0.5, "1:0": -0.5, "2:0": 5.0}
    table = agent.get_q_table()
    assert set(table) == set(expected)
    for (key, value), command in zip(expected.items(), client.commands):
        row = np.zeros(len(ACTIONS))
        row[ACTIONS.index(command)] = value
        assert table[key] == pytest.approx(row)


def test_run_episode_returns_total_reward():
    assert run_episode(ScriptedClient(_walk_script()), _agent()) == pytest.approx(8.0)


def test_memory_is_fully_set_or_unset():
    assert not AgentMemory.empty().is_set
    assert AgentMemory.remember("0:0", 1).is_set
    with pytest.raises(ValueError):
        AgentMemory(state="0:0")
    with pytest.raises(ValueError):
        AgentMemory(action=0)


def test_terminal_update_applies_once():
    agent = _agent()
    agent.q_table.get_or_init("s")
    memory = finish(agent, AgentMemory.remember("s", 1), 10.0)
    assert memory.consumed
    again = finish(agent, memory, 10.0)
    assert again is memory
    # a second application would give 7.5
    assert agent.q_table.value("s", 1) == pytest.approx(5.0)


def test_finish_without_a_decision_is_a_noop():
    agent = _agent()
    assert finish(agent, AgentMemory.empty(), 3.0) == AgentMemory.empty()
    assert len(agent.q_table) == 0


def test_step_learns_then_acts():
    client = ScriptedClient([])
    agent = _agent()
    agent.q_table.get_or_init("a")
    memory = step(agent, client, AgentMemory.remember("a", 0), "b", -2.0)
    assert agent.q_table.value("a", 0) == pytest.approx(-1.0)
    assert memory.state == "b"
    assert client.commands == [agent.command(memory.action)]


def test_step_from_empty_memory_only_acts():
    client = ScriptedClient([])
    agent = _agent()
    memory = step(agent, client, AgentMemory.empty(), "b", -2.0)
    assert memory.is_set and len(client.commands) == 1
    assert np.all(agent.get_q_table()["b"] == 0.0)


def test_malformed_tick_carries_its_reward():
    client = ScriptedClient([
        snap(1, pos=(0, 0)),
        (snap(2, pos=(1, 0), rewards=[-1]), snap(2, raw='{"ZPos": 0.5}', rewards=[-1])),
        snap(3, pos=(1, 0), rewards=[-1]),
        ended(3),
    ])
    agent = _agent()
    result = play_episode(client, agent)

    assert result.skipped == 1
    assert result.steps == 1
    assert result.total_reward == pytest.approx(-2.0)
    first = ACTIONS.index(client.commands[0])
    # the lost tick repeats the last command so the world keeps moving
    assert len(client.commands) == 3
    assert client.commands[1] == client.commands[0]
    # both rewards land on the one transition that followed the decision
    assert agent.q_table.value("0:0", first) == pytest.approx(-1.0)


def test_no_frames_ends_episode_without_terminal_update():
    client = ScriptedClient([
        snap(1, pos=(0, 0)),
        snap(2, pos=(1, 0), rewards=[-1]),
        snap(3, pos=(2, 0), rewards=[-1], video=0),
        ended(3, rewards=[10]),
    ])
    agent = _agent()
    result = play_episode(client, agent)

    assert result.outcome == "no_frames"
    assert result.total_reward == pytest.approx(-1.0)
    assert result.steps == 1
    # the decision taken in 1:0 never gets an update
    assert np.all(agent.get_q_table()["1:0"] == 0.0)


def test_stalled_environment_ends_episode():
    client = ScriptedClient([snap(1, pos=(0, 0))])
    sync = ObservationSynchronizer(client, SyncConfig(max_polls=10))
    result = play_episode(client, _agent(), sync)
    assert result.outcome == "stalled"
    assert result.total_reward == 0.0


def test_mission_over_before_first_observation():
    client = ScriptedClient([ended(0, rewards=[1])])
    result = play_episode(client, _agent())
    assert result.outcome == "ended_before_start"
    assert result.total_reward == pytest.approx(1.0)
    assert client.commands == []


def test_evaluation_mode_leaves_table_untouched():
    agent = _agent(training=False)
    result = play_episode(ScriptedClient(_walk_script()), agent)
    assert result.total_reward == pytest.approx(8.0)
    assert len(agent.q_table) == 0


def test_environment_errors_do_not_stop_the_episode(caplog):
    script = _walk_script()
    script[1] = snap(2, pos=(1, 0), rewards=[-1], errors=["lost a packet"])
    with caplog.at_level(logging.WARNING):
        result = play_episode(ScriptedClient(script), _agent())
    assert result.outcome == "terminated"
    assert "lost a packet" in caplog.text


def test_synchronizer_is_reset_between_episodes():
    agent = _agent()
    sync = None
    for _ in range(2):
        client = ScriptedClient(_walk_script())
        if sync is None:
            sync = ObservationSynchronizer(client)
        sync.client = client
        assert play_episode(client, agent, sync).steps == 2


def test_placeholder_dequeue_does_not_stall_the_episode():
    client = ScriptedClient([
        snap(1, pos=(0, 0)),
        (snap(2, pos=(1, 0), rewards=[-1]), snap(2, raw="{}", rewards=[-1])),
        snap(3, pos=(2, 0), rewards=[-1]),
        ended(3, rewards=[10]),
    ])
    sync = ObservationSynchronizer(client, SyncConfig(max_polls=50))
    result = play_episode(client, _agent(), sync)
    assert result.outcome == "terminated"
    assert result.skipped == 1
    assert len(client.commands) == 3


def test_repeat_leaves_an_empty_memory_silent():
    client = ScriptedClient([])
    repeat(_agent(), client, AgentMemory.empty())
    assert client.commands == []
