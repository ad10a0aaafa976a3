import asyncio

import pytest

from autoaccept.agent import (
    CLICK_SELECTORS, DONE, WORKING, AgentConfig, AntigravityStrategy, RemoteAgent, deduplicate_names,
    strip_time_suffix,
)
from autoaccept.bridge import Tab
from autoaccept.classifier import Candidate
from autoaccept.connection import CommandTimeout
from fakes import EventRecorder, FakeBridge


@pytest.fixture(autouse=True)
def fast_loops(monkeypatch):
    monkeypatch.setattr(RemoteAgent, 'CLICK_SETTLE_DELAY', 0)
    monkeypatch.setattr(RemoteAgent, 'CYCLE_DELAY', 0.01)
    monkeypatch.setattr(RemoteAgent, 'DISAPPEAR_TIMEOUT', 0.02)
    monkeypatch.setattr(RemoteAgent, 'DISAPPEAR_POLL', 0.005)
    monkeypatch.setattr(AntigravityStrategy, 'new_conversation_delay', 0)
    monkeypatch.setattr(AntigravityStrategy, 'focus_settle_delay', 0)


class Clock:
    def __init__(self, now=100):
        self.now = now

    def __call__(self):
        return self.now


def test_config_payload_and_loop_mode():
    config = AgentConfig(mode='antigravity', background=True, poll_interval_ms=500, banned_commands=('rm -rf /',))
    assert config.to_dict() == {
        "mode": "antigravity",
        "isBackgroundMode": True,
        "pollIntervalMs": 500,
        "bannedCommands": ["rm -rf /"],
    }
    assert config.loop_mode == 'antigravity'
    assert AgentConfig(mode='cursor', background=True).loop_mode == 'cursor'
    assert AgentConfig(mode='whatever', background=True).loop_mode == 'antigravity'
    assert AgentConfig(mode='antigravity').loop_mode == 'simple'


def test_same_element_clicked_once_per_cooldown_window():
    clock = Clock()
    bridge = FakeBridge([Candidate(1, "Accept")])
    agent = RemoteAgent(bridge, clock=clock)

    async def scenario():
        assert await agent.perform_click(CLICK_SELECTORS) == 1
        clock.now = 104
        assert await agent.perform_click(CLICK_SELECTORS) == 0
        clock.now = 105
        assert await agent.perform_click(CLICK_SELECTORS) == 1

    asyncio.run(scenario())
    assert bridge.clicked == [1, 1]
    assert agent.get_stats()['clicks'] == 2


def test_non_accept_and_unclickable_candidates_are_left_alone():
    bridge = FakeBridge([
        Candidate(1, "Cancel"),
        Candidate(2, "Open settings"),
        Candidate(3, "Accept", disabled=True),
        Candidate(4, "Accept", visible=False),
        Candidate(5, "Accept", overflow=True),
        Candidate(6, "Apply"),
    ])
    agent = RemoteAgent(bridge)
    assert asyncio.run(agent.perform_click(CLICK_SELECTORS)) == 1
    assert bridge.clicked == [6]


def test_banned_command_is_blocked_and_counted():
    events = EventRecorder()
    bridge = FakeBridge(
        [Candidate(1, "Run command"), Candidate(2, "Run")],
        commands={1: "sudo rm -rf /tmp/x", 2: "npm test"},
    )
    agent = RemoteAgent(bridge, event_sink=events, page_id='p1')
    agent.update_banned_commands(["rm -rf /"])

    assert asyncio.run(agent.perform_click(CLICK_SELECTORS)) == 1
    assert bridge.clicked == [2]
    stats = agent.get_stats()
    assert stats['blocked'] == 1
    assert stats['terminalCommands'] == 1
    assert events.types() == ["BLOCKED", "CLICK"]
    assert events.events[0][1]["pattern"] == "rm -rf /"
    assert events.events[0][1]["page_id"] == "p1"


def test_command_without_context_is_allowed():
    bridge = FakeBridge([Candidate(1, "Run")])
    agent = RemoteAgent(bridge)
    agent.update_banned_commands(["rm -rf /"])
    assert asyncio.run(agent.perform_click(CLICK_SELECTORS)) == 1


def test_click_that_stays_visible_still_counts():
    events = EventRecorder()
    bridge = FakeBridge([Candidate(1, "Accept")], stays_visible=True)
    agent = RemoteAgent(bridge, event_sink=events)
    assert asyncio.run(agent.perform_click(CLICK_SELECTORS)) == 1
    assert events.events[0][1]["disappeared"] is False


def test_start_is_idempotent_for_same_mode_and_background():
    async def scenario():
        agent = RemoteAgent(FakeBridge())
        config = AgentConfig(mode='cursor', poll_interval_ms=10)
        assert agent.start(config)
        generation = agent.context.generation

        assert not agent.start(AgentConfig(mode='cursor', poll_interval_ms=20, banned_commands=('x',)))
        assert agent.context.generation == generation
        assert agent.context.banned_patterns == ['x']

        assert agent.start(AgentConfig(mode='cursor', background=True))
        assert agent.context.generation == generation + 1
        assert not agent.is_current(generation)
        agent.stop()
        await asyncio.sleep(0.05)
        return agent

    agent = asyncio.run(scenario())
    assert not agent.context.is_running
    assert agent.running_tasks == 0


def test_old_generation_loop_exits_at_next_boundary():
    async def scenario():
        bridge = FakeBridge([Candidate(1, "Accept")])
        agent = RemoteAgent(bridge)
        agent.context.is_running = True
        agent.context.generation = 1
        old_loop = asyncio.create_task(agent.simple_loop(1, 0.01))
        await asyncio.sleep(0.03)
        agent.context.generation = 2
        await asyncio.wait_for(old_loop, 1.0)
        return bridge

    bridge = asyncio.run(scenario())
    assert bridge.clicked == [1]
    assert bridge.hidden == 1


def test_stop_hides_overlay_unless_told_not_to():
    async def scenario():
        bridge = FakeBridge()
        agent = RemoteAgent(bridge)
        agent.stop()
        agent.stop(hide_overlay=False)
        await asyncio.sleep(0)
        return bridge

    assert asyncio.run(scenario()).hidden == 1


def test_tab_names():
    assert strip_time_suffix("Fix login bug 3m") == "Fix login bug"
    assert strip_time_suffix("Refactor  12s ") == "Refactor"
    assert strip_time_suffix("Plan 2024") == "Plan 2024"
    assert deduplicate_names(["a", "b", "a", "a"]) == ["a", "b", "a (2)", "a (3)"]


def test_antigravity_loop_tracks_tabs_and_completion():
    async def scenario():
        bridge = FakeBridge(
            [Candidate(1, "Accept")],
            tabs=[Tab(10, "Fix bug 3m"), Tab(11, "Fix bug"), Tab(12, "Refactor 10s")],
            badges=1,
        )
        agent = RemoteAgent(bridge)
        agent.start(AgentConfig(mode='antigravity', background=True))
        await asyncio.sleep(0.1)
        agent.stop(hide_overlay=False)
        await asyncio.sleep(0.03)
        return agent, bridge

    agent, bridge = asyncio.run(scenario())
    assert bridge.shown == [AntigravityStrategy.panel_selector]
    assert agent.context.tab_names == ["Fix bug", "Fix bug (2)", "Refactor"]
    assert bridge.focused[:3] == [10, 11, 12]
    assert agent.context.status_of("Fix bug") == DONE
    # The completion badge suppresses clicking.
    assert bridge.clicked == []
    names, statuses = bridge.overlay_updates[0]
    assert names == ["Fix bug", "Fix bug (2)", "Refactor"]
    assert statuses == {"Fix bug": DONE, "Fix bug (2)": WORKING, "Refactor": WORKING}


def test_cursor_loop_clicks_between_tab_rotations():
    async def scenario():
        bridge = FakeBridge([Candidate(1, "Accept")], tabs=[Tab(10, "Chat 1m")])
        agent = RemoteAgent(bridge)
        agent.start(AgentConfig(mode='cursor', background=True))
        await asyncio.sleep(0.1)
        agent.stop(hide_overlay=False)
        await asyncio.sleep(0.03)
        return agent, bridge

    agent, bridge = asyncio.run(scenario())
    assert bridge.clicked == [1]
    assert agent.context.tab_names == ["Chat"]
    assert agent.context.status_of("Chat") == WORKING


def test_focus_and_away_actions():
    bridge = FakeBridge([Candidate(1, "Accept")])
    agent = RemoteAgent(bridge)
    agent.set_focus_state(False)
    asyncio.run(agent.perform_click(CLICK_SELECTORS))
    assert agent.get_away_actions() == 1
    assert agent.get_away_actions() == 0
    assert agent.get_session_summary()['estimatedTimeSaved'] == "1–1 minutes"
    assert agent.reset_stats()['clicks'] == 1
    assert agent.get_stats()['clicks'] == 0


def test_restart_keeps_session_stats():
    async def scenario():
        agent = RemoteAgent(FakeBridge())
        agent.start(AgentConfig(mode='cursor', poll_interval_ms=10))
        generation = agent.context.generation
        stats = agent.context.stats
        stats.clicks, stats.blocked = 7, 2
        session_start = stats.session_start_time

        assert agent.start(AgentConfig(mode='antigravity', background=True))
        assert agent.context.generation == generation + 1
        agent.stop(hide_overlay=False)
        await asyncio.sleep(0.05)
        return agent, session_start

    agent, session_start = asyncio.run(scenario())
    snapshot = agent.get_stats()
    assert (snapshot['clicks'], snapshot['blocked']) == (7, 2)
    assert snapshot['sessionStart'] == session_start


def test_failed_visibility_check_still_tracks_click_and_continues():
    events = EventRecorder()
    bridge = FakeBridge(
        [Candidate(1, "Accept"), Candidate(2, "Apply")],
        visibility_error=CommandTimeout("Runtime.evaluate timed out"),
    )
    agent = RemoteAgent(bridge, event_sink=events)

    assert asyncio.run(agent.perform_click(CLICK_SELECTORS)) == 2
    assert bridge.clicked == [1, 2]
    assert agent.get_stats()['clicks'] == 2
    assert [data["disappeared"] for _, data in events.events] == [False, False]


def test_click_on_vanished_element_is_not_counted():
    events = EventRecorder()
    bridge = FakeBridge([Candidate(1, "Accept"), Candidate(2, "Apply")], gone_keys={1})
    agent = RemoteAgent(bridge, event_sink=events)

    assert asyncio.run(agent.perform_click(CLICK_SELECTORS)) == 1
    assert bridge.clicked == [1, 2]
    assert agent.get_stats()['clicks'] == 1
    assert events.types() == ["CLICK"]
