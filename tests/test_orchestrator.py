import asyncio
from datetime import datetime

from autoaccept.config import BACKGROUND_MODE_KEY, GLOBAL_STATE_KEY, ROI_STATS_KEY, Settings
from autoaccept.discovery import Target
from autoaccept.lock import InstanceLock
from autoaccept.manager import ConnectionManager
from autoaccept.orchestrator import Orchestrator
from autoaccept.store import MemoryStore
from fakes import EventRecorder, make_opener


class FakeScanner:
    def __init__(self, targets):
        self.targets = targets
        self.calls = 0

    async def discover(self):
        self.calls += 1
        return list(self.targets)


class Clock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


TARGETS = [Target(id='P1', url='vscode-file://x', title='Cursor', kind='page',
                  ws_url='ws://127.0.0.1:9222/devtools/page/P1', port=9222)]


def _orchestrator(store=None, ide='cursor', clock=None, **kwargs):
    store = store if store is not None else MemoryStore()
    events = EventRecorder()
    orchestrator = Orchestrator(
        store,
        ide=ide,
        scanner=FakeScanner(TARGETS),
        manager=ConnectionManager(opener=make_opener({}), event_sink=events),
        lock=InstanceLock(store, ide, instance_id='me', clock=clock or Clock()),
        event_sink=events,
        **kwargs,
    )
    return orchestrator, events


def test_config_follows_settings_and_ide():
    store = MemoryStore()
    Settings(poll_frequency_ms=300, banned_commands=['x'], background=True).save(store)
    orchestrator, _ = _orchestrator(store, ide='Antigravity')
    config = orchestrator.config()
    assert config.mode == 'antigravity'
    assert config.background
    assert config.poll_interval_ms == 300
    assert config.banned_commands == ('x',)
    assert _orchestrator(ide='cursor')[0].config().mode == 'cursor'


def test_tick_syncs_and_writes_heartbeat():
    orchestrator, _ = _orchestrator()

    async def scenario():
        assert await orchestrator.tick()
        return orchestrator.manager.connection_count

    assert asyncio.run(scenario()) == 1
    assert orchestrator.store.get("cursor-instance-lock")["ownerId"] == 'me'
    assert orchestrator.last_targets == TARGETS


def test_standby_keeps_scanning_without_syncing_until_heartbeat_is_stale():
    clock = Clock()
    store = MemoryStore({"cursor-instance-lock": {"ownerId": "other", "lastHeartbeat": clock.now * 1000}})
    orchestrator, events = _orchestrator(store, clock=clock)

    async def scenario():
        assert not await orchestrator.tick()
        assert not await orchestrator.tick()
        assert orchestrator.manager.connection_count == 0
        assert orchestrator.scanner.calls == 2

        clock.now += 15
        assert await orchestrator.tick()
        return orchestrator.manager.connection_count

    assert asyncio.run(scenario()) == 1
    assert events.types().count("LOCK_STANDBY") == 1
    assert "LOCK_ACQUIRED" in events.types()


def test_entering_standby_stops_local_agents():
    clock = Clock()
    orchestrator, _ = _orchestrator(clock=clock)

    async def scenario():
        await orchestrator.tick()
        agent = orchestrator.manager.connections['P1'].agent
        orchestrator.store.set("cursor-instance-lock", {"ownerId": "other", "lastHeartbeat": clock.now * 1000})
        await orchestrator.tick()
        return agent

    assert not asyncio.run(scenario()).context.is_running


def test_collect_stats_moves_clicks_into_weekly_ledger():
    orchestrator, events = _orchestrator()

    async def scenario():
        await orchestrator.tick()
        stats = orchestrator.manager.connections['P1'].agent.context.stats
        stats.clicks, stats.blocked = 4, 1
        collected = await orchestrator.collect_stats()
        again = await orchestrator.collect_stats()
        return collected, again

    collected, again = asyncio.run(scenario())
    assert collected == {'clicks': 4, 'blocked': 1}
    assert again == {'clicks': 0, 'blocked': 0}
    roi = orchestrator.store.get(ROI_STATS_KEY)
    assert (roi['clicksThisWeek'], roi['blockedThisWeek']) == (4, 1)
    assert events.types().count("STATS_COLLECTED") == 1


def test_enable_and_disable():
    orchestrator, events = _orchestrator()

    async def scenario():
        await orchestrator.enable()
        assert orchestrator.is_polling
        await asyncio.sleep(0.01)
        stats = orchestrator.manager.connections['P1'].agent.context.stats
        stats.clicks, stats.file_edits = 2, 2
        await orchestrator.disable()
        return orchestrator.manager.connections['P1'].agent

    agent = asyncio.run(scenario())
    assert not orchestrator.is_polling
    assert orchestrator.store.get(GLOBAL_STATE_KEY) is False
    assert not agent.context.is_running
    roi = orchestrator.store.get(ROI_STATS_KEY)
    assert roi['sessionsThisWeek'] == 1
    assert roi['clicksThisWeek'] == 2
    assert "SESSION_SUMMARY" in events.types()


def test_start_resumes_when_persisted_enabled():
    store = MemoryStore({GLOBAL_STATE_KEY: True})
    orchestrator, _ = _orchestrator(store)

    async def scenario():
        await orchestrator.start()
        polling = orchestrator.is_polling
        await orchestrator.shutdown()
        return polling

    assert asyncio.run(scenario())
    assert not orchestrator.is_polling
    assert store.get("cursor-instance-lock") is None


def test_disabling_background_mode_hides_overlays():
    store = MemoryStore({BACKGROUND_MODE_KEY: True})
    orchestrator, _ = _orchestrator(store)

    async def scenario():
        await orchestrator.tick()
        channel = orchestrator.manager.connections['P1'].channel
        before = len(channel.evaluated)
        await orchestrator.set_background_mode(False)
        return channel.evaluated[before:]

    evaluated = asyncio.run(scenario())
    assert store.get(BACKGROUND_MODE_KEY) is False
    assert any('hideOverlay' in expression for expression in evaluated)


def test_settings_updates_persist_and_resync_while_polling():
    orchestrator, _ = _orchestrator()

    async def scenario():
        await orchestrator.enable()
        await asyncio.sleep(0.01)
        await orchestrator.set_banned_commands(['curl'])
        await orchestrator.set_poll_frequency(250)
        patterns = orchestrator.manager.connections['P1'].agent.context.banned_patterns
        await orchestrator.shutdown()
        return patterns

    assert asyncio.run(scenario()) == ['curl']
    settings = orchestrator.settings
    assert settings.banned_commands == ['curl']
    assert settings.poll_frequency_ms == 250


def test_focus_regained_reports_away_actions():
    orchestrator, events = _orchestrator()

    async def scenario():
        await orchestrator.tick()
        await orchestrator.set_focus_state(False)
        stats = orchestrator.manager.connections['P1'].agent.context.stats
        stats.track_click("Accept")
        await orchestrator.set_focus_state(True)

    asyncio.run(scenario())
    away = [data for event_type, data in events.events if event_type == "AWAY_ACTIONS"]
    assert away == [{"count": 1}]


def test_week_rollover_emits_weekly_summary():
    store = MemoryStore({ROI_STATS_KEY: {
        "weekStart": int(datetime(2020, 1, 5).timestamp() * 1000),
        "clicksThisWeek": 30,
        "blockedThisWeek": 0,
        "sessionsThisWeek": 2,
    }})
    orchestrator, events = _orchestrator(store)
    orchestrator.roi.load()
    summary = [data for event_type, data in events.events if event_type == "WEEKLY_SUMMARY"]
    assert summary[0]["clicksThisWeek"] == 30
    assert summary[0]["timeSavedMinutes"] == 2
    assert store.get(ROI_STATS_KEY)["clicksThisWeek"] == 0


class FlakyStore(MemoryStore):
    """Refuses the next write while ``fail_next`` is set."""

    def __init__(self, initial=None, fail_next=False):
        super().__init__(initial)
        self.fail_next = fail_next
        self.failures = 0

    def set(self, key, value):
        if self.fail_next:
            self.fail_next = False
            self.failures += 1
            raise PermissionError(f"cannot write {key}")
        super().set(key, value)


def test_tick_loop_survives_store_errors():
    store = FlakyStore(fail_next=True)
    orchestrator, _ = _orchestrator(store)
    orchestrator.TICK_INTERVAL = 0.01

    async def scenario():
        task = asyncio.create_task(orchestrator._tick_loop())
        await asyncio.sleep(0.1)
        alive = not task.done()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return alive

    assert asyncio.run(scenario())
    assert store.failures == 1
    assert orchestrator.scanner.calls >= 1
    assert orchestrator.manager.connection_count == 1


def test_stats_loop_survives_store_errors():
    store = FlakyStore()
    orchestrator, events = _orchestrator(store)
    orchestrator.STATS_INTERVAL = 0.01

    async def scenario():
        await orchestrator.tick()
        stats = orchestrator.manager.connections['P1'].agent.context.stats
        stats.clicks = 3
        store.fail_next = True
        task = asyncio.create_task(orchestrator._stats_loop())
        await asyncio.sleep(0.03)
        stats.clicks = 2
        await asyncio.sleep(0.05)
        alive = not task.done()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return alive

    assert asyncio.run(scenario())
    assert store.failures == 1
    # The batch that hit the failed write is lost; later batches still land.
    assert store.get(ROI_STATS_KEY)['clicksThisWeek'] == 2
    assert "STATS_COLLECTED" in events.types()
