"""
Periodic driver: scan, connect, inject and configure on a fixed tick, collect stats
into the weekly ledger, and defer to another local instance that holds the lock.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from .agent import AgentConfig, CURSOR, ANTIGRAVITY
from .analytics import RoiLedger, WeeklyROI, format_time_saved
from .config import Settings
from .connection import CommandError
from .discovery import Target, TargetScanner
from .lock import InstanceLock
from .manager import ConnectionManager

logger = logging.getLogger("autoaccept.orchestrator")


class Orchestrator:
    TICK_INTERVAL = 5.0
    STATS_INTERVAL = 30.0

    def __init__(self, store, ide: str = 'cursor', scanner: Optional[TargetScanner] = None,
                 manager: Optional[ConnectionManager] = None, lock: Optional[InstanceLock] = None,
                 event_sink: Optional[Callable[[str, Dict], None]] = None, shortcut: bool = False):
        self.store = store
        self.ide = ide
        self.scanner = scanner or TargetScanner()
        self.manager = manager or ConnectionManager(event_sink=event_sink)
        self.lock = lock or InstanceLock(store, ide)
        self.roi = RoiLedger(store, on_rollover=self._on_week_rollover)
        self.shortcut = shortcut
        self.last_targets: List[Target] = []
        self._event_sink = event_sink
        self._tasks: List[asyncio.Task] = []

    @property
    def settings(self) -> Settings:
        return Settings.load(self.store)

    @property
    def mode(self) -> str:
        return CURSOR if self.ide.lower() == CURSOR else ANTIGRAVITY

    @property
    def is_polling(self) -> bool:
        return bool(self._tasks)

    def config(self, settings: Optional[Settings] = None) -> AgentConfig:
        settings = settings or self.settings
        return AgentConfig(
            mode=self.mode,
            background=settings.background,
            poll_interval_ms=settings.poll_frequency_ms,
            banned_commands=tuple(settings.banned_commands),
        )

    # -- tick ---------------------------------------------------------------

    async def tick(self) -> bool:
        """One scan/sync pass. Returns False when another instance holds the lock."""
        was_standby = self.lock.standby
        if not self.lock.check():
            if not was_standby:
                self._emit("LOCK_STANDBY", {"key": self.lock.key})
                await self.manager.stop_all()
            # Keep scanning so the switch back is quick once the holder goes away.
            self.last_targets = await self.scanner.discover()
            return False
        if was_standby:
            self._emit("LOCK_ACQUIRED", {"key": self.lock.key, "instance": self.lock.instance_id})

        self.last_targets = await self.scanner.discover()
        logger.debug(f"Tick: {len(self.last_targets)} target(s), {self.manager.connection_count} connection(s)")
        await self.manager.sync(self.last_targets, self.config())

        if self.shortcut:
            await self.manager.send_accept_shortcut()
        await self.manager.log_diagnostics()
        return True

    async def _tick_loop(self):
        while True:
            try:
                await self.tick()
            except CommandError as e:
                logger.warning(f"Tick failed, retrying next cycle: {e}")
            except Exception:
                logger.exception("Tick crashed, retrying next cycle")
            await asyncio.sleep(self.TICK_INTERVAL)

    async def _stats_loop(self):
        while True:
            await asyncio.sleep(self.STATS_INTERVAL)
            try:
                await self.collect_stats()
                await self.check_away_actions()
            except CommandError as e:
                logger.warning(f"Stats collection failed: {e}")
            except Exception:
                logger.exception("Stats collection crashed, retrying next cycle")

    # -- lifecycle ------------------------------------------------------------

    async def start(self):
        """Resume polling if the persisted flag says we were enabled."""
        self.roi.load()
        if self.settings.enabled:
            self.roi.increment_sessions()
            self._start_polling()

    async def enable(self):
        settings = self.settings
        settings.enabled = True
        settings.save(self.store)
        if self.is_polling:
            return
        self.roi.increment_sessions()
        self._start_polling()
        logger.info("Auto Accept enabled")

    async def disable(self):
        settings = self.settings
        settings.enabled = False
        settings.save(self.store)
        if not self.is_polling:
            return
        await self._stop_polling()

        summary = self.manager.get_session_summary()
        if summary['clicks'] > 0:
            self._emit("SESSION_SUMMARY", summary)
            logger.info(f"Session summary: {summary['clicks']} click(s), {summary['fileEdits']} file edit(s), "
                        f"{summary['terminalCommands']} command(s), {summary['blocked']} blocked, "
                        f"~{summary['estimatedTimeSaved']} saved")
        await self.collect_stats()
        await self.manager.stop_all()
        logger.info("Auto Accept disabled")

    async def shutdown(self):
        await self._stop_polling()
        await self.collect_stats()
        await self.manager.disconnect_all()
        self.lock.release()

    def _start_polling(self):
        self._tasks = [
            asyncio.create_task(self._tick_loop()),
            asyncio.create_task(self._stats_loop()),
        ]
        logger.info(f"Polling started (ide={self.ide}, every {self.TICK_INTERVAL:g}s)")

    async def _stop_polling(self):
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -- analytics ------------------------------------------------------------

    async def collect_stats(self) -> Dict:
        collected = self.manager.reset_stats()
        stats = self.roi.add_collected(collected['clicks'], collected['blocked'])
        if collected['clicks'] or collected['blocked']:
            self._emit("STATS_COLLECTED", dict(collected, week=stats.to_dict()))
        return collected

    async def check_away_actions(self) -> int:
        count = self.manager.get_away_actions()
        if count > 0:
            logger.info(f"{count} action(s) were auto-accepted while you were away")
            self._emit("AWAY_ACTIONS", {"count": count})
        return count

    async def set_focus_state(self, focused: bool):
        self.manager.set_focus_state(focused)
        if focused:
            await self.check_away_actions()

    def _on_week_rollover(self, stats: WeeklyROI):
        logger.info(f"Last week: {stats.clicksThisWeek} click(s), {stats.blockedThisWeek} blocked, "
                    f"{stats.sessionsThisWeek} session(s), ~{format_time_saved(stats.clicksThisWeek)} saved")
        self._emit("WEEKLY_SUMMARY", dict(stats.to_dict(), timeSavedMinutes=stats.time_saved_minutes))

    # -- settings -------------------------------------------------------------

    async def set_poll_frequency(self, ms: int):
        settings = self.settings
        settings.poll_frequency_ms = ms
        settings.save(self.store)
        await self._resync()

    async def set_banned_commands(self, patterns: List[str]):
        settings = self.settings
        settings.banned_commands = list(patterns)
        settings.save(self.store)
        await self._resync()

    async def set_background_mode(self, enabled: bool):
        settings = self.settings
        settings.background = enabled
        settings.save(self.store)
        if not enabled:
            await self.manager.hide_overlay()
        await self._resync()

    async def _resync(self):
        if not self.is_polling:
            return
        try:
            await self.tick()
        except CommandError as e:
            logger.warning(f"Resync failed, next tick will retry: {e}")

    def _emit(self, event_type: str, data: Dict):
        if self._event_sink:
            self._event_sink(event_type, data)
