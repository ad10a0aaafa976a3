"""
Owns the live page connections: opens them, injects the page bridge once per
connection and pushes the agent configuration on every sync.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

import websockets
from deepdiff import DeepDiff

from .agent import AgentConfig, RemoteAgent
from .analytics import estimate_time_saved
from .bridge import PageBridge, get_bridge_script
from .connection import CommandChannel, CommandError, ScriptError
from .discovery import Target

logger = logging.getLogger("autoaccept.manager")

DIAGNOSTICS_INTERVAL = 10.0  # seconds

_STAT_FIELDS = ('clicks', 'blocked', 'fileEdits', 'terminalCommands', 'actionsWhileAway')
_SUMMARY_FIELDS = ('clicks', 'fileEdits', 'terminalCommands', 'blocked')


@dataclass
class Connection:
    target: Target
    channel: CommandChannel
    agent: RemoteAgent
    injected: bool = False
    connected_at: float = field(default_factory=time.time)


class ScriptInjector:
    """Evaluates the bridge script in a page exactly once per connection."""

    def __init__(self, script: Optional[str] = None):
        self.script = script or get_bridge_script()

    async def ensure(self, connection: Connection) -> bool:
        if connection.injected:
            return True
        page_id = connection.target.id
        logger.debug(f"Injecting bridge ({len(self.script)} chars) into {page_id}")
        try:
            await connection.channel.evaluate(self.script, return_by_value=False,
                                              await_promise=True, user_gesture=True)
        except ScriptError as e:
            logger.warning(f"Injection exception on {page_id}: {e}")
            return False
        except CommandError as e:
            logger.info(f"Injection into {page_id} failed, will retry: {e}")
            return False
        connection.injected = True
        logger.info(f"Injected bridge into {page_id}")
        return True


Opener = Callable[..., Awaitable[CommandChannel]]


class ConnectionManager:
    """At most one Connection per target id. Closed sockets drop their entry silently."""

    def __init__(self, injector: Optional[ScriptInjector] = None, opener: Opener = CommandChannel.open,
                 event_sink: Optional[Callable[[str, Dict], None]] = None):
        self.injector = injector or ScriptInjector()
        self.connections: Dict[str, Connection] = {}
        self._opener = opener
        self._event_sink = event_sink
        self._lock = asyncio.Lock()
        self._last_config: Optional[Dict] = None
        self._last_diagnostics = 0.0
        self._logged_mismatch = False

    @property
    def connection_count(self) -> int:
        return len(self.connections)

    async def sync(self, targets: List[Target], config: AgentConfig):
        async with self._lock:
            self._note_config(config)
            for target in targets:
                if not target.has_dom:
                    logger.debug(f"Skipping worker {target.id} (no DOM)")
                    continue
                connection = self.connections.get(target.id)
                if connection is None:
                    connection = await self.connect(target)
                    if connection is None:
                        continue
                if not await self.injector.ensure(connection):
                    continue
                connection.agent.start(config)

    async def connect(self, target: Target) -> Optional[Connection]:
        try:
            channel = await self._opener(target, on_close=self._handle_close)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            logger.info(f"Could not connect to {target.id}: {e}")
            return None
        if channel.closed:
            return None

        agent = RemoteAgent(PageBridge(channel), event_sink=self._event_sink, page_id=target.id[:8])
        connection = Connection(target=target, channel=channel, agent=agent)
        self.connections[target.id] = connection
        self._emit("TARGET_CONNECTED", {"id": target.id, "kind": target.kind, "title": target.title[:80]})
        return connection

    def _handle_close(self, target_id: str):
        connection = self.connections.pop(target_id, None)
        if connection is None:
            return
        connection.agent.stop(hide_overlay=False)
        self._emit("TARGET_DISCONNECTED", {"id": target_id})

    def _note_config(self, config: AgentConfig):
        current = config.to_dict()
        if self._last_config is not None:
            diff = DeepDiff(self._last_config, current, ignore_order=False)
            if diff:
                changes = {path: change.get('new_value') for path, change in diff.get('values_changed', {}).items()}
                for key in ('iterable_item_added', 'iterable_item_removed', 'type_changes'):
                    if key in diff:
                        changes[key] = len(diff[key])
                logger.info(f"Agent configuration changed: {changes}")
                self._emit("CONFIG_CHANGED", {"changes": {k: str(v) for k, v in changes.items()}})
        self._last_config = current

    async def stop_all(self):
        for connection in list(self.connections.values()):
            connection.agent.stop()

    async def disconnect_all(self):
        for connection in list(self.connections.values()):
            connection.agent.stop(hide_overlay=False)
            try:
                await connection.channel.close()
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.debug(f"Error closing {connection.target.id}: {e}")
        self.connections.clear()

    # -- aggregated agent queries ------------------------------------------

    def get_stats(self) -> Dict:
        totals = dict.fromkeys(_STAT_FIELDS, 0)
        for connection in self.connections.values():
            stats = connection.agent.get_stats()
            for key in _STAT_FIELDS:
                totals[key] += stats.get(key, 0)
        return totals

    def reset_stats(self) -> Dict:
        """Collect-and-clear across every page."""
        totals = {'clicks': 0, 'blocked': 0}
        for connection in self.connections.values():
            collected = connection.agent.reset_stats()
            totals['clicks'] += collected.get('clicks', 0)
            totals['blocked'] += collected.get('blocked', 0)
        return totals

    def get_session_summary(self) -> Dict:
        summary = dict.fromkeys(_SUMMARY_FIELDS, 0)
        for connection in self.connections.values():
            page_summary = connection.agent.get_session_summary()
            for key in _SUMMARY_FIELDS:
                summary[key] += page_summary.get(key, 0)
        summary['estimatedTimeSaved'] = estimate_time_saved(summary['clicks'])
        return summary

    def get_away_actions(self) -> int:
        return sum(connection.agent.get_away_actions() for connection in self.connections.values())

    def set_focus_state(self, focused: bool):
        for connection in self.connections.values():
            connection.agent.set_focus_state(focused)
        logger.info(f"Focus state pushed to all pages: {focused}")

    async def hide_overlay(self):
        for connection in list(self.connections.values()):
            try:
                await connection.agent.bridge.hide_overlay()
            except CommandError as e:
                logger.debug(f"Could not hide overlay on {connection.target.id}: {e}")

    # -- extras -------------------------------------------------------------

    async def log_diagnostics(self, force: bool = False):
        now = time.monotonic()
        if not force and self._last_diagnostics and now - self._last_diagnostics < DIAGNOSTICS_INTERVAL:
            return
        self._last_diagnostics = now

        for page_id, connection in list(self.connections.items()):
            if not connection.injected:
                continue
            try:
                diag = await connection.agent.bridge.diagnostics()
            except CommandError as e:
                logger.debug(f"[DIAG] {page_id[:8]}: {e}")
                continue
            ctx = connection.agent.context
            logger.debug(f"[DIAG] Page {page_id[:8]} URL: {diag.get('url', 'unknown')}")
            logger.debug(f"[DIAG]   Documents: {diag.get('documents', 0)}, Elements: {diag.get('totalElements', 0)}, "
                         f"Buttons: {diag.get('buttons', 0)}, ShadowRoots: {diag.get('shadowRoots', 0)}")
            logger.debug(f"[DIAG]   Agent: running={ctx.is_running}, mode={ctx.mode}, generation={ctx.generation}")
            for i, el in enumerate(diag.get('acceptElements', []), 1):
                logger.debug(f"[DIAG]     {i}. <{el.get('tag')}> {el.get('text')!r} "
                             f"shadow={el.get('inShadow')} visible={el.get('visible')}")

    async def send_accept_shortcut(self) -> bool:
        """Alt+G on the first page, unless that page is a plain VS Code window."""
        connection = next(iter(self.connections.values()), None)
        if connection is None:
            return False
        channel = connection.channel
        try:
            title = await channel.evaluate('document.title') or ''
            if 'Visual Studio Code' in title and not any(name in title for name in ('Antigravity', 'BornSupercharged')):
                if not self._logged_mismatch:
                    logger.warning(f"Skipping shortcut: target appears to be VS Code ({title!r})")
                    self._logged_mismatch = True
                return False
            for event_type, modifiers, key, code, vk in (
                ('keyDown', 1, 'Alt', 'AltLeft', 18),
                ('keyDown', 1, 'g', 'KeyG', 71),
                ('keyUp', 1, 'g', 'KeyG', 71),
                ('keyUp', 0, 'Alt', 'AltLeft', 18),
            ):
                await channel.send('Input.dispatchKeyEvent', {
                    "type": event_type,
                    "modifiers": modifiers,
                    "key": key,
                    "code": code,
                    "windowsVirtualKeyCode": vk,
                })
        except CommandError as e:
            logger.debug(f"Accept shortcut failed: {e}")
            return False
        return True

    def _emit(self, event_type: str, data: Dict):
        if self._event_sink:
            self._event_sink(event_type, data)
