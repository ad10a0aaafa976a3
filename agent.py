"""
The per-page automation agent.

Each connected page gets one RemoteAgent. It owns a long-lived SessionContext and runs
its loop bodies as asyncio tasks that read and click the DOM through the PageBridge.
The only cancellation signal is the context's generation counter: a loop started for
generation g keeps going while the agent is running and the generation is still g.
"""
import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set, Tuple

from .analytics import SessionStats
from .banned import find_banned_pattern
from .classifier import ClickCooldown, classify_text, is_clickable
from .connection import CommandError

logger = logging.getLogger("autoaccept.agent")

WORKING = 'working'
DONE = 'done'

SIMPLE = 'simple'
CURSOR = 'cursor'
ANTIGRAVITY = 'antigravity'

CLICK_SELECTORS = [
    'button',
    '[class*="button"]',
    '[class*="Button"]',
    '[class*="anysphere"]',
    '[role="button"]',
    '[data-testid*="accept"]',
    '[data-testid*="button"]',
    'div[tabindex="0"]',
    'span[tabindex="0"]',
    '[class*="action"]',
    '[class*="Action"]',
    '[class*="primary"]',
    '[class*="Primary"]',
    '[class*="confirm"]',
    '[class*="Confirm"]',
    '[class*="accept"]',
    '[class*="Accept"]',
    '[class*="apply"]',
    '[class*="Apply"]',
    '[class*="run"]',
    '[class*="Run"]',
]

_TIME_SUFFIX_RE = re.compile(r'\s*\d+[smh]$')


@dataclass(frozen=True)
class AgentConfig:
    """What the controller pushes to every page on each sync."""
    mode: str = CURSOR
    background: bool = False
    poll_interval_ms: int = 1000
    banned_commands: Tuple[str, ...] = ()

    @property
    def loop_mode(self) -> str:
        if not self.background:
            return SIMPLE
        return CURSOR if self.mode == CURSOR else ANTIGRAVITY

    def to_dict(self) -> Dict:
        return {
            "mode": self.mode,
            "isBackgroundMode": self.background,
            "pollIntervalMs": self.poll_interval_ms,
            "bannedCommands": list(self.banned_commands),
        }


@dataclass
class SessionContext:
    is_running: bool = False
    generation: int = 0
    mode: Optional[str] = None
    background: bool = False
    banned_patterns: List[str] = field(default_factory=list)
    tab_names: List[str] = field(default_factory=list)
    completion_status: Dict[str, str] = field(default_factory=dict)
    stats: SessionStats = field(default_factory=SessionStats)

    def status_of(self, name: str) -> str:
        return self.completion_status.get(name, WORKING)


def strip_time_suffix(text: str) -> str:
    return _TIME_SUFFIX_RE.sub('', (text or '').strip()).strip()


def deduplicate_names(names: List[str]) -> List[str]:
    counts: Dict[str, int] = {}
    result = []
    for name in names:
        if name not in counts:
            counts[name] = 1
            result.append(name)
        else:
            counts[name] += 1
            result.append(f"{name} ({counts[name]})")
    return result


class ConversationStrategy:
    """Selectors and completion rule for one IDE's multi-conversation layout."""
    name = 'base'
    click_selectors: List[str] = CLICK_SELECTORS
    tab_selectors: List[str] = []
    panel_selector: Optional[str] = None
    focus_settle_delay = 0.0

    async def should_click(self, bridge) -> bool:
        return True

    async def before_tab_scan(self, bridge) -> None:
        return None

    async def is_done(self, bridge) -> bool:
        return False


class CursorStrategy(ConversationStrategy):
    name = CURSOR
    tab_selectors = [
        r'#workbench\.parts\.auxiliarybar ul[role="tablist"] li[role="tab"]',
        '.monaco-pane-view .monaco-list-row[role="listitem"]',
        'div[role="tablist"] div[role="tab"]',
        '.chat-session-item',
    ]
    panel_selector = r'#workbench\.parts\.auxiliarybar'


class AntigravityStrategy(ConversationStrategy):
    """A conversation is done once its feedback badge ("Good"/"Bad") shows up."""
    name = ANTIGRAVITY
    click_selectors = ['.bg-ide-button-background'] + CLICK_SELECTORS
    tab_selectors = ['button.grow']
    panel_selector = r'#antigravity\.agentPanel'
    new_conversation_selector = "[data-tooltip-id='new-conversation-tooltip']"
    badge_texts = ['Good', 'Bad']
    new_conversation_delay = 1.0
    focus_settle_delay = 1.5

    async def _has_badge(self, bridge) -> bool:
        return await bridge.count_text('span', self.badge_texts) > 0

    async def should_click(self, bridge) -> bool:
        if await self._has_badge(bridge):
            logger.debug("Skipping clicks: conversation already has a feedback badge")
            return False
        return True

    async def before_tab_scan(self, bridge) -> None:
        if await bridge.click_first(self.new_conversation_selector):
            logger.debug("Clicked new conversation button")
        await asyncio.sleep(self.new_conversation_delay)

    async def is_done(self, bridge) -> bool:
        return await self._has_badge(bridge)


STRATEGIES = {CURSOR: CursorStrategy, ANTIGRAVITY: AntigravityStrategy}


class RemoteAgent:
    CLICK_SETTLE_DELAY = 0.8
    CYCLE_DELAY = 3.0
    DISAPPEAR_TIMEOUT = 0.5
    DISAPPEAR_POLL = 0.05

    def __init__(self, bridge, context: Optional[SessionContext] = None,
                 event_sink: Optional[Callable[[str, Dict], None]] = None,
                 clock: Callable[[], float] = time.monotonic, page_id: str = ''):
        self.bridge = bridge
        self.context = context or SessionContext()
        self.page_id = page_id
        self._event_sink = event_sink
        self._clock = clock
        self._cooldown = ClickCooldown()
        self._tasks: Set[asyncio.Task] = set()
        self.context.stats.begin()
        self.context.stats.is_window_focused = True

    # -- entry points -----------------------------------------------------

    def start(self, config: AgentConfig) -> bool:
        """
        Start (or restart) the loop for this config. Returns False when already running
        with the same mode and background flag, in which case nothing changes.
        """
        ctx = self.context
        self.update_banned_commands(config.banned_commands)

        if ctx.is_running and ctx.mode == config.mode and ctx.background == config.background:
            logger.debug(f"[{self.page_id}] Already running with same config, skipping")
            return False

        if ctx.is_running:
            logger.info(f"[{self.page_id}] Retiring generation {ctx.generation}")
        ctx.is_running = True
        ctx.mode = config.mode
        ctx.background = config.background
        ctx.generation += 1
        ctx.stats.begin()
        generation = ctx.generation

        logger.info(f"[{self.page_id}] Agent started (mode={config.mode}, background={config.background}, "
                    f"generation={generation})")
        self._spawn(self._run(generation, config))
        return True

    def stop(self, hide_overlay: bool = True) -> None:
        self.context.is_running = False
        if hide_overlay:
            self._spawn(self._hide_overlay())
        logger.info(f"[{self.page_id}] Agent stopped")

    def get_stats(self) -> Dict:
        return self.context.stats.snapshot()

    def reset_stats(self) -> Dict:
        return self.context.stats.collect_and_clear()

    def get_session_summary(self) -> Dict:
        return self.context.stats.summary()

    def get_away_actions(self) -> int:
        return self.context.stats.consume_away_actions()

    def set_focus_state(self, focused: bool) -> None:
        self.context.stats.set_focus_state(focused)

    def update_banned_commands(self, patterns) -> None:
        self.context.banned_patterns = list(patterns) if patterns else []

    # -- loop machinery ---------------------------------------------------

    @property
    def running_tasks(self) -> int:
        return len(self._tasks)

    def is_current(self, generation: int) -> bool:
        return self.context.is_running and self.context.generation == generation

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _sleep(self, seconds: float, generation: int) -> bool:
        await asyncio.sleep(max(seconds, 0))
        return self.is_current(generation)

    async def _hide_overlay(self):
        try:
            await self.bridge.hide_overlay()
        except CommandError as e:
            logger.debug(f"[{self.page_id}] Could not hide overlay: {e}")

    async def _run(self, generation: int, config: AgentConfig):
        try:
            if config.loop_mode == SIMPLE:
                await self.simple_loop(generation, config.poll_interval_ms / 1000)
            else:
                await self.conversation_loop(generation, STRATEGIES[config.loop_mode]())
        except Exception:
            logger.exception(f"[{self.page_id}] Loop for generation {generation} crashed")

    async def simple_loop(self, generation: int, interval: float):
        await self._hide_overlay()
        logger.debug(f"[{self.page_id}] Simple poll loop started (generation {generation})")
        while self.is_current(generation):
            try:
                await self.perform_click(CLICK_SELECTORS)
            except CommandError as e:
                logger.debug(f"[{self.page_id}] Poll failed: {e}")
            if not await self._sleep(interval, generation):
                break
        logger.debug(f"[{self.page_id}] Simple poll loop stopped (generation {generation})")

    async def conversation_loop(self, generation: int, strategy: ConversationStrategy):
        try:
            await self.bridge.show_overlay(strategy.panel_selector)
        except CommandError as e:
            logger.debug(f"[{self.page_id}] Could not show overlay: {e}")

        logger.info(f"[{self.page_id}] {strategy.name} loop started (generation {generation})")
        index = 0
        cycle = 0
        while self.is_current(generation):
            cycle += 1
            try:
                if await strategy.should_click(self.bridge):
                    clicked = await self.perform_click(strategy.click_selectors)
                    logger.debug(f"[{self.page_id}] Cycle {cycle}: clicked {clicked}")
                if not await self._sleep(self.CLICK_SETTLE_DELAY, generation):
                    break

                await strategy.before_tab_scan(self.bridge)
                tabs = await self.bridge.find_tabs(strategy.tab_selectors)
                names = self.update_tab_names([t.text for t in tabs])

                focused_name = None
                if tabs:
                    position = index % len(tabs)
                    focused_name = names[position]
                    await self.bridge.focus_tab(tabs[position].key)
                    index += 1

                if strategy.focus_settle_delay and not await self._sleep(strategy.focus_settle_delay, generation):
                    break
                if focused_name and await strategy.is_done(self.bridge):
                    self.set_completion(focused_name, DONE)

                await self.bridge.update_overlay(self.context.tab_names, {
                    name: self.context.status_of(name) for name in self.context.tab_names
                })
            except CommandError as e:
                logger.debug(f"[{self.page_id}] Cycle {cycle} failed: {e}")

            if not await self._sleep(self.CYCLE_DELAY, generation):
                break
        logger.info(f"[{self.page_id}] {strategy.name} loop stopped (generation {generation})")

    def update_tab_names(self, raw_texts: List[str]) -> List[str]:
        names = deduplicate_names([strip_time_suffix(text) for text in raw_texts])
        if names != self.context.tab_names:
            logger.debug(f"[{self.page_id}] Detected {len(names)} tabs: {', '.join(names)}")
            self.context.tab_names = names
        return names

    def set_completion(self, name: str, status: str) -> None:
        current = self.context.completion_status.get(name)
        if current != status:
            logger.info(f"[{self.page_id}] {name}: {current} -> {status}")
            self.context.completion_status[name] = status

    # -- clicking ---------------------------------------------------------

    async def perform_click(self, selectors: List[str]) -> int:
        """Click every actionable candidate not clicked within the cooldown window."""
        candidates = await self.bridge.scan(selectors)
        now = self._clock()
        clicked = 0

        for candidate in candidates:
            if not self._cooldown.ready(candidate.key, now):
                continue
            verdict = classify_text(candidate.text, candidate.overflow)
            if not verdict.accepted:
                continue
            if verdict.is_command and await self._is_command_banned(candidate, verdict.text):
                continue
            if not is_clickable(candidate):
                logger.debug(f"[{self.page_id}] Not clickable: {verdict.text[:20]!r}")
                continue

            logger.info(f"[{self.page_id}] Clicking: {candidate.text.strip()[:50]!r}")
            self._cooldown.mark(candidate.key, now)
            if not await self.bridge.click(candidate.key):
                logger.debug(f"[{self.page_id}] Element {candidate.key} is gone, click not counted")
                continue
            disappeared = await self._wait_for_disappear(candidate.key)
            # A control that stays visible (e.g. a dropdown item) still counts.
            self.context.stats.track_click(candidate.text)
            clicked += 1
            self._emit("CLICK", {"text": candidate.text.strip()[:150], "disappeared": disappeared})

        return clicked

    async def _is_command_banned(self, candidate, text: str) -> bool:
        command_text = await self.bridge.command_text(candidate.key)
        pattern = find_banned_pattern(command_text, self.context.banned_patterns)
        if pattern is None:
            return False
        self.context.stats.track_blocked()
        logger.warning(f"[{self.page_id}] Skipping {text!r}: command matches banned pattern {pattern!r}")
        self._emit("BLOCKED", {"button": text, "pattern": pattern, "command": command_text[:150]})
        return True

    async def _wait_for_disappear(self, key: int) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.DISAPPEAR_TIMEOUT
        await asyncio.sleep(self.DISAPPEAR_POLL)
        while True:
            try:
                visible = await self.bridge.is_visible(key)
            except CommandError as e:
                logger.debug(f"[{self.page_id}] Visibility check failed: {e}")
                return False
            if not visible:
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.DISAPPEAR_POLL)

    def _emit(self, event_type: str, data: Dict):
        if self._event_sink:
            data = dict(data, page_id=self.page_id)
            self._event_sink(event_type, data)
