"""
Click analytics: per-page session counters and the persisted weekly ROI ledger.
"""
import logging
import math
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .config import ROI_STATS_KEY

logger = logging.getLogger("autoaccept.analytics")

TERMINAL_KEYWORDS = ('run', 'execute', 'command', 'terminal')
SECONDS_PER_CLICK = 5
TIME_VARIANCE = 0.2

FILE_EDIT = 'file_edit'
TERMINAL_COMMAND = 'terminal_command'


def categorize_click(button_text: str) -> str:
    text = (button_text or '').lower()
    if any(keyword in text for keyword in TERMINAL_KEYWORDS):
        return TERMINAL_COMMAND
    return FILE_EDIT


def estimate_time_saved(clicks: int) -> Optional[str]:
    """Range estimate such as '1–2 minutes', or None when nothing was clicked."""
    if clicks <= 0:
        return None
    base_secs = clicks * SECONDS_PER_CLICK
    min_mins = max(1, math.floor((base_secs * (1 - TIME_VARIANCE)) / 60))
    max_mins = math.ceil((base_secs * (1 + TIME_VARIANCE)) / 60)
    return f"{min_mins}–{max_mins} minutes"


def format_time_saved(clicks: int) -> str:
    minutes = round(clicks * SECONDS_PER_CLICK / 60)
    if minutes >= 60:
        return f"{minutes / 60:.1f} hours"
    return f"{minutes} minutes"


@dataclass
class SessionStats:
    clicks: int = 0
    blocked: int = 0
    file_edits: int = 0
    terminal_commands: int = 0
    actions_while_away: int = 0
    is_window_focused: bool = True
    session_start_time: Optional[float] = None

    def begin(self, now: Optional[float] = None) -> None:
        if self.session_start_time is None:
            self.session_start_time = now if now is not None else time.time()

    def track_click(self, button_text: str) -> Dict:
        self.clicks += 1
        category = categorize_click(button_text)
        if category == TERMINAL_COMMAND:
            self.terminal_commands += 1
        else:
            self.file_edits += 1

        is_away = not self.is_window_focused
        if is_away:
            self.actions_while_away += 1
        logger.debug(f"Click tracked ({category}, away={is_away}). Total: {self.clicks}")
        return {"category": category, "is_away": is_away, "total_clicks": self.clicks}

    def track_blocked(self) -> None:
        self.blocked += 1
        logger.debug(f"Blocked. Total: {self.blocked}")

    def collect_and_clear(self, now: Optional[float] = None) -> Dict:
        collected = {
            "clicks": self.clicks,
            "blocked": self.blocked,
            "sessionStart": self.session_start_time,
        }
        self.clicks = 0
        self.blocked = 0
        self.session_start_time = now if now is not None else time.time()
        return collected

    def consume_away_actions(self) -> int:
        count = self.actions_while_away
        self.actions_while_away = 0
        return count

    def set_focus_state(self, focused: bool) -> None:
        was_away = not self.is_window_focused
        self.is_window_focused = focused
        logger.debug(f"Focus sync: focused={focused}, wasAway={was_away}")

    def snapshot(self) -> Dict:
        return {
            "clicks": self.clicks,
            "blocked": self.blocked,
            "sessionStart": self.session_start_time,
            "fileEdits": self.file_edits,
            "terminalCommands": self.terminal_commands,
            "actionsWhileAway": self.actions_while_away,
        }

    def summary(self) -> Dict:
        return {
            "clicks": self.clicks,
            "fileEdits": self.file_edits,
            "terminalCommands": self.terminal_commands,
            "blocked": self.blocked,
            "estimatedTimeSaved": estimate_time_saved(self.clicks),
        }


def week_start(now: Optional[datetime] = None) -> int:
    """Local Sunday 00:00 of the current week, in epoch milliseconds."""
    now = now or datetime.now()
    days_since_sunday = (now.weekday() + 1) % 7
    start = (now - timedelta(days=days_since_sunday)).replace(hour=0, minute=0, second=0, microsecond=0)
    return int(start.timestamp() * 1000)


@dataclass
class WeeklyROI:
    weekStart: int
    clicksThisWeek: int = 0
    blockedThisWeek: int = 0
    sessionsThisWeek: int = 0

    @property
    def time_saved_minutes(self) -> int:
        return round(self.clicksThisWeek * SECONDS_PER_CLICK / 60)

    def to_dict(self) -> Dict:
        return asdict(self)


class RoiLedger:
    """Weekly ROI totals kept in the shared store, rolled over at each new week."""

    def __init__(self, store, on_rollover: Callable[[WeeklyROI], None] = None,
                 clock: Callable[[], datetime] = datetime.now):
        self._store = store
        self._on_rollover = on_rollover
        self._clock = clock

    def load(self) -> WeeklyROI:
        current_week = week_start(self._clock())
        raw = self._store.get(ROI_STATS_KEY)
        stats = WeeklyROI(weekStart=current_week)
        if isinstance(raw, dict):
            stats = WeeklyROI(
                weekStart=raw.get('weekStart', current_week),
                clicksThisWeek=raw.get('clicksThisWeek', 0),
                blockedThisWeek=raw.get('blockedThisWeek', 0),
                sessionsThisWeek=raw.get('sessionsThisWeek', 0),
            )

        if stats.weekStart != current_week:
            logger.info("ROI stats: new week detected, summarizing and resetting.")
            if stats.clicksThisWeek > 0 and self._on_rollover:
                self._on_rollover(stats)
            stats = WeeklyROI(weekStart=current_week)
            self._store.set(ROI_STATS_KEY, stats.to_dict())
        return stats

    def add_collected(self, clicks: int, blocked: int) -> WeeklyROI:
        stats = self.load()
        if clicks > 0 or blocked > 0:
            stats.clicksThisWeek += clicks
            stats.blockedThisWeek += blocked
            self._store.set(ROI_STATS_KEY, stats.to_dict())
            logger.info(f"ROI stats collected: +{clicks} clicks, +{blocked} blocked "
                        f"(Total: {stats.clicksThisWeek} clicks, {stats.blockedThisWeek} blocked)")
        return stats

    def increment_sessions(self) -> WeeklyROI:
        stats = self.load()
        stats.sessionsThisWeek += 1
        self._store.set(ROI_STATS_KEY, stats.to_dict())
        logger.info(f"ROI stats: session count incremented to {stats.sessionsThisWeek}")
        return stats

    def report(self) -> Dict:
        stats = self.load()
        report = stats.to_dict()
        report["timeSavedMinutes"] = stats.time_saved_minutes
        report["timeSavedFormatted"] = format_time_saved(stats.clicksThisWeek)
        return report
