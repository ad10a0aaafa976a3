"""
Pure click classification over candidate element descriptors reported by the page bridge.
"""
import re
from dataclasses import dataclass
from typing import Dict

MAX_TEXT_LENGTH = 50
CLICK_COOLDOWN = 5.0  # seconds

ACCEPT_PATTERNS = (
    'accept', 'run', 'retry', 'apply', 'execute', 'confirm', 'allow once', 'allow',
    'ok', 'yes', 'continue', 'proceed', 'approve', 'submit', 'save', 'done',
)
REJECT_PATTERNS = (
    'skip', 'reject', 'cancel', 'close', 'refine', 'dismiss', 'no', 'decline',
    'deny', 'back', 'undo', 'revert',
)
COMMAND_PATTERNS = ('run command', 'execute', 'run')

_SHORTCUT_HINT_RE = re.compile(r'\s*(alt|ctrl|cmd|shift)\s*\+\s*\w+', re.IGNORECASE)
_ZERO_WIDTH_RE = re.compile('[\u200b-\u200d\ufeff]')
_WHITESPACE_RE = re.compile(r'\s+')


@dataclass(frozen=True)
class Candidate:
    """A clickable-looking element as seen through the page bridge."""
    key: int
    text: str
    visible: bool = True
    interactable: bool = True
    disabled: bool = False
    overflow: bool = False  # text was longer than the bridge reports


@dataclass(frozen=True)
class TextVerdict:
    accepted: bool
    text: str
    reason: str
    is_command: bool = False


def normalize_text(raw: str) -> str:
    text = (raw or '').strip().lower()
    text = _SHORTCUT_HINT_RE.sub('', text).strip()
    text = _ZERO_WIDTH_RE.sub('', text)
    return _WHITESPACE_RE.sub(' ', text)


def classify_text(raw: str, overflow: bool = False) -> TextVerdict:
    """
    Decide from visible text alone whether a control confirms an action.
    Rejection keywords win over acceptance keywords.
    """
    text = normalize_text(raw)
    if not text:
        return TextVerdict(False, text, 'empty')
    if overflow or len(text) > MAX_TEXT_LENGTH:
        return TextVerdict(False, text, 'too long')
    if any(r in text for r in REJECT_PATTERNS):
        return TextVerdict(False, text, 'reject keyword')
    if not any(p in text for p in ACCEPT_PATTERNS):
        return TextVerdict(False, text, 'no accept keyword')
    is_command = any(c in text for c in COMMAND_PATTERNS)
    return TextVerdict(True, text, 'accept keyword', is_command=is_command)


def is_clickable(candidate: Candidate) -> bool:
    return candidate.visible and candidate.interactable and not candidate.disabled


class ClickCooldown:
    """Remembers when each element key was last clicked."""

    def __init__(self, window: float = CLICK_COOLDOWN):
        self.window = window
        self._last_click: Dict[int, float] = {}

    def ready(self, key: int, now: float) -> bool:
        last = self._last_click.get(key)
        return last is None or (now - last) >= self.window

    def mark(self, key: int, now: float) -> None:
        self._last_click[key] = now
        self._prune(now)

    def _prune(self, now: float) -> None:
        expired = [k for k, t in self._last_click.items() if now - t >= self.window]
        for key in expired:
            del self._last_click[key]
