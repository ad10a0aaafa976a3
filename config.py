"""
Persisted controller settings.
"""
from dataclasses import dataclass, field
from typing import List

GLOBAL_STATE_KEY = 'auto-accept-enabled-global'
FREQ_STATE_KEY = 'auto-accept-frequency'
BANNED_COMMANDS_KEY = 'auto-accept-banned-commands'
BACKGROUND_MODE_KEY = 'auto-accept-background-mode'
ROI_STATS_KEY = 'auto-accept-roi-stats'

DEFAULT_POLL_FREQUENCY_MS = 1000

DEFAULT_BANNED_COMMANDS = [
    'rm -rf /',
    'rm -rf ~',
    'rm -rf *',
    'format c:',
    'del /f /s /q',
    'rmdir /s /q',
    ':(){:|:&};:',
    'dd if=',
    'mkfs.',
    '> /dev/sda',
    'chmod -R 777 /',
]


@dataclass
class Settings:
    enabled: bool = False
    poll_frequency_ms: int = DEFAULT_POLL_FREQUENCY_MS
    banned_commands: List[str] = field(default_factory=lambda: list(DEFAULT_BANNED_COMMANDS))
    background: bool = False

    @classmethod
    def load(cls, store) -> 'Settings':
        banned = store.get(BANNED_COMMANDS_KEY, DEFAULT_BANNED_COMMANDS)
        return cls(
            enabled=bool(store.get(GLOBAL_STATE_KEY, False)),
            poll_frequency_ms=int(store.get(FREQ_STATE_KEY, DEFAULT_POLL_FREQUENCY_MS)),
            banned_commands=list(banned) if isinstance(banned, list) else [],
            background=bool(store.get(BACKGROUND_MODE_KEY, False)),
        )

    def save(self, store) -> None:
        store.set(GLOBAL_STATE_KEY, self.enabled)
        store.set(FREQ_STATE_KEY, self.poll_frequency_ms)
        store.set(BANNED_COMMANDS_KEY, list(self.banned_commands))
        store.set(BACKGROUND_MODE_KEY, self.background)
