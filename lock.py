"""
Cross-process instance lock for one IDE flavor, kept as a heartbeat record in the
shared store.
"""
import logging
import time
import uuid
from typing import Callable, Optional

logger = logging.getLogger("autoaccept.lock")

STALE_AFTER = 15.0  # seconds


def lock_key(ide: str) -> str:
    return f"{ide.lower()}-instance-lock"


class InstanceLock:
    """
    Checked once per tick. Another owner with a heartbeat younger than ``stale_after``
    puts this instance into standby; otherwise it writes its own heartbeat and holds
    the lock until its next check.
    """

    def __init__(self, store, ide: str, instance_id: Optional[str] = None,
                 stale_after: float = STALE_AFTER, clock: Callable[[], float] = time.time):
        self.store = store
        self.key = lock_key(ide)
        self.instance_id = instance_id or f"{uuid.uuid4().hex[:12]}-{int(clock() * 1000)}"
        self.stale_after = stale_after
        self.standby = False
        self._clock = clock

    def check(self) -> bool:
        """True when this instance may sync this tick."""
        now_ms = int(self._clock() * 1000)
        record = self.store.get(self.key)

        if isinstance(record, dict):
            owner = record.get('ownerId')
            heartbeat = record.get('lastHeartbeat') or 0
            if owner and owner != self.instance_id and now_ms - heartbeat < self.stale_after * 1000:
                if not self.standby:
                    logger.info(f"Another instance ({owner}) holds {self.key}; entering standby")
                self.standby = True
                return False

        self.store.set(self.key, {"ownerId": self.instance_id, "lastHeartbeat": now_ms})
        if self.standby:
            logger.info(f"Acquired {self.key}; leaving standby")
        self.standby = False
        return True

    def release(self):
        record = self.store.get(self.key)
        if isinstance(record, dict) and record.get('ownerId') == self.instance_id:
            self.store.set(self.key, None)
            logger.debug(f"Released {self.key}")
