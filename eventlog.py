"""
JSON-lines event log. Events are queued from anywhere on the loop and appended
to the session file by a single writer task.
"""
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger("autoaccept.eventlog")

DEFAULT_LOG_DIR = Path.home() / ".autoaccept" / "logs"


def get_log_path(session_id: str, prefix: str = None) -> Path:
    filename = f"{session_id}.jsonl"
    if not prefix:
        return DEFAULT_LOG_DIR / filename
    prefix_path = Path(prefix).expanduser()
    return (prefix_path / filename) if prefix.endswith('/') else prefix_path.parent / f"{prefix_path.name}_{filename}"


class EventLog:
    def __init__(self, prefix: str = None, session_id: str = None):
        self.session_id = session_id or datetime.now().strftime("%Y%m%d_%H%M%S")
        self.path = get_log_path(self.session_id, prefix)
        self.is_logging = False
        self._queue: Optional[asyncio.Queue] = None
        self._writer_task: Optional[asyncio.Task] = None

    def start(self, **session_info):
        """Open the session file and start the writer. Must run inside the event loop."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._queue = asyncio.Queue()
        self.is_logging = True
        if self._writer_task:
            self._writer_task.cancel()
        self._writer_task = asyncio.create_task(self._writer())
        self.log_event("SESSION_START", dict(session_info, log_file=str(self.path)))
        logger.info(f"Event log: {self.path}")

    def log_event(self, event_type: str, data: dict):
        if not self.is_logging:
            return
        self._queue.put_nowait({
            "timestamp": datetime.now().isoformat(),
            "type": event_type,
            "data": data,
        })

    __call__ = log_event

    async def _writer(self):
        while True:
            try:
                event = await self._queue.get()
                with open(self.path, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(event, default=str) + '\n')
                self._queue.task_done()
            except asyncio.CancelledError:
                break
            except OSError as e:
                logger.warning(f"Could not write event log {self.path}: {e}")
                self._queue.task_done()

    async def close(self):
        """Flush whatever is queued, then stop the writer."""
        if not self._writer_task:
            return
        self.is_logging = False
        await self._queue.join()
        self._writer_task.cancel()
        self._writer_task = None
