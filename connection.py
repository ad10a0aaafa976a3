"""
Request/response correlation over a persistent CDP websocket to a single target.
"""
import asyncio
import itertools
import json
import logging
from typing import Any, Callable, Dict, Optional

import websockets
from websockets.asyncio.client import connect

logger = logging.getLogger("autoaccept.connection")

DEFAULT_COMMAND_TIMEOUT = 2.0  # seconds


class CommandError(Exception):
    """The remote side answered a command with an error."""


class CommandTimeout(CommandError):
    """No answer arrived before the command deadline."""


class ConnectionClosed(CommandError):
    """The socket went away before (or while) the command was in flight."""


class ScriptError(CommandError):
    """A Runtime.evaluate call raised inside the page."""


class CommandChannel:
    """
    One channel per target socket. Every command gets a strictly increasing id and a
    pending future; the reader task completes whichever future matches an incoming id,
    so answers may arrive in any order. A future is completed at most once: an answer
    for an id that already timed out finds no pending entry and is dropped.
    """

    def __init__(self, ws, target_id: str, timeout: float = DEFAULT_COMMAND_TIMEOUT,
                 on_close: Optional[Callable[[str], None]] = None):
        self.target_id = target_id
        self.timeout = timeout
        self._ws = ws
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._on_close = on_close
        self._reader: Optional[asyncio.Task] = None
        self.closed = False

    @classmethod
    async def open(cls, target, timeout: float = DEFAULT_COMMAND_TIMEOUT,
                   on_close: Optional[Callable[[str], None]] = None) -> 'CommandChannel':
        """Connect to the target's debugger socket and start reading."""
        ws = await connect(target.ws_url, max_size=None, open_timeout=timeout, ping_interval=None)
        channel = cls(ws, target.id, timeout=timeout, on_close=on_close)
        channel.start()
        logger.info(f"Connected to target {target.id[:8]} ({target.kind}) {target.title[:50]!r}")
        return channel

    def start(self):
        if self._reader is None:
            self._reader = asyncio.create_task(self._read_loop())

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def send(self, method: str, params: Optional[Dict] = None, timeout: Optional[float] = None) -> Dict:
        if self.closed:
            raise ConnectionClosed(f"Connection to {self.target_id} is closed")

        msg_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future

        try:
            await self._ws.send(json.dumps({"id": msg_id, "method": method, "params": params or {}}))
        except websockets.exceptions.ConnectionClosed as e:
            self._pending.pop(msg_id, None)
            raise ConnectionClosed(f"Send failed on {self.target_id}: {e}") from e

        try:
            return await asyncio.wait_for(future, timeout if timeout is not None else self.timeout)
        except asyncio.TimeoutError:
            raise CommandTimeout(f"{method} (id={msg_id}) timed out on {self.target_id}") from None
        finally:
            self._pending.pop(msg_id, None)

    async def evaluate(self, expression: str, return_by_value: bool = True,
                       await_promise: bool = False, user_gesture: bool = False) -> Any:
        """Run a Runtime.evaluate and return the remote value. Raises ScriptError if the page threw."""
        result = await self.send('Runtime.evaluate', {
            "expression": expression,
            "returnByValue": return_by_value,
            "awaitPromise": await_promise,
            "userGesture": user_gesture,
        })
        details = result.get('exceptionDetails')
        if details:
            exception = details.get('exception') or {}
            raise ScriptError(f"{details.get('text', 'Uncaught')} {exception.get('description', '')}".strip())
        return (result.get('result') or {}).get('value')

    async def close(self):
        if self.closed:
            return
        try:
            await self._ws.close()
        finally:
            self._shutdown("closed locally")

    async def _read_loop(self):
        reason = "socket closed"
        try:
            async for raw in self._ws:
                self._dispatch(raw)
        except websockets.exceptions.ConnectionClosed as e:
            reason = f"socket closed ({e})"
        except OSError as e:
            reason = f"socket error ({e})"
            logger.warning(f"WS error on {self.target_id}: {e}")
        finally:
            self._shutdown(reason)

    def _dispatch(self, raw):
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring malformed message on {self.target_id}")
            return

        msg_id = message.get('id') if isinstance(message, dict) else None
        if msg_id is None:
            return  # protocol event, not a command reply
        future = self._pending.pop(msg_id, None)
        if future is None or future.done():
            logger.debug(f"Dropping late or unknown reply id={msg_id} on {self.target_id}")
            return
        if 'error' in message:
            error = message['error'] or {}
            future.set_exception(CommandError(error.get('message', str(error))))
        else:
            future.set_result(message.get('result') or {})

    def _shutdown(self, reason: str):
        if self.closed:
            return
        self.closed = True
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(ConnectionClosed(f"{self.target_id}: {reason}"))
        logger.info(f"Connection to {self.target_id[:8]} ended: {reason}")
        if self._on_close:
            self._on_close(self.target_id)
