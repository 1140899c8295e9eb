"""
Server-push transport for measurement messages.

Each message is a `data: <compact JSON>` line followed by a blank line. The
supervisor side only ever calls `emit`, which never blocks: messages are
queued on an unbounded channel and drained by the HTTP response. Once the
channel is closed, normally or by an observer disconnect, later emits are
dropped silently.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, Iterable, Iterator, Optional

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data:"


def encode_event(payload: Dict[str, Any]) -> str:
    return f"{DATA_PREFIX} {json.dumps(payload, separators=(',', ':'))}\n\n"


def parse_sse_lines(lines: Iterable[str]) -> Iterator[Dict[str, Any]]:
    """
    Yield decoded payloads from an iterable of wire lines. Multi-line `data`
    fields are joined; comment lines and undecodable payloads are skipped.
    """
    pending = []
    for raw in lines:
        line = raw.rstrip("\r\n") if isinstance(raw, str) else raw.decode("utf-8").rstrip("\r\n")
        if line.startswith(DATA_PREFIX):
            pending.append(line[len(DATA_PREFIX):].lstrip())
            continue
        if line == "" and pending:
            body = "\n".join(pending)
            pending = []
            try:
                payload = json.loads(body)
            except json.JSONDecodeError:
                LOGGER.debug(f"Skipping undecodable stream message: {body[:120]}")
                continue
            if isinstance(payload, dict):
                yield payload
    if pending:
        try:
            payload = json.loads("\n".join(pending))
        except json.JSONDecodeError:
            return
        if isinstance(payload, dict):
            yield payload


class StreamTransport:
    """
    One observer channel.

    Parameters
    ----------
    request_id : str
        Used to prefix log messages.
    on_disconnect : callable, optional
        Invoked synchronously, at most once, when the observer goes away
        before the channel was closed normally.
    """

    _CLOSE = object()

    def __init__(self, request_id: str = "-", on_disconnect: Optional[Callable[[], None]] = None):
        self.request_id = request_id
        self._on_disconnect = on_disconnect
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._disconnected = False
        self._sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def disconnected(self) -> bool:
        return self._disconnected

    @property
    def sent(self) -> int:
        return self._sent

    def emit(self, payload: Dict[str, Any]) -> bool:
        """Queue a message; returns False when it was dropped."""
        if self._closed:
            LOGGER.debug(f"[{self.request_id}] Dropping {payload.get('type')!r} message, channel closed")
            return False
        self._queue.put_nowait(encode_event(payload))
        self._sent += 1
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSE)

    def disconnect(self) -> None:
        """
        The observer went away. Closes the channel and fires the disconnect
        callback before returning.
        """
        if self._disconnected or self._closed:
            self._closed = True
            return
        self._disconnected = True
        self._closed = True
        self._queue.put_nowait(self._CLOSE)
        LOGGER.info(f"[{self.request_id}] Observer disconnected")
        if self._on_disconnect is not None:
            self._on_disconnect()

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is self._CLOSE:
                return
            yield frame
