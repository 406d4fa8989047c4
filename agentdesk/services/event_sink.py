"""Event sinks — where the stream relay pushes client-facing events.

The relay only knows the three operations of ``EventSink``. The SSE sink
below frames them as ``data: <json>\\n\\n`` lines and hands them to the HTTP
response through a queue; other transports can implement the same protocol.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any, Protocol


class ClientDisconnected(Exception):
    """The receiving side of a sink has gone away."""


class EventSink(Protocol):
    async def fragment(self, text: str) -> None:
        """Forward one token fragment."""

    async def complete(self, usage: dict[str, Any], **extra: Any) -> None:
        """Send the terminal success event."""

    async def error(self, message: str) -> None:
        """Send the terminal error event."""

    async def close(self) -> None:
        """Release the transport. Idempotent."""


def format_event(payload: dict[str, Any]) -> str:
    """Format a single server-sent event line."""
    return f"data: {json.dumps(payload, ensure_ascii=False, default=str)}\n\n"


_CLOSED = object()


class SSEEventSink:
    """Queue-backed sink consumed by a ``StreamingResponse`` body iterator."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._disconnected = False

    def _put(self, frame: Any) -> None:
        if self._disconnected:
            raise ClientDisconnected("Client is no longer reading the stream")
        if not self._closed:
            self._queue.put_nowait(frame)

    async def fragment(self, text: str) -> None:
        self._put(format_event({"token": text}))

    async def complete(self, usage: dict[str, Any], **extra: Any) -> None:
        self._put(format_event({"complete": True, "usage": usage, **extra}))

    async def error(self, message: str) -> None:
        self._put(format_event({"error": message}))

    async def close(self) -> None:
        if not self._closed:
            self._queue.put_nowait(_CLOSED)
            self._closed = True

    def disconnect(self) -> None:
        """Mark the reader as gone; further writes raise ``ClientDisconnected``."""
        self._disconnected = True

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is _CLOSED:
                return
            yield frame
