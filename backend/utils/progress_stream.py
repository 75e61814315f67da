"""
Server-Sent Events progress stream.

The producer (an update or self-update run) pushes named events; the HTTP
handler drains them to the client. Pushing never blocks and never fails: a
slow or vanished client loses events, the run carries on.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 15


def format_sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


class ProgressStream:

    def __init__(self, max_pending: int = 1000, heartbeat: float = HEARTBEAT_SECONDS):
        self._queue: "asyncio.Queue[Optional[Tuple[str, Dict[str, Any]]]]" = asyncio.Queue(maxsize=max_pending)
        self.heartbeat = heartbeat
        self.closed = False

    async def send(self, event: str, data: Dict[str, Any]):
        if self.closed:
            return
        try:
            self._queue.put_nowait((event, data))
        except asyncio.QueueFull:
            logger.debug(f"Progress stream full, dropping {event} event")

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Make room for the end marker; the reader is far behind anyway
            self._queue.get_nowait()
            self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[str]:
        """SSE frames until close(), with comment heartbeats while idle."""
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=self.heartbeat)
            except asyncio.TimeoutError:
                yield ": heartbeat\n\n"
                continue
            if item is None:
                break
            yield format_sse(*item)
