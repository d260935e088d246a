from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator, Optional, Protocol

_CLOSED = object()


class ProgressProtocolError(RuntimeError):
    pass


class EventSink(Protocol):
    def emit(self, event: dict[str, Any]) -> None:
        ...

    def close(self) -> None:
        ...


class BufferedEventSink:
    """Collects events in memory."""

    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.closed = False

    def emit(self, event: dict[str, Any]) -> None:
        self.events.append(event)

    def close(self) -> None:
        self.closed = True

    def types(self) -> list[str]:
        return [event["type"] for event in self.events]


class QueueEventSink:
    """Hands events to a consumer coroutine through an unbounded asyncio queue."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def emit(self, event: dict[str, Any]) -> None:
        self.queue.put_nowait(event)

    def close(self) -> None:
        self.queue.put_nowait(_CLOSED)

    async def drain(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            event = await self.queue.get()
            if event is _CLOSED:
                return
            yield event


def encode_sse(data: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(data, separators=(',', ':'), default=str)}\n\n".encode("utf-8")


class ProgressReporter:
    """
    Emits the typed events of one job and refuses out-of-order use.

    Sequence: one ``start``; per item a ``progress`` with ``current`` counting
    up from 1 followed by exactly one ``item_complete`` or ``item_error``; then
    a single ``complete`` or ``error``, after which nothing else may be sent.
    """

    def __init__(self, sink: EventSink) -> None:
        self.sink = sink
        self.total: Optional[int] = None
        self.current = 0
        self.item_resolved = True
        self.current_item_id: Optional[str] = None
        self.terminated = False

    def _send(self, event: dict[str, Any]) -> None:
        if self.terminated:
            raise ProgressProtocolError(f"Cannot emit '{event['type']}' after the stream terminated")
        self.sink.emit(event)

    def start(self, total: int) -> None:
        if self.total is not None:
            raise ProgressProtocolError("start already emitted")
        self.total = total
        self._send({"type": "start", "total": total})

    def progress(self, message: str, *, item_id: str) -> int:
        if self.total is None:
            raise ProgressProtocolError("progress before start")
        if not self.item_resolved:
            raise ProgressProtocolError(f"item {self.current_item_id} has no outcome yet")
        if self.current >= self.total:
            raise ProgressProtocolError("progress beyond total")
        self.current += 1
        self.item_resolved = False
        self.current_item_id = item_id
        self._send(
            {"type": "progress", "current": self.current, "total": self.total, "message": message, "itemId": item_id}
        )
        return self.current

    def _resolve(self, item_id: str) -> None:
        if self.item_resolved or item_id != self.current_item_id:
            raise ProgressProtocolError(f"no open item {item_id}")
        self.item_resolved = True

    def item_complete(
        self,
        *,
        item_id: str,
        before_size: tuple[int, int],
        after_size: tuple[int, int],
        new_image_uri: str,
        new_image_id: str,
        outcome: str,
        model: Optional[str],
    ) -> None:
        self._resolve(item_id)
        self._send(
            {
                "type": "item_complete",
                "itemId": item_id,
                "beforeSize": {"width": before_size[0], "height": before_size[1]},
                "afterSize": {"width": after_size[0], "height": after_size[1]},
                "newImageUri": new_image_uri,
                "newImageId": new_image_id,
                "outcome": outcome,
                "model": model,
            }
        )

    def item_error(self, *, item_id: str, message: str) -> None:
        self._resolve(item_id)
        self._send({"type": "item_error", "itemId": item_id, "message": message})

    def complete(self, *, succeeded_count: int, results: list[dict[str, Any]]) -> None:
        if self.total is None:
            raise ProgressProtocolError("complete before start")
        if self.current != self.total or not self.item_resolved:
            raise ProgressProtocolError("complete before every item reached an outcome")
        self._send(
            {"type": "complete", "succeededCount": succeeded_count, "total": self.total, "results": results}
        )
        self.terminated = True
        self.sink.close()

    def error(self, message: str) -> None:
        self._send({"type": "error", "message": message})
        self.terminated = True
        self.sink.close()

    def close(self) -> None:
        """Close the sink without a terminal event; used when the consumer went away."""
        if not self.terminated:
            self.terminated = True
            self.sink.close()
