"""Async event bus bridging run-manager events to UI consumers.

Adapter callbacks can fire on any thread, so ``publish`` never touches
the queue directly: every event is handed to the owning loop with
``call_soon_threadsafe``, which keeps them in publish order.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from extcli.adapters.events import RunEvent, dict_to_event

logger = logging.getLogger(__name__)


class RunEventBus:
    """Async queue of RunEvents, fed from any thread."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[RunEvent] = asyncio.Queue(maxsize=maxsize)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind the bus to the loop its consumers run on."""
        self._loop = loop

    def _resolve_loop(self) -> asyncio.AbstractEventLoop | None:
        if self._loop is None:
            try:
                self._loop = asyncio.get_running_loop()
            except RuntimeError:
                return None
        return self._loop

    def publish(self, data: dict[str, Any]) -> None:
        """Queue an event dict. Safe to call from any thread."""
        if self._closed:
            return
        loop = self._resolve_loop()
        if loop is None or loop.is_closed():
            logger.debug("RunEventBus has no loop, dropping: %s", data.get("event"))
            return
        event = dict_to_event(data)
        loop.call_soon_threadsafe(self._enqueue, event)

    def _enqueue(self, event: RunEvent) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error(
                "RunEventBus queue full, dropping: %s (queue size: %d)",
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[RunEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
                yield event
            except asyncio.TimeoutError:
                continue

    def get_nowait(self) -> RunEvent | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True
