"""
Discrete engine lifecycle events published for presentation layers.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

log = logging.getLogger(__name__)


class EngineEventKind(Enum):
    """What happened to an engine version."""

    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    PROGRESS = "progress"
    VERIFYING = "verifying"
    INSTALLED = "installed"
    FAILED = "failed"
    EVICTED = "evicted"


@dataclass(frozen=True)
class EngineEvent:
    kind: EngineEventKind
    version: str
    bytes_so_far: int | None = None
    total_bytes: int | None = None
    error: str | None = None


class EventBus:
    """
    Fans events out to subscriber queues without ever blocking the publisher.

    A subscriber whose queue is full misses events rather than slowing down
    downloads.
    """

    def __init__(self, max_queue_size: int = 256):
        self._max_queue_size = max_queue_size
        self._subscribers: list[asyncio.Queue[EngineEvent]] = []

    def subscribe(self) -> "asyncio.Queue[EngineEvent]":
        queue: asyncio.Queue[EngineEvent] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[EngineEvent]") -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def emit(self, event: EngineEvent) -> None:
        for queue in self._subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                log.debug(f"Dropping {event.kind.value} event for a slow subscriber.")
