"""FIFO backlog of queries waiting for a network slot."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional

from geoqueue.geocode.models import Coordinate


@dataclass(slots=True)
class QueueItem:
    """A pending query and the future its caller is waiting on."""

    query: str
    future: "asyncio.Future[Optional[Coordinate]]"

    def complete(self, coordinate: Optional[Coordinate]) -> bool:
        """Resolve the caller's future. Returns False if it was already resolved."""
        if self.future.done():
            return False
        self.future.set_result(coordinate)
        return True


class RequestQueue:
    """Strict FIFO queue; identical queries are not merged."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[QueueItem] = asyncio.Queue()

    def enqueue(self, item: QueueItem) -> None:
        self._queue.put_nowait(item)

    def dequeue(self) -> Optional[QueueItem]:
        """Return the oldest item, or None when the backlog is empty."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain_all(self) -> List[QueueItem]:
        """Remove and return every queued item."""
        items: List[QueueItem] = []
        while (item := self.dequeue()) is not None:
            items.append(item)
        return items

    def empty(self) -> bool:
        return self._queue.empty()

    def __len__(self) -> int:
        return self._queue.qsize()
