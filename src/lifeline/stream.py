from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from sanic.log import logger

from lifeline.metric import stream_append_counter
from lifeline.model import utcnow
from lifeline.storage import RequestStore, StreamEventRow


MAX_EVENTS = 50


class StreamBroadcaster:
    """Fan stream notifications out to in-process subscribers.

    Each subscriber owns a bounded queue; a slow subscriber loses its oldest
    notifications, never blocks the publisher.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = max(1, int(queue_size))
        self._lock = asyncio.Lock()
        self._subscribers: set[asyncio.Queue] = set()

    async def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        async with self._lock:
            self._subscribers.add(queue)
        return queue

    async def unsubscribe(self, queue: asyncio.Queue) -> None:
        async with self._lock:
            self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, payload: Dict[str, Any]) -> None:
        async with self._lock:
            subscribers = list(self._subscribers)

        for queue in subscribers:
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                pass


class EventStreamLog:
    """Bounded, monotonically sequenced log of request change notifications."""

    def __init__(
        self,
        store: RequestStore,
        max_events: int = MAX_EVENTS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.max_events = max(1, int(max_events))
        self.clock = clock

    def append(self, request_id: str, type: str) -> int:
        state = self.store.get_stream_state()
        now_ms = int(self.clock() * 1000)
        # clock may go backwards; sequence numbers may not
        seq = max(now_ms, state.seq + 1)
        state.events.append(
            StreamEventRow(seq=seq, request_id=request_id, type=type, updated_at=utcnow())
        )
        state.events = state.events[-self.max_events :]
        state.seq = seq
        self.store.put_stream_state(state)
        stream_append_counter.labels(type=type).inc()
        logger.debug("Stream append %s %s -> seq %d", request_id, type, seq)
        return seq

    def read(self, since_seq: Optional[int] = 0) -> Tuple[int, List[StreamEventRow]]:
        state = self.store.get_stream_state()
        since = since_seq if isinstance(since_seq, int) and since_seq > 0 else 0
        return state.seq, [event for event in state.events if event.seq > since]
