import asyncio
import json
import logging
from typing import Any, Set

from fastapi import WebSocket

log = logging.getLogger("ws")


class Subscription:
    """One dashboard session's bounded FIFO of pending events."""

    def __init__(self, maxsize: int) -> None:
        self.queue: asyncio.Queue[dict] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, event: dict) -> None:
        if self.queue.full():
            # slow reader: drop the oldest so ingestion never waits on a browser tab
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)


class ConnectionManager:
    def __init__(self, queue_size: int = 100) -> None:
        self.queue_size = queue_size
        self.subscriptions: Set[Subscription] = set()
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None) -> None:
        self._loop = loop

    @property
    def subscriber_count(self) -> int:
        return len(self.subscriptions)

    def subscribe(self) -> Subscription:
        sub = Subscription(self.queue_size)
        self.subscriptions.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self.subscriptions.discard(sub)

    def publish(self, event: dict[str, Any]) -> None:
        """Thread-safe. Events reach every session in the order published."""
        loop = self._loop
        if loop is None:
            return
        try:
            loop.call_soon_threadsafe(self._deliver, event)
        except RuntimeError:
            # loop already closed: nobody is listening any more
            log.debug("dropping %s event, event loop closed", event.get("kind"))

    def _deliver(self, event: dict) -> None:
        for sub in list(self.subscriptions):
            sub.offer(event)

    async def stream(self, websocket: WebSocket) -> None:
        sub = self.subscribe()
        tasks: list[asyncio.Task] = []
        try:
            await websocket.accept()
            log.info("session connected (%d active)", self.subscriber_count)
            tasks = [
                asyncio.create_task(self._pump(websocket, sub)),
                asyncio.create_task(self._wait_disconnect(websocket)),
            ]
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    log.info("session closed: %s", task.exception())
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.unsubscribe(sub)
            if sub.dropped:
                log.warning("session dropped %d events (slow reader)", sub.dropped)
            log.info("session disconnected (%d active)", self.subscriber_count)

    async def _pump(self, websocket: WebSocket, sub: Subscription) -> None:
        while True:
            event = await sub.queue.get()
            await websocket.send_text(json.dumps(event, default=str))

    async def _wait_disconnect(self, websocket: WebSocket) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
