from __future__ import annotations

import asyncio
import itertools
import json
import logging
import threading
from collections.abc import AsyncIterator, Awaitable, Callable

from starlette.concurrency import run_in_threadpool

from filedrop.models import StoredFile

logger = logging.getLogger("filedrop.broadcaster")

_subscriber_ids = itertools.count(1)


def encode_snapshot(files: list[StoredFile]) -> str:
    return json.dumps([f.model_dump(mode="json") for f in files])


class Subscriber:
    """One live listing viewer: a bounded queue on the viewer's event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int) -> None:
        self.id = next(_subscriber_ids)
        self.loop = loop
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)

    def offer(self, payload: str) -> None:
        # Runs on self.loop. A newer snapshot supersedes anything unread.
        if self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(payload)

    async def get(self) -> str:
        return await self.queue.get()


class ChangeBroadcaster:
    """Pushes the storage directory listing to every connected subscriber.

    ``snapshot`` is called once per change; the encoded payload is shared by
    all subscribers. ``on_directory_changed`` may be called from any thread.
    """

    def __init__(self, snapshot: Callable[[], list[StoredFile]], queue_size: int = 8) -> None:
        self._snapshot = snapshot
        self._queue_size = queue_size
        self._subscribers: set[Subscriber] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def snapshot(self) -> list[StoredFile]:
        return self._snapshot()

    def subscribe(self, initial: list[StoredFile] | None = None) -> Subscriber:
        """Register a subscriber and hand it the current listing right away.

        Must be called from inside a running event loop. Pass ``initial`` when
        the listing was already read off the loop.
        """
        if initial is None:
            initial = self._snapshot()
        subscriber = Subscriber(asyncio.get_running_loop(), self._queue_size)
        with self._lock:
            self._subscribers.add(subscriber)
            total = len(self._subscribers)
        subscriber.offer(encode_snapshot(initial))
        logger.info("event=subscriber_added id=%s total=%s", subscriber.id, total)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber not in self._subscribers:
                return
            self._subscribers.discard(subscriber)
            total = len(self._subscribers)
        logger.info("event=subscriber_removed id=%s total=%s", subscriber.id, total)

    def publish(self, payload: str) -> int:
        with self._lock:
            targets = list(self._subscribers)

        delivered = 0
        for subscriber in targets:
            try:
                subscriber.loop.call_soon_threadsafe(subscriber.offer, payload)
            except RuntimeError:
                # event loop already closed; the connection is gone
                self.unsubscribe(subscriber)
                continue
            delivered += 1
        return delivered

    def on_directory_changed(self) -> int:
        files = self._snapshot()
        delivered = self.publish(encode_snapshot(files))
        logger.info("event=directory_changed files=%s subscribers=%s", len(files), delivered)
        return delivered


async def stream_snapshots(
    broadcaster: ChangeBroadcaster,
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat: float,
) -> AsyncIterator[str]:
    """Server-sent event frames for one new subscriber until it goes away.

    The first frame is the listing at subscribe time.
    """
    files = await run_in_threadpool(broadcaster.snapshot)
    subscriber = broadcaster.subscribe(files)
    try:
        while True:
            try:
                payload = await asyncio.wait_for(subscriber.get(), timeout=heartbeat)
            except asyncio.TimeoutError:
                if await is_disconnected():
                    break
                yield ": keepalive\n\n"
                continue
            yield f"data: {payload}\n\n"
    finally:
        broadcaster.unsubscribe(subscriber)
