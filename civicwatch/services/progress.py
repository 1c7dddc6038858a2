"""
In-process publish/subscribe register for live crawl progress.

One ``ProgressHub`` per process, handed to crawlers and the SSE route
through ``app.state`` rather than imported as a global. It keeps the
latest ``ProgressSnapshot`` per module key and fans every publish out to
the key's current subscribers.
"""
from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional, Set

import structlog

from civicwatch.schemas import ProgressSnapshot

log = structlog.get_logger(__name__)

SUBSCRIBER_QUEUE_SIZE = 16


class Subscription:
    """One observer's queue of snapshots for a single module key."""

    def __init__(self, hub: "ProgressHub", module_key: str, loop: asyncio.AbstractEventLoop):
        self.hub = hub
        self.module_key = module_key
        self._loop = loop
        self._queue: asyncio.Queue[ProgressSnapshot] = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self.closed = False

    def push(self, snapshot: ProgressSnapshot) -> None:
        if self.closed:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._offer(snapshot)
        else:
            # publisher lives on another thread or loop
            self._loop.call_soon_threadsafe(self._offer, snapshot)

    def _offer(self, snapshot: ProgressSnapshot) -> None:
        """Enqueue on the owning loop; a full queue sheds its oldest non-terminal snapshot."""
        if self._queue.full():
            pending = [self._queue.get_nowait() for _ in range(self._queue.qsize())]
            for i, queued in enumerate(pending):
                if not queued.is_terminal:
                    del pending[i]
                    break
            else:
                del pending[0]
            for queued in pending:
                self._queue.put_nowait(queued)
            log.debug("progress.subscriber.lagging", module=self.module_key)
        self._queue.put_nowait(snapshot)

    async def get(self) -> ProgressSnapshot:
        return await self._queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.hub.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ProgressSnapshot:
        """Yields snapshots up to and including the first terminal one."""
        if self.closed:
            raise StopAsyncIteration
        snapshot = await self.get()
        if snapshot.is_terminal:
            self.close()
        return snapshot


class ProgressHub:
    def __init__(self, clear_delay: float = 5.0):
        self.clear_delay = clear_delay
        self._lock = threading.Lock()
        self._latest: Dict[str, ProgressSnapshot] = {}
        self._subscribers: Dict[str, Set[Subscription]] = {}

    def publish(self, snapshot: ProgressSnapshot) -> None:
        key = snapshot.module_key
        with self._lock:
            self._latest[key] = snapshot
            targets = list(self._subscribers.get(key, ()))

        for sub in targets:
            try:
                sub.push(snapshot)
            except RuntimeError as exc:
                # subscriber's loop already closed
                log.warning("progress.push.failed", module=key, error=str(exc))
                self.unsubscribe(sub)

        if snapshot.is_terminal:
            self._schedule_clear(snapshot)

    def subscribe(self, module_key: str) -> Subscription:
        """Register an observer; it sees the stored snapshot (if any) first."""
        sub = Subscription(self, module_key, asyncio.get_running_loop())
        with self._lock:
            self._subscribers.setdefault(module_key, set()).add(sub)
            current = self._latest.get(module_key)
        if current is not None:
            sub.push(current)
        log.debug("progress.subscribed", module=module_key)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.closed = True
        with self._lock:
            subs = self._subscribers.get(sub.module_key)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._subscribers[sub.module_key]

    def latest(self, module_key: str) -> Optional[ProgressSnapshot]:
        with self._lock:
            return self._latest.get(module_key)

    def subscriber_count(self, module_key: str) -> int:
        with self._lock:
            return len(self._subscribers.get(module_key, ()))

    def clear(self, module_key: str, only: Optional[ProgressSnapshot] = None) -> bool:
        """Drop the stored snapshot; with ``only`` set, drop it only if it is still that one."""
        with self._lock:
            current = self._latest.get(module_key)
            if current is None or (only is not None and current is not only):
                return False
            del self._latest[module_key]
        log.debug("progress.cleared", module=module_key)
        return True

    def _schedule_clear(self, snapshot: ProgressSnapshot) -> None:
        key = snapshot.module_key
        if self.clear_delay <= 0:
            self.clear(key, only=snapshot)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            timer = threading.Timer(self.clear_delay, self.clear, args=(key, snapshot))
            timer.daemon = True
            timer.start()
            return
        loop.call_later(self.clear_delay, self.clear, key, snapshot)
