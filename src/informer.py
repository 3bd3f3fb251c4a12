"""
Informers - watched caches of cluster objects.

Each informer keeps an in-memory copy of one object kind, fed by Postgres
notifications and by periodic relists. Relists also re-deliver every cached
object as an update (resync) and report objects that vanished without a
notification as tombstones. Cached objects are shared; callers must copy
before editing.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Generic, List, Mapping, Optional, TypeVar

import asyncpg

from events import EventHandlers, EventType, Live, Tombstone, WatchEvent
from store import NOTIFY_CHANNEL

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Informer(Generic[T]):
    """Cache plus change notifications for one object kind."""

    def __init__(
        self,
        kind: str,
        list_func: Callable[[], Awaitable[List[T]]],
        from_row: Callable[[Mapping[str, Any]], T],
        resync_interval: float = 0,
    ):
        self.kind = kind
        self.list_func = list_func
        self.from_row = from_row
        self.resync_interval = resync_interval
        self._cache: Dict[str, T] = {}
        self._handlers: List[EventHandlers] = []

    # Read-only repository interface

    def get(self, name: str) -> Optional[T]:
        return self._cache.get(name)

    def list(self) -> List[T]:
        return list(self._cache.values())

    def add_event_handler(self, handlers: EventHandlers) -> None:
        self._handlers.append(handlers)

    async def _dispatch(self, event: WatchEvent) -> None:
        for handlers in self._handlers:
            try:
                await handlers.dispatch(event)
            except Exception as e:
                logger.error(
                    f"{self.kind} {event.event_type.value} handler failed: {e}",
                    exc_info=True,
                )

    async def relist(self, resync: bool = False) -> None:
        """
        Reload the full object set and emit the differences.

        With ``resync`` every unchanged object is re-delivered as MODIFIED.
        """
        fresh = {obj.name: obj for obj in await self.list_func()}

        for name, obj in fresh.items():
            old = self._cache.get(name)
            self._cache[name] = obj
            if old is None:
                await self._dispatch(WatchEvent(EventType.ADDED, self.kind, Live(obj)))
            elif resync or old != obj:
                await self._dispatch(
                    WatchEvent(EventType.MODIFIED, self.kind, Live(obj), old=old)
                )

        for name in [n for n in self._cache if n not in fresh]:
            last = self._cache.pop(name)
            await self._dispatch(
                WatchEvent(EventType.DELETED, self.kind, Tombstone(name, last))
            )

    async def handle_notification(self, op: str, row: Mapping[str, Any]) -> None:
        """Apply one INSERT/UPDATE/DELETE notification to the cache."""
        obj = self.from_row(row)

        if op == "DELETE":
            self._cache.pop(obj.name, None)
            await self._dispatch(WatchEvent(EventType.DELETED, self.kind, Live(obj)))
            return

        old = self._cache.get(obj.name)
        self._cache[obj.name] = obj
        if old is None:
            await self._dispatch(WatchEvent(EventType.ADDED, self.kind, Live(obj)))
        else:
            await self._dispatch(
                WatchEvent(EventType.MODIFIED, self.kind, Live(obj), old=old)
            )

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Relist every ``resync_interval`` seconds until shutdown."""
        if not self.resync_interval:
            return
        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.resync_interval)
            except asyncio.TimeoutError:
                pass
            if shutdown_event.is_set():
                break
            try:
                await self.relist(resync=True)
            except Exception as e:
                logger.error(f"Error relisting {self.kind}: {e}", exc_info=True)


class WatchListener:
    """
    Routes Postgres notifications to informers by table.

    Notifications are processed one at a time in arrival order.
    """

    def __init__(self, pool: asyncpg.Pool, informers: Dict[str, Informer]):
        self.pool = pool
        self.informers = informers
        self._queue: asyncio.Queue = asyncio.Queue()
        self._conn: Optional[asyncpg.Connection] = None
        self._task: Optional[asyncio.Task] = None

    def _on_notify(self, connection, pid, channel, payload) -> None:
        self._queue.put_nowait(payload)

    async def start(self) -> None:
        self._conn = await self.pool.acquire()
        await self._conn.add_listener(NOTIFY_CHANNEL, self._on_notify)
        self._task = asyncio.create_task(self._consume())
        logger.info(f"Listening for changes on {NOTIFY_CHANNEL}")

    async def _consume(self) -> None:
        while True:
            payload = await self._queue.get()
            if payload is None:
                return
            await self.process(payload)

    async def process(self, payload: str) -> None:
        try:
            message = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.error(f"Malformed notification payload: {e}")
            return

        informer = self.informers.get(message.get("table"))
        if informer is None:
            logger.debug(f"Ignoring notification for table {message.get('table')}")
            return

        try:
            await informer.handle_notification(message["op"], message["object"])
        except Exception as e:
            logger.error(f"Error handling {informer.kind} notification: {e}", exc_info=True)

    async def stop(self) -> None:
        if self._conn is not None:
            await self._conn.remove_listener(NOTIFY_CHANNEL, self._on_notify)
            await self.pool.release(self._conn)
            self._conn = None
        if self._task is not None:
            self._queue.put_nowait(None)
            await self._task
            self._task = None
