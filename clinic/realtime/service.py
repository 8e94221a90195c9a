"""
Process-level wiring of the realtime subsystem.

Change feed notifications may fire on any thread that commits a write
(sync views run in a worker thread under ASGI).  They are handed to the
event loop through a bounded queue; a single worker drains the queue
into the :class:`EventRouter`, so events of one table are routed in
commit order.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

from django.conf import settings

from clinic.realtime.bus import DurableEventBus
from clinic.realtime.change_feed import ChangeFeedListener
from clinic.realtime.events import ChangeEvent
from clinic.realtime.registry import ConnectionRegistry
from clinic.realtime.router import EventRouter

logger = logging.getLogger(__name__)


class RealtimeService:
    def __init__(
        self,
        *,
        registry: Optional[ConnectionRegistry] = None,
        bus: Optional[DurableEventBus] = None,
        router: Optional[EventRouter] = None,
        tables: Optional[Iterable[str]] = None,
        queue_size: Optional[int] = None,
        bus_required: Optional[bool] = None,
    ):
        self.registry = registry or ConnectionRegistry()
        self.bus = bus or DurableEventBus()
        self.router = router or EventRouter(self.registry, self.bus)
        self.tables = list(tables if tables is not None else settings.REALTIME_WATCHED_TABLES)
        self.queue_size = queue_size or settings.REALTIME_QUEUE_SIZE
        self.bus_required = settings.EVENT_BUS_REQUIRED if bus_required is None else bus_required
        self.listeners: list[ChangeFeedListener] = []
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._worker: Optional[asyncio.Task] = None
        self.bus_connected = False

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def initialize(self, channel_layer=None) -> None:
        """Connect the bus, the websocket registry and the change feeds.

        A bus connection failure is fatal when the bus is required;
        otherwise the service runs with websocket fan-out only.
        """
        if self.running:
            return
        logger.info('Initializing realtime service')
        try:
            await self.bus.connect()
            self.bus_connected = True
        except Exception:
            if self.bus_required:
                logger.exception('Event bus unavailable and required - aborting startup')
                raise
            logger.exception('Event bus unavailable - continuing without durable publishing')
            self.router.bus = None

        self.registry.initialize(channel_layer)

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._worker = self._loop.create_task(self._run())

        for table in self.tables:
            listener = ChangeFeedListener()
            if listener.start(table, self.enqueue):
                self.listeners.append(listener)
        logger.info('Realtime service running; watching %s', [l.table for l in self.listeners])

    def enqueue(self, event: ChangeEvent) -> None:
        """Hand an event to the loop; callable from any thread."""
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or loop.is_closed():
            logger.warning('Realtime service not running - dropping %s %s', event.entity, event.subject_id)
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._put(event)
        else:
            loop.call_soon_threadsafe(self._put, event)

    def _put(self, event: ChangeEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.error('Realtime queue full (%d) - dropping %s %s', self.queue_size, event.entity, event.subject_id)

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.router.on_change_event(event)
            except Exception:
                logger.exception('Routing failed for %s %s', event.entity, event.subject_id)
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until queued events are routed and their hooks have finished."""
        if self._queue is not None:
            await self._queue.join()
        await self.router.drain()

    def status(self) -> dict:
        return {
            'running': self.running,
            'busHealthy': self.bus.is_healthy(),
            'websocketReady': self.registry.is_ready(),
            'connectedClients': self.registry.get_connected_clients_count(),
            'watching': [l.table for l in self.listeners],
            'queued': self._queue.qsize() if self._queue is not None else 0,
        }

    async def disconnect(self) -> None:
        for listener in self.listeners:
            listener.stop()
        self.listeners.clear()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.router.drain()
        self._queue = None
        self._loop = None
        await self.bus.disconnect()
        self.bus_connected = False
        await self.registry.disconnect()
        logger.info('Realtime service stopped')
