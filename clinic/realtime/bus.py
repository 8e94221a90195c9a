"""
Durable event bus on a RabbitMQ topic exchange (aio-pika).

Published messages are persistent and routed by key; subscribers get a
durable queue bound with a topic pattern, prefetch 1 and manual
acknowledgement.  Delivery is at-least-once: a handler that raises gets
its message requeued, without a redelivery cap, so handlers must be
idempotent.
"""
from __future__ import annotations

import asyncio
import json
import logging
import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from django.conf import settings
from django.core.serializers.json import DjangoJSONEncoder

from clinic.exceptions import EventBusError

logger = logging.getLogger(__name__)

ENVELOPE_VERSION = '1.0'

Handler = Callable[[dict], Awaitable[Any]]


def _random_suffix(k: int = 9) -> str:
    return ''.join(random.choices(string.ascii_lowercase + string.digits, k=k))


def make_envelope(event_type: str, data: Any, source: str) -> dict:
    now = datetime.now(timezone.utc)
    return {
        'id': f'{source}-{int(time.time() * 1000)}-{_random_suffix()}',
        'type': event_type,
        'data': data,
        'timestamp': now.isoformat(),
        'source': source,
        'version': ENVELOPE_VERSION,
    }


class DurableEventBus:
    def __init__(
        self,
        source: Optional[str] = None,
        *,
        exchange_name: Optional[str] = None,
        connect_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        connect: Callable[..., Awaitable[Any]] = aio_pika.connect_robust,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.source = source or settings.EVENT_BUS_SOURCE
        self.exchange_name = exchange_name or settings.EVENT_BUS_EXCHANGE
        self.connect_attempts = connect_attempts or settings.EVENT_BUS_CONNECT_ATTEMPTS
        self.retry_delay = settings.EVENT_BUS_RETRY_DELAY if retry_delay is None else retry_delay
        self._connect = connect
        self._sleep = sleep
        self._connection = None
        self._channel = None
        self._exchange = None
        self._consumer_tags: list[tuple[Any, str]] = []

    async def connect(self, url: Optional[str] = None) -> None:
        url = url or settings.RABBITMQ_URL
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.connect_attempts + 1):
            try:
                self._connection = await self._connect(url)
                self._channel = await self._connection.channel()
                self._exchange = await self._channel.declare_exchange(
                    self.exchange_name, aio_pika.ExchangeType.TOPIC, durable=True
                )
                logger.info('Connected to event bus exchange %s (attempt %d)', self.exchange_name, attempt)
                return
            except Exception as exc:
                last_error = exc
                logger.warning(
                    'Event bus connection attempt %d/%d failed: %s', attempt, self.connect_attempts, exc
                )
                await self._close_quietly()
                if attempt < self.connect_attempts:
                    await self._sleep(self.retry_delay)
        raise EventBusError(
            f'could not connect to event bus after {self.connect_attempts} attempts'
        ) from last_error

    async def disconnect(self) -> None:
        for queue, tag in self._consumer_tags:
            try:
                await queue.cancel(tag)
            except Exception:
                logger.exception('Failed to cancel consumer %s', tag)
        self._consumer_tags.clear()
        await self._close_quietly()
        logger.info('Event bus disconnected')

    async def _close_quietly(self) -> None:
        channel, connection = self._channel, self._connection
        self._channel = self._connection = self._exchange = None
        for resource in (channel, connection):
            if resource is None or resource.is_closed:
                continue
            try:
                await resource.close()
            except Exception:
                logger.exception('Error while closing event bus resource')

    def is_healthy(self) -> bool:
        return (
            self._connection is not None
            and not self._connection.is_closed
            and self._channel is not None
            and not self._channel.is_closed
        )

    async def publish(self, event_type: str, payload: Any, routing_key: Optional[str] = None) -> dict:
        """Publish ``payload`` wrapped in an envelope; return the envelope.

        Raises :class:`EventBusError` when not connected or when the broker
        rejects the publish.  Nothing is retried here.
        """
        if self._exchange is None or not self.is_healthy():
            raise EventBusError('event bus is not connected')
        routing_key = routing_key or event_type
        envelope = make_envelope(event_type, payload, self.source)
        message = aio_pika.Message(
            body=json.dumps(envelope, cls=DjangoJSONEncoder).encode('utf-8'),
            content_type='application/json',
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=envelope['id'],
            type=event_type,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            await self._exchange.publish(message, routing_key=routing_key)
        except Exception as exc:
            raise EventBusError(f'failed to publish {event_type} to {routing_key}') from exc
        logger.debug('Published %s with key %s (%s)', event_type, routing_key, envelope['id'])
        return envelope

    async def subscribe(self, pattern: str, handler: Handler, queue_name: Optional[str] = None):
        if self._channel is None or not self.is_healthy():
            raise EventBusError('event bus is not connected')
        queue_name = queue_name or f'{self.source}.{pattern}'
        # One unacknowledged message per consumer at a time.
        await self._channel.set_qos(prefetch_count=1)
        queue = await self._channel.declare_queue(queue_name, durable=True)
        await queue.bind(self._exchange, routing_key=pattern)

        async def on_message(message) -> None:
            try:
                envelope = json.loads(message.body.decode('utf-8'))
            except (UnicodeDecodeError, ValueError):
                logger.error('Dropping undecodable message %s on %s', message.message_id, queue_name)
                await message.nack(requeue=False)
                return
            if not isinstance(envelope, dict):
                logger.error('Dropping non-envelope message %s on %s', message.message_id, queue_name)
                await message.nack(requeue=False)
                return
            try:
                await handler(envelope)
            except Exception:
                logger.exception('Handler failed for %s on %s; requeueing', message.message_id, queue_name)
                await message.nack(requeue=True)
            else:
                await message.ack()

        tag = await queue.consume(on_message, no_ack=False)
        self._consumer_tags.append((queue, tag))
        logger.info('Subscribed %s to %s', queue_name, pattern)
        return queue
