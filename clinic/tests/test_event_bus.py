"""
Durable event bus against in-process aio-pika fakes.
"""
import asyncio
import re

import aio_pika
import pytest
from asgiref.sync import async_to_sync

from clinic.exceptions import EventBusError
from clinic.realtime.bus import ENVELOPE_VERSION, DurableEventBus, make_envelope
from clinic.tests.fakes import (
    FakeChannel,
    FakeConnection,
    FakeConnector,
    FakeExchange,
    FakeIncomingMessage,
    no_sleep,
)


@pytest.fixture(autouse=True)
def reset_sleeps():
    no_sleep.delays.clear()


def make_bus(connector, attempts=5):
    return DurableEventBus(
        'appointment-service',
        exchange_name='hospital_events',
        connect_attempts=attempts,
        retry_delay=5.0,
        connect=connector,
        sleep=no_sleep,
    )


def connected_bus(exchange=None):
    channel = FakeChannel(exchange)
    connector = FakeConnector(connection=FakeConnection(channel))
    bus = make_bus(connector)
    async_to_sync(bus.connect)('amqp://broker/')
    return bus, channel


def test_envelope_shape():
    envelope = make_envelope('appointment_changed', {'appointment_id': 'APT1'}, 'appointment-service')
    assert re.match(r'^appointment-service-\d+-[a-z0-9]{9}$', envelope['id'])
    assert envelope['type'] == 'appointment_changed'
    assert envelope['data'] == {'appointment_id': 'APT1'}
    assert envelope['source'] == 'appointment-service'
    assert envelope['version'] == ENVELOPE_VERSION == '1.0'
    assert envelope['timestamp'].endswith('+00:00')


def test_connect_retries_until_the_broker_answers():
    connector = FakeConnector(failures=2)
    bus = make_bus(connector)
    async_to_sync(bus.connect)('amqp://broker/')

    assert len(connector.calls) == 3
    assert no_sleep.delays == [5.0, 5.0]
    assert bus.is_healthy() is True
    name, kind, durable = connector.connection._channel.exchange_args
    assert (name, kind, durable) == ('hospital_events', aio_pika.ExchangeType.TOPIC, True)


def test_connect_gives_up_after_the_last_attempt():
    connector = FakeConnector(failures=10)
    bus = make_bus(connector, attempts=5)
    with pytest.raises(EventBusError) as info:
        async_to_sync(bus.connect)('amqp://broker/')

    assert len(connector.calls) == 5
    assert len(no_sleep.delays) == 4
    assert isinstance(info.value.__cause__, ConnectionRefusedError)
    assert bus.is_healthy() is False


def test_publish_sends_a_persistent_json_envelope():
    bus, channel = connected_bus()
    envelope = async_to_sync(bus.publish)('appointment_changed', {'appointment_id': 'APT1'}, 'appointment.insert')

    (message, routing_key), = channel.exchange.published
    assert routing_key == 'appointment.insert'
    assert message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT
    assert message.content_type == 'application/json'
    assert message.message_id == envelope['id']
    body, _ = channel.exchange.envelopes()[0]
    assert body == envelope
    assert body['data'] == {'appointment_id': 'APT1'}


def test_routing_key_defaults_to_event_type():
    bus, channel = connected_bus()
    async_to_sync(bus.publish)('medical_record.changed', {'record_id': 'MR1'})
    assert channel.exchange.published[0][1] == 'medical_record.changed'


def test_publish_without_connection_fails():
    bus = make_bus(FakeConnector())
    with pytest.raises(EventBusError):
        async_to_sync(bus.publish)('appointment_changed', {})


def test_publish_failure_is_wrapped():
    bus, _ = connected_bus(FakeExchange(fail=True))
    with pytest.raises(EventBusError) as info:
        async_to_sync(bus.publish)('appointment_changed', {}, 'appointment.update')
    assert isinstance(info.value.__cause__, ConnectionError)


def test_health_follows_connection_state():
    bus, channel = connected_bus()
    assert bus.is_healthy() is True
    channel.is_closed = True
    assert bus.is_healthy() is False
    async_to_sync(bus.disconnect)()
    assert bus.is_healthy() is False


def test_subscribe_declares_durable_queue_with_prefetch_one():
    bus, channel = connected_bus()

    async def handler(envelope):
        return None

    queue = async_to_sync(bus.subscribe)('appointment.*', handler)
    assert queue.name == 'appointment-service.appointment.*'
    assert queue.durable is True
    assert queue.bindings == [(channel.exchange, 'appointment.*')]
    assert queue.no_ack is False
    assert channel.prefetch_count == 1


def test_handler_success_acks_and_failure_requeues():
    bus, channel = connected_bus()
    seen = []

    async def handler(envelope):
        seen.append(envelope['id'])
        if envelope['id'] == 'bad':
            raise RuntimeError('handler failed')

    queue = async_to_sync(bus.subscribe)('appointment.*', handler, 'cache-refresh')

    good = FakeIncomingMessage({'id': 'good', 'type': 'appointment_changed', 'data': {}})
    bad = FakeIncomingMessage({'id': 'bad', 'type': 'appointment_changed', 'data': {}})
    async_to_sync(queue.callback)(good)
    async_to_sync(queue.callback)(bad)

    assert seen == ['good', 'bad']
    assert good.acked is True and good.nacked is None
    assert bad.acked is False and bad.nacked == {'requeue': True}


def test_undecodable_message_is_dropped_not_requeued():
    bus, _ = connected_bus()
    seen = []

    async def handler(envelope):
        seen.append(envelope)

    queue = async_to_sync(bus.subscribe)('appointment.*', handler, 'cache-refresh')
    garbage = FakeIncomingMessage(b'{not json')
    async_to_sync(queue.callback)(garbage)

    assert seen == []
    assert garbage.nacked == {'requeue': False}


def test_disconnect_cancels_consumers_and_is_idempotent():
    bus, channel = connected_bus()

    async def handler(envelope):
        return None

    queue = async_to_sync(bus.subscribe)('appointment.*', handler, 'cache-refresh')
    async_to_sync(bus.disconnect)()
    async_to_sync(bus.disconnect)()

    assert queue.cancelled == ['ctag-cache-refresh']
    assert channel.is_closed is True


def test_non_object_body_is_dropped_not_left_unsettled():
    bus, _ = connected_bus()
    seen = []

    async def handler(envelope):
        seen.append(envelope['data'])

    queue = async_to_sync(bus.subscribe)('appointment.*', handler, 'cache-refresh')
    wrong_shape = FakeIncomingMessage(b'[1, 2]')
    async_to_sync(queue.callback)(wrong_shape)

    assert seen == []
    assert wrong_shape.acked is False
    assert wrong_shape.nacked == {'requeue': False}


def test_prefetch_one_holds_back_the_next_message():
    bus, channel = connected_bus()
    started = []

    async def body():
        release = asyncio.Event()

        async def handler(envelope):
            started.append(envelope['id'])
            if envelope['id'] == 'first':
                await release.wait()

        queue = await bus.subscribe('appointment.*', handler, 'cache-refresh')
        first = FakeIncomingMessage({'id': 'first', 'data': {}}, message_id='first')
        second = FakeIncomingMessage({'id': 'second', 'data': {}}, message_id='second')
        dispatch = asyncio.ensure_future(queue.deliver([first, second], channel.prefetch_count))

        for _ in range(20):
            await asyncio.sleep(0)
        assert started == ['first']
        assert first.settled is False

        release.set()
        await dispatch
        assert started == ['first', 'second']
        assert first.acked is True and second.acked is True

    async_to_sync(body)()
