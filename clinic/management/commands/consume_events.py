import asyncio
import logging

from asgiref.sync import sync_to_async
from django.core.management.base import BaseCommand, CommandError

from clinic.exceptions import EventBusError
from clinic.realtime.bus import DurableEventBus
from clinic.services import cache as cache_service

logger = logging.getLogger(__name__)


async def handle_envelope(envelope: dict) -> list[str]:
    """Drop the cache entries an appointment or medical record event makes stale.

    Invalidation is idempotent, so redelivered envelopes are harmless.
    """
    data = envelope.get('data') or {}
    keys = cache_service.keys_for(
        doctor_id=data.get('doctor_id'),
        patient_id=data.get('patient_id'),
        day=data.get('appointment_date'),
        record_id=data.get('record_id'),
    )
    await sync_to_async(cache_service.invalidate)(keys)
    logger.info('Consumed %s %s from %s', envelope.get('type'), envelope.get('id'), envelope.get('source'))
    return keys


class Command(BaseCommand):
    help = "Consume events from the durable event bus and refresh caches (runs until interrupted)."

    def add_arguments(self, parser):
        parser.add_argument('patterns', nargs='*', default=['appointment.*'],
                            help="Topic patterns to bind, e.g. 'appointment.*' 'medical_record.changed'")
        parser.add_argument('--queue', default=None, help='Durable queue name (one queue per pattern if omitted)')
        parser.add_argument('--url', default=None, help='Broker URL (defaults to RABBITMQ_URL)')

    def handle(self, *args, **opts):
        try:
            asyncio.run(self._consume(opts['patterns'], opts['queue'], opts['url']))
        except EventBusError as exc:
            raise CommandError(str(exc)) from exc
        except KeyboardInterrupt:
            self.stdout.write('Stopped.')

    async def _consume(self, patterns, queue_name, url):
        bus = DurableEventBus()
        await bus.connect(url)
        try:
            for pattern in patterns:
                await bus.subscribe(pattern, handle_envelope, queue_name)
                self.stdout.write(self.style.SUCCESS(f"Listening on {pattern}"))
            await asyncio.Event().wait()
        finally:
            await bus.disconnect()
