"""
Fan-out of change events to live clients, the event bus and side effects.

Each change event goes through four steps:

1. push to websocket rooms,
2. publish to the durable event bus,
3. entity and kind specific hooks (conflict re-check, notification requests),
4. cache invalidation.

Steps 1 and 2 run concurrently and each swallows its own failure, so an
unreachable broker never hides an update from live clients.  Steps 3 and 4
are spawned as independent background tasks, one task per hook, each with
its own error handling.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import date, time
from typing import Optional

from asgiref.sync import sync_to_async
from prometheus_client import Counter

from clinic.models import Appointment
from clinic.realtime.events import (
    AppointmentChangeEvent,
    ChangeEvent,
    ChangeKind,
    MedicalRecordChangeEvent,
)
from clinic.realtime.registry import ADMIN_ROOM, STAFF_ROOM
from clinic.services import cache as cache_service
from clinic.services.conflicts import ConflictDetector, format_conflict

logger = logging.getLogger(__name__)

EVENTS_ROUTED = Counter('clinic_change_events_total', 'Change events routed', ['entity', 'kind'])
PUBLISH_FAILURES = Counter('clinic_event_publish_failures_total', 'Failed event bus publishes', ['routing_key'])

APPOINTMENT_WS_EVENT = 'appointment_change'
MEDICAL_RECORD_WS_EVENT = 'medical_record_change'
STATUS_ROUTING_KEY = 'appointment.status'


def appointment_rooms(event: AppointmentChangeEvent) -> list[str]:
    rooms = []
    if event.doctor_id:
        rooms.append(f'doctor_{event.doctor_id}')
    if event.patient_id:
        rooms.append(f'patient_{event.patient_id}')
    if event.appointment_date:
        rooms.append(f'date_{event.appointment_date}')
    return rooms


def medical_record_rooms(event: MedicalRecordChangeEvent) -> list[str]:
    rooms = []
    if event.patient_id:
        rooms.append(f'patient_{event.patient_id}')
    if event.doctor_id:
        rooms.append(f'doctor_{event.doctor_id}')
    if event.subject_id:
        rooms.append(f'record_{event.subject_id}')
    rooms.extend([STAFF_ROOM, ADMIN_ROOM])
    return rooms


class EventRouter:
    def __init__(self, registry, bus=None, detector: Optional[ConflictDetector] = None):
        self.registry = registry
        self.bus = bus
        self.detector = detector or ConflictDetector()
        self._tasks: set[asyncio.Task] = set()

    async def on_change_event(self, event: ChangeEvent) -> None:
        EVENTS_ROUTED.labels(entity=event.entity, kind=event.kind.value).inc()
        await asyncio.gather(self._broadcast(event), self._publish(event))
        for name, coro in self._hooks(event):
            self._spawn(name, coro)
        self._spawn('cache', self._invalidate_cache(event))
        logger.info('Routed %s %s %s', event.entity, event.kind.value, event.subject_id)

    async def drain(self) -> None:
        """Wait for every hook task spawned so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, name: str, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._guarded(name, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, name: str, coro) -> None:
        try:
            await coro
        except Exception:
            logger.exception('Hook %s failed', name)

    # -- step 1: websocket fan-out ------------------------------------------------

    async def _broadcast(self, event: ChangeEvent) -> None:
        try:
            if not self.registry.is_ready():
                logger.warning('Websocket not ready - skipping broadcast of %s', event.subject_id)
                return
            if isinstance(event, AppointmentChangeEvent):
                ws_event, rooms = APPOINTMENT_WS_EVENT, appointment_rooms(event)
            else:
                ws_event, rooms = MEDICAL_RECORD_WS_EVENT, medical_record_rooms(event)
            payload = event.to_payload()
            await self.registry.broadcast_to_all(ws_event, payload)
            for room in rooms:
                await self.registry.broadcast_to_room(room, ws_event, payload)
        except Exception:
            logger.exception('Websocket broadcast failed for %s %s', event.entity, event.subject_id)

    # -- step 2: event bus ---------------------------------------------------------

    async def _publish(self, event: ChangeEvent) -> None:
        if self.bus is None:
            return
        payload = event.to_payload()
        if isinstance(event, AppointmentChangeEvent):
            await self._safe_publish('appointment_changed', payload, f'appointment.{event.kind.value.lower()}')
            if event.status_changed:
                await self._safe_publish(
                    'appointment_status_changed',
                    {**payload, 'status_change': {'from': event.old_status, 'to': event.new_status}},
                    STATUS_ROUTING_KEY,
                )
        else:
            await self._safe_publish('medical_record.changed', payload)

    async def _safe_publish(self, event_type: str, payload: dict, routing_key: Optional[str] = None) -> bool:
        try:
            await self.bus.publish(event_type, payload, routing_key)
            return True
        except Exception:
            PUBLISH_FAILURES.labels(routing_key=routing_key or event_type).inc()
            logger.exception('Publishing %s failed; event is lost for bus consumers', event_type)
            return False

    async def _request_notification(self, template: str, event: ChangeEvent, routing_key: str, **extra) -> None:
        # Message bodies are rendered by the notification service.
        if self.bus is None:
            logger.info('No event bus - notification %s for %s not requested', template, event.subject_id)
            return
        await self.bus.publish(
            'notification.requested',
            {'template': template, 'entity': event.entity, 'event': event.to_payload(), **extra},
            routing_key,
        )

    # -- step 3: per-kind hooks ----------------------------------------------------

    def _hooks(self, event: ChangeEvent) -> list:
        if isinstance(event, AppointmentChangeEvent):
            if event.kind is ChangeKind.INSERT:
                return [
                    ('conflict-recheck', self._recheck_conflicts(event)),
                    ('notify-created', self._request_notification(
                        'appointment_created', event, 'notification.appointment.created')),
                ]
            if event.kind is ChangeKind.UPDATE:
                hooks = []
                if event.status_changed:
                    hooks.append(('status-change', self._on_status_change(event)))
                if event.time_changed:
                    hooks.append(('time-change', self._request_notification(
                        'appointment_rescheduled', event, 'notification.appointment.rescheduled')))
                return hooks
            return [
                ('notify-cancelled', self._request_notification(
                    'appointment_cancelled', event, 'notification.appointment.cancelled',
                    reason='Appointment cancelled')),
                ('availability', self._refresh_availability(event)),
            ]
        if isinstance(event, MedicalRecordChangeEvent) and event.kind is ChangeKind.UPDATE:
            return [
                (f'record-{section}', self._request_notification(
                    f'medical_record_{section}_updated', event, f'notification.medical_record.{section}'))
                for section in event.updated_sections
            ]
        logger.info('%s %s: %s', event.entity, event.kind.value.lower(), event.subject_id)
        return []

    async def _recheck_conflicts(self, event: AppointmentChangeEvent) -> None:
        if event.new_status not in Appointment.ACTIVE_STATUSES:
            return
        if not (event.doctor_id and event.appointment_date and event.start_time and event.end_time):
            return
        result = await self.detector.check(
            event.doctor_id,
            date.fromisoformat(event.appointment_date),
            time.fromisoformat(event.start_time),
            time.fromisoformat(event.end_time),
            exclude_id=event.subject_id,
        )
        if not result.has_conflict:
            return
        conflicts = [format_conflict(a) for a in result.conflicting_appointments]
        logger.warning(
            'Appointment %s overlaps %s for doctor %s',
            event.subject_id, [c['appointment_id'] for c in conflicts], event.doctor_id,
        )
        body = {'appointment_id': event.subject_id, 'doctor_id': event.doctor_id, 'conflicts': conflicts}
        await self.registry.broadcast_to_room(f'doctor_{event.doctor_id}', 'appointment_conflict', body)
        if self.bus is not None:
            await self.bus.publish('appointment_conflict_detected', body, 'appointment.conflict')

    async def _on_status_change(self, event: AppointmentChangeEvent) -> None:
        logger.info('Appointment %s status %s -> %s', event.subject_id, event.old_status, event.new_status)
        await self._request_notification(
            'appointment_status_changed', event, f'notification.appointment.{event.new_status}',
            status_change={'from': event.old_status, 'to': event.new_status},
        )

    async def _refresh_availability(self, event: AppointmentChangeEvent) -> None:
        if not event.doctor_id:
            return
        keys = cache_service.keys_for(doctor_id=event.doctor_id, day=event.appointment_date)
        await sync_to_async(cache_service.invalidate)(keys)
        logger.info('Doctor %s availability refreshed', event.doctor_id)

    # -- step 4: cache -------------------------------------------------------------

    async def _invalidate_cache(self, event: ChangeEvent) -> None:
        if isinstance(event, AppointmentChangeEvent):
            keys = cache_service.keys_for(
                doctor_id=event.doctor_id, patient_id=event.patient_id, day=event.appointment_date,
            )
        else:
            keys = cache_service.keys_for(patient_id=event.patient_id, record_id=event.subject_id)
        await sync_to_async(cache_service.invalidate)(keys)
