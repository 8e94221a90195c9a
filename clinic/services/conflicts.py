"""
Scheduling conflict detection.

A candidate slot conflicts with every *active* appointment of the same
doctor on the same date whose half-open interval intersects it.  Results
are computed fresh on every call and never cached: a stale answer would
let two patients book the same slot.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, time
from typing import Callable, Optional

from asgiref.sync import sync_to_async

from clinic.models import Appointment

logger = logging.getLogger(__name__)

CONFLICT_MESSAGE = 'Time slot conflicts with existing appointment'


def intervals_overlap(a_start, a_end, b_start, b_end) -> bool:
    """Return True if ``[a_start, a_end)`` and ``[b_start, b_end)`` intersect.

    Back-to-back intervals (``a_end == b_start``) do not overlap.
    """
    return a_start < b_end and b_start < a_end


@dataclass(frozen=True)
class ConflictResult:
    has_conflict: bool
    conflicting_appointments: list = field(default_factory=list)

    @property
    def message(self) -> Optional[str]:
        return CONFLICT_MESSAGE if self.has_conflict else None

    def to_dict(self) -> dict:
        return {
            'has_conflict': self.has_conflict,
            'conflicting_appointments': [format_conflict(a) for a in self.conflicting_appointments],
            'message': self.message,
        }


def format_conflict(appt: Appointment) -> dict:
    return {
        'appointment_id': appt.appointment_id,
        'patient_id': appt.patient_id,
        'appointment_date': appt.appointment_date.isoformat(),
        'start_time': appt.start_time.strftime('%H:%M'),
        'end_time': appt.end_time.strftime('%H:%M'),
        'status': appt.status,
    }


def active_appointments_for(doctor_id: str, day: date, exclude_id: Optional[str] = None) -> list[Appointment]:
    qs = Appointment.objects.filter(
        doctor_id=doctor_id,
        appointment_date=day,
        status__in=Appointment.ACTIVE_STATUSES,
    )
    if exclude_id:
        qs = qs.exclude(appointment_id=exclude_id)
    return list(qs.order_by('start_time'))


def find_conflicts(
    doctor_id: str,
    day: date,
    start: time,
    end: time,
    exclude_id: Optional[str] = None,
    *,
    fetch: Callable[..., list] = active_appointments_for,
) -> ConflictResult:
    """Synchronous conflict check.

    Store read errors propagate unchanged; callers must then treat the
    conflict status as unknown and refuse the booking.
    """
    if not start < end:
        raise ValueError('start time must be before end time')
    existing = fetch(doctor_id, day, exclude_id)
    conflicts = [a for a in existing if intervals_overlap(a.start_time, a.end_time, start, end)]
    if conflicts:
        logger.info(
            'Conflict for doctor %s on %s %s-%s: %s',
            doctor_id, day, start, end, [a.appointment_id for a in conflicts],
        )
    return ConflictResult(has_conflict=bool(conflicts), conflicting_appointments=conflicts)


class ConflictDetector:
    """Async facade over :func:`find_conflicts` for code running on the event loop."""

    def __init__(self, fetch: Callable[..., list] = active_appointments_for):
        self._fetch = fetch

    async def check(
        self,
        doctor_id: str,
        day: date,
        start: time,
        end: time,
        exclude_id: Optional[str] = None,
    ) -> ConflictResult:
        return await sync_to_async(find_conflicts)(
            doctor_id, day, start, end, exclude_id, fetch=self._fetch
        )
