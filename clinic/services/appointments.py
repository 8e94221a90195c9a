"""
Booking and rescheduling flows.

Both flows run the conflict check first and abort with
:class:`~clinic.exceptions.SchedulingConflict` before touching the table.
The check takes no lock, so two requests for partially overlapping slots
can still both succeed.  Exact duplicates are stopped by the
``appointment_unique_active_slot`` constraint.
"""
from __future__ import annotations

import logging
import uuid
from datetime import date, time
from typing import Optional

from django.db import IntegrityError, transaction

from clinic.exceptions import SchedulingConflict
from clinic.models import Appointment
from clinic.services.conflicts import ConflictResult, find_conflicts

logger = logging.getLogger(__name__)


def new_appointment_id() -> str:
    return f"APT{uuid.uuid4().hex[:12].upper()}"


def _duplicate_slot(doctor_id: str, day: date, start: time, end: time, exclude_id: Optional[str]) -> SchedulingConflict:
    clash = Appointment.objects.filter(
        doctor_id=doctor_id, appointment_date=day, start_time=start, end_time=end,
        status__in=Appointment.ACTIVE_STATUSES,
    )
    if exclude_id:
        clash = clash.exclude(appointment_id=exclude_id)
    return SchedulingConflict(ConflictResult(has_conflict=True, conflicting_appointments=list(clash)))


def book_appointment(
    *,
    patient_id: str,
    doctor_id: str,
    appointment_date: date,
    start_time: time,
    end_time: time,
    appointment_type: str = 'consultation',
    reason: str = '',
    notes: str = '',
) -> Appointment:
    result = find_conflicts(doctor_id, appointment_date, start_time, end_time)
    if result.has_conflict:
        raise SchedulingConflict(result)
    try:
        with transaction.atomic():
            appt = Appointment.objects.create(
                appointment_id=new_appointment_id(),
                patient_id=patient_id,
                doctor_id=doctor_id,
                appointment_date=appointment_date,
                start_time=start_time,
                end_time=end_time,
                appointment_type=appointment_type,
                reason=reason,
                notes=notes,
            )
    except IntegrityError:
        logger.warning('Concurrent booking for doctor %s on %s %s-%s', doctor_id, appointment_date, start_time, end_time)
        raise _duplicate_slot(doctor_id, appointment_date, start_time, end_time, None)
    logger.info('Booked %s for patient %s with doctor %s', appt.appointment_id, patient_id, doctor_id)
    return appt


def reschedule_appointment(
    appt: Appointment,
    *,
    appointment_date: date,
    start_time: time,
    end_time: time,
) -> Appointment:
    result = find_conflicts(appt.doctor_id, appointment_date, start_time, end_time, exclude_id=appt.appointment_id)
    if result.has_conflict:
        raise SchedulingConflict(result)
    appt.appointment_date = appointment_date
    appt.start_time = start_time
    appt.end_time = end_time
    try:
        with transaction.atomic():
            appt.save(update_fields=['appointment_date', 'start_time', 'end_time', 'updated_at'])
    except IntegrityError:
        raise _duplicate_slot(appt.doctor_id, appointment_date, start_time, end_time, appt.appointment_id)
    logger.info('Rescheduled %s to %s %s-%s', appt.appointment_id, appointment_date, start_time, end_time)
    return appt
