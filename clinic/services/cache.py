"""
Cache keys for read-mostly listings and their invalidation.

Keys are derived from the ids carried on change events so a single event
can drop every listing it may have made stale.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from django.core.cache import cache
from django.utils import timezone

logger = logging.getLogger(__name__)

VERSION_KEY = 'appointments:version'


def doctor_schedule_key(doctor_id: str, day: str) -> str:
    return f'schedule:d={doctor_id}:date={day}'


def doctor_availability_key(doctor_id: str) -> str:
    return f'availability:d={doctor_id}'


def patient_appointments_key(patient_id: str) -> str:
    return f'appointments:p={patient_id}'


def medical_record_key(record_id: str) -> str:
    return f'record:{record_id}'


def keys_for(
    *,
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    day: Optional[str] = None,
    record_id: Optional[str] = None,
) -> list[str]:
    keys = []
    if doctor_id:
        keys.append(doctor_availability_key(doctor_id))
        if day:
            keys.append(doctor_schedule_key(doctor_id, day))
    if patient_id:
        keys.append(patient_appointments_key(patient_id))
    if record_id:
        keys.append(medical_record_key(record_id))
    return keys


def invalidate(keys: Iterable[str]) -> list[str]:
    keys = list(keys)
    if keys:
        cache.delete_many(keys)
    now = timezone.now()
    cache.set(VERSION_KEY, int(now.timestamp()), None)
    logger.debug('Invalidated cache keys %s', keys)
    return keys
