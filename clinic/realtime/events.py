"""
Change events derived from committed row changes.

An event is created once per notification, handed to the router and then
discarded.  It is never persisted or replayed here; any durability lives
in the broker.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from django.utils import timezone


class ChangeKind(str, enum.Enum):
    INSERT = 'INSERT'
    UPDATE = 'UPDATE'
    DELETE = 'DELETE'


def _now() -> datetime:
    return timezone.now()


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    return str(value)


@dataclass(frozen=True)
class ChangeEvent:
    """Fields shared by every change event.

    ``doctor_id`` and ``patient_id`` are best effort: read from the row
    after the change, or from the row before it for deletes.
    """
    kind: ChangeKind
    subject_id: Optional[str]
    doctor_id: Optional[str] = None
    patient_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_now)

    entity = 'entity'

    def to_payload(self) -> dict:
        return {
            'type': self.kind.value,
            'doctor_id': self.doctor_id,
            'patient_id': self.patient_id,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class AppointmentChangeEvent(ChangeEvent):
    old_status: Optional[str] = None
    new_status: Optional[str] = None
    appointment_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    time_changed: bool = False

    entity = 'appointment'

    @property
    def status_changed(self) -> bool:
        return self.kind is ChangeKind.UPDATE and self.old_status != self.new_status

    def to_payload(self) -> dict:
        return {
            'type': self.kind.value,
            'appointment_id': self.subject_id,
            'doctor_id': self.doctor_id,
            'patient_id': self.patient_id,
            'old_status': self.old_status,
            'new_status': self.new_status,
            'appointment_date': self.appointment_date,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class MedicalRecordChangeEvent(ChangeEvent):
    vital_signs_updated: bool = False
    lab_results_updated: bool = False
    diagnosis_updated: bool = False
    treatment_updated: bool = False

    entity = 'medical_record'

    @property
    def updated_sections(self) -> list[str]:
        flags = [
            ('vital_signs', self.vital_signs_updated),
            ('lab_results', self.lab_results_updated),
            ('diagnosis', self.diagnosis_updated),
            ('treatment', self.treatment_updated),
        ]
        return [name for name, on in flags if on]

    def to_payload(self) -> dict:
        return {
            'type': self.kind.value,
            'record_id': self.subject_id,
            'patient_id': self.patient_id,
            'doctor_id': self.doctor_id,
            'vital_signs_updated': self.vital_signs_updated,
            'lab_results_updated': self.lab_results_updated,
            'diagnosis_updated': self.diagnosis_updated,
            'treatment_updated': self.treatment_updated,
            'timestamp': self.timestamp.isoformat(),
        }


# ---------------------------------------------------------------------------
# Normalizers: one per watched table, (kind, before, after) -> ChangeEvent
# ---------------------------------------------------------------------------

def _pick(key: str, before: Optional[dict], after: Optional[dict]):
    if after and after.get(key) is not None:
        return after.get(key)
    if before:
        return before.get(key)
    return None


def _str(value) -> Optional[str]:
    return None if value is None else str(value)


def _differs(key: str, before: Optional[dict], after: Optional[dict]) -> bool:
    return (after or {}).get(key) != (before or {}).get(key)


def normalize_appointment(kind: ChangeKind, before: Optional[dict], after: Optional[dict]) -> AppointmentChangeEvent:
    time_changed = kind is ChangeKind.UPDATE and any(
        _differs(k, before, after) for k in ('appointment_date', 'start_time', 'end_time')
    )
    return AppointmentChangeEvent(
        kind=kind,
        subject_id=_str(_pick('appointment_id', before, after)),
        doctor_id=_str(_pick('doctor_id', before, after)),
        patient_id=_str(_pick('patient_id', before, after)),
        old_status=(before or {}).get('status'),
        new_status=(after or {}).get('status'),
        appointment_date=_iso(_pick('appointment_date', before, after)),
        start_time=_iso(_pick('start_time', before, after)),
        end_time=_iso(_pick('end_time', before, after)),
        time_changed=time_changed,
    )


def normalize_medical_record(kind: ChangeKind, before: Optional[dict], after: Optional[dict]) -> MedicalRecordChangeEvent:
    return MedicalRecordChangeEvent(
        kind=kind,
        subject_id=_str(_pick('record_id', before, after)),
        doctor_id=_str(_pick('doctor_id', before, after)),
        patient_id=_str(_pick('patient_id', before, after)),
        diagnosis_updated=_differs('diagnosis', before, after),
        treatment_updated=_differs('treatment_plan', before, after) or _differs('medications', before, after),
    )


def normalize_vital_signs(kind: ChangeKind, before: Optional[dict], after: Optional[dict]) -> MedicalRecordChangeEvent:
    return MedicalRecordChangeEvent(
        kind=kind,
        subject_id=_str(_pick('record_id', before, after)),
        vital_signs_updated=True,
    )


def normalize_lab_results(kind: ChangeKind, before: Optional[dict], after: Optional[dict]) -> MedicalRecordChangeEvent:
    return MedicalRecordChangeEvent(
        kind=kind,
        subject_id=_str(_pick('record_id', before, after)),
        lab_results_updated=True,
    )


NORMALIZERS = {
    'appointments': normalize_appointment,
    'medical_records': normalize_medical_record,
    'vital_signs': normalize_vital_signs,
    'lab_results': normalize_lab_results,
}
