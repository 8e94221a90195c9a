"""
Booking endpoints.

These are the synchronous callers of the conflict check: a booking or
reschedule is only written after the check comes back clean, and a
rejected request returns every conflicting appointment (HTTP 409) so the
client can offer another slot.  A failed check (database error) surfaces
as a 500 and nothing is written.
"""
from __future__ import annotations

from django.conf import settings
from django.core.cache import cache
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from clinic.models import Appointment
from clinic.serializers.appointments import (
    BookingSerializer,
    ConflictCheckSerializer,
    ScheduleQuerySerializer,
    SlotSerializer,
    format_appointment,
)
from clinic.services import cache as cache_service
from clinic.services.appointments import book_appointment, reschedule_appointment
from clinic.services.conflicts import active_appointments_for, find_conflicts


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def check_conflicts(request):
    s = ConflictCheckSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    d = s.validated_data
    result = find_conflicts(
        d['doctorId'], d['appointmentDate'], d['startTime'], d['endTime'],
        exclude_id=d.get('excludeAppointmentId') or None,
    )
    return Response({'ok': True, **result.to_dict()})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def create_appointment(request):
    s = BookingSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    d = s.validated_data
    appt = book_appointment(
        patient_id=d['patientId'],
        doctor_id=d['doctorId'],
        appointment_date=d['appointmentDate'],
        start_time=d['startTime'],
        end_time=d['endTime'],
        appointment_type=d.get('appointmentType') or 'consultation',
        reason=d.get('reason', ''),
        notes=d.get('notes', ''),
    )
    return Response({'ok': True, 'data': format_appointment(appt)}, status=status.HTTP_201_CREATED)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def reschedule(request, appointment_id: str):
    s = SlotSerializer(data=request.data)
    s.is_valid(raise_exception=True)
    appt = Appointment.objects.filter(appointment_id=appointment_id).first()
    if appt is None:
        return Response({'ok': False, 'detail': 'appointment not found'}, status=status.HTTP_404_NOT_FOUND)
    if appt.status not in Appointment.ACTIVE_STATUSES:
        return Response({'ok': False, 'detail': f'cannot reschedule a {appt.status} appointment'}, status=status.HTTP_400_BAD_REQUEST)
    d = s.validated_data
    appt = reschedule_appointment(
        appt, appointment_date=d['appointmentDate'], start_time=d['startTime'], end_time=d['endTime'],
    )
    return Response({'ok': True, 'data': format_appointment(appt)})


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def doctor_schedule(request, doctor_id: str):
    """Active appointments of a doctor on one day (cached until the next change)."""
    q = ScheduleQuerySerializer(data=request.query_params)
    q.is_valid(raise_exception=True)
    day = q.validated_data['date']
    ck = cache_service.doctor_schedule_key(doctor_id, day.isoformat())
    cached = cache.get(ck)
    if cached is not None:
        return Response(cached)
    data = [format_appointment(a) for a in active_appointments_for(doctor_id, day)]
    payload = {'ok': True, 'meta': {'doctorId': doctor_id, 'date': day.isoformat()}, 'data': data}
    cache.set(ck, payload, settings.SCHEDULE_CACHE_TTL)
    return Response(payload)
