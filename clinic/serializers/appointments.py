from rest_framework import serializers

from clinic.models import Appointment


class SlotSerializer(serializers.Serializer):
    appointmentDate = serializers.DateField()
    startTime = serializers.TimeField()
    endTime = serializers.TimeField()

    def validate(self, attrs):
        if attrs['startTime'] >= attrs['endTime']:
            raise serializers.ValidationError('startTime must be before endTime')
        return attrs


class ConflictCheckSerializer(SlotSerializer):
    doctorId = serializers.CharField(max_length=50)
    excludeAppointmentId = serializers.CharField(max_length=20, required=False, allow_blank=True)


class BookingSerializer(SlotSerializer):
    doctorId = serializers.CharField(max_length=50)
    patientId = serializers.CharField(max_length=50)
    appointmentType = serializers.ChoiceField(choices=[c for c, _ in Appointment.TYPE_CHOICES], required=False)
    reason = serializers.CharField(required=False, allow_blank=True, max_length=2000)
    notes = serializers.CharField(required=False, allow_blank=True, max_length=2000)


class ScheduleQuerySerializer(serializers.Serializer):
    date = serializers.DateField()


def format_appointment(a: Appointment) -> dict:
    return {
        'appointmentId': a.appointment_id,
        'doctorId': a.doctor_id,
        'patientId': a.patient_id,
        'appointmentDate': a.appointment_date.isoformat(),
        'startTime': a.start_time.strftime('%H:%M'),
        'endTime': a.end_time.strftime('%H:%M'),
        'type': a.appointment_type,
        'status': a.status,
    }
