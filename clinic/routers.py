"""
URL mappings for the clinic API.

Paths carry no trailing slash (APPEND_SLASH is off).
"""
from django.urls import path

from .views import appointments, health

urlpatterns = [
    path('healthz', health.healthz, name='healthz'),
    path('api/appointments', appointments.create_appointment, name='appointment_create'),
    path('api/appointments/check-conflicts', appointments.check_conflicts, name='appointment_check_conflicts'),
    path('api/appointments/<str:appointment_id>/reschedule', appointments.reschedule, name='appointment_reschedule'),
    path('api/doctors/<str:doctor_id>/schedule', appointments.doctor_schedule, name='doctor_schedule'),
]
