"""
Django admin registrations for the clinic models.

Edits made here go through ``Model.save()`` and are therefore picked up
by the change feed like any other committed write.
"""

from django.contrib import admin

from .models import Appointment, LabResult, MedicalRecord, VitalSign


@admin.register(Appointment)
class AppointmentAdmin(admin.ModelAdmin):
    list_display = ('appointment_id', 'doctor_id', 'patient_id', 'appointment_date', 'start_time', 'end_time', 'status')
    list_filter = ('status', 'appointment_type', 'appointment_date')
    search_fields = ('appointment_id', 'doctor_id', 'patient_id')


class VitalSignInline(admin.TabularInline):
    model = VitalSign
    extra = 0


class LabResultInline(admin.TabularInline):
    model = LabResult
    extra = 0


@admin.register(MedicalRecord)
class MedicalRecordAdmin(admin.ModelAdmin):
    list_display = ('record_id', 'patient_id', 'doctor_id', 'visit_date', 'status')
    search_fields = ('record_id', 'patient_id', 'doctor_id')
    inlines = [VitalSignInline, LabResultInline]
