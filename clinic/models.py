"""
Database models for the hospital operations backend.

These tables are the system of record observed by the realtime core.
The realtime subsystem never writes to them; it reads appointments for
conflict checks and listens to committed changes on all four tables.
"""
from __future__ import annotations

from django.db import models
from django.db.models import F, Q


class Appointment(models.Model):
    """A booked slot between a patient and a doctor on a single day.

    ``start_time`` and ``end_time`` form the half-open interval
    ``[start_time, end_time)``; an appointment ending at 09:30 does not
    collide with one starting at 09:30.
    """
    STATUS_SCHEDULED = 'scheduled'
    STATUS_CONFIRMED = 'confirmed'
    STATUS_IN_PROGRESS = 'in_progress'
    STATUS_COMPLETED = 'completed'
    STATUS_CANCELLED = 'cancelled'
    STATUS_NO_SHOW = 'no_show'
    STATUS_CHOICES = [
        (STATUS_SCHEDULED, 'Scheduled'),
        (STATUS_CONFIRMED, 'Confirmed'),
        (STATUS_IN_PROGRESS, 'In progress'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_CANCELLED, 'Cancelled'),
        (STATUS_NO_SHOW, 'No show'),
    ]
    # Only these statuses occupy the doctor's time.
    ACTIVE_STATUSES = (STATUS_SCHEDULED, STATUS_CONFIRMED, STATUS_IN_PROGRESS)

    TYPE_CHOICES = [
        ('consultation', 'Consultation'),
        ('follow_up', 'Follow up'),
        ('emergency', 'Emergency'),
        ('routine_checkup', 'Routine checkup'),
        ('procedure', 'Procedure'),
    ]

    appointment_id = models.CharField(max_length=20, primary_key=True)
    patient_id = models.CharField(max_length=50, db_index=True)
    doctor_id = models.CharField(max_length=50, db_index=True)
    appointment_date = models.DateField()
    start_time = models.TimeField()
    end_time = models.TimeField()
    appointment_type = models.CharField(max_length=20, choices=TYPE_CHOICES, default='consultation')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=STATUS_SCHEDULED, db_index=True)
    reason = models.TextField(blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'appointments'
        indexes = [
            models.Index(fields=['doctor_id', 'appointment_date', 'status']),
            models.Index(fields=['patient_id', 'appointment_date']),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(start_time__lt=F('end_time')), name='appointment_start_before_end'),
            # Exact duplicate slots for one doctor are rejected by the database
            # even when two bookings pass the conflict check concurrently.
            models.UniqueConstraint(
                fields=['doctor_id', 'appointment_date', 'start_time', 'end_time'],
                condition=Q(status__in=['scheduled', 'confirmed', 'in_progress']),
                name='appointment_unique_active_slot',
            ),
        ]

    def __str__(self) -> str:
        return f"{self.appointment_id} d={self.doctor_id} {self.appointment_date} {self.start_time:%H:%M}-{self.end_time:%H:%M}"


class MedicalRecord(models.Model):
    STATUS_CHOICES = [
        ('active', 'Active'),
        ('archived', 'Archived'),
    ]
    record_id = models.CharField(max_length=20, primary_key=True)
    patient_id = models.CharField(max_length=50, db_index=True)
    doctor_id = models.CharField(max_length=50, db_index=True)
    appointment_id = models.CharField(max_length=20, blank=True, null=True)
    visit_date = models.DateField()
    chief_complaint = models.TextField(blank=True)
    diagnosis = models.TextField(blank=True)
    treatment_plan = models.TextField(blank=True)
    medications = models.JSONField(default=list, blank=True)
    notes = models.TextField(blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='active')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'medical_records'
        indexes = [models.Index(fields=['patient_id', 'visit_date'])]

    def __str__(self) -> str:
        return f"{self.record_id} p={self.patient_id}"


class VitalSign(models.Model):
    """One set of measurements taken during the visit of a medical record."""
    record = models.ForeignKey(MedicalRecord, on_delete=models.CASCADE, related_name='vital_signs')
    temperature = models.DecimalField(max_digits=4, decimal_places=1, null=True, blank=True)
    blood_pressure_systolic = models.PositiveIntegerField(null=True, blank=True)
    blood_pressure_diastolic = models.PositiveIntegerField(null=True, blank=True)
    heart_rate = models.PositiveIntegerField(null=True, blank=True)
    respiratory_rate = models.PositiveIntegerField(null=True, blank=True)
    oxygen_saturation = models.PositiveIntegerField(null=True, blank=True)
    recorded_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'vital_signs'

    def __str__(self) -> str:
        return f"vitals {self.pk} record={self.record_id}"


class LabResult(models.Model):
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('completed', 'Completed'),
        ('reviewed', 'Reviewed'),
    ]
    record = models.ForeignKey(MedicalRecord, on_delete=models.CASCADE, related_name='lab_results')
    test_name = models.CharField(max_length=255)
    result_value = models.CharField(max_length=255, blank=True)
    reference_range = models.CharField(max_length=255, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
    tested_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'lab_results'

    def __str__(self) -> str:
        return f"{self.test_name} record={self.record_id}"
