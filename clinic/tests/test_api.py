"""
Integration tests for the booking API.

These tests exercise conflict-checked booking and rescheduling, the
HTTP 409 body returned for a clash, and the cached doctor schedule.
The tests use Django REST Framework's APIClient within the APITestCase
base class.

To run the tests:

```
pytest -q clinic/tests
```
"""
from datetime import date, time

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APITestCase

from clinic.models import Appointment
from clinic.services import cache as cache_service


class BookingAPITests(APITestCase):
    def setUp(self) -> None:
        cache.clear()
        self.user = get_user_model().objects.create_user(username='frontdesk', password='deskpass')
        self.client.force_authenticate(self.user)
        self.existing = Appointment.objects.create(
            appointment_id='APT1',
            patient_id='P1',
            doctor_id='D1',
            appointment_date=date(2024, 3, 4),
            start_time=time(9, 0),
            end_time=time(9, 30),
        )

    def book(self, start, end, **extra):
        body = {
            'doctorId': 'D1',
            'patientId': 'P2',
            'appointmentDate': '2024-03-04',
            'startTime': start,
            'endTime': end,
        }
        body.update(extra)
        return self.client.post(reverse('appointment_create'), body, format='json')

    def test_requires_authentication(self):
        self.client.force_authenticate(None)
        resp = self.book('10:00', '10:30')
        self.assertEqual(resp.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_overlapping_booking_is_rejected_with_conflicts(self):
        resp = self.book('09:15', '09:45')
        self.assertEqual(resp.status_code, status.HTTP_409_CONFLICT)
        self.assertFalse(resp.data['ok'])
        self.assertEqual(resp.data['error']['code'], 'scheduling_conflict')
        self.assertTrue(resp.data['has_conflict'])
        self.assertEqual(resp.data['message'], 'Time slot conflicts with existing appointment')
        self.assertEqual([c['appointment_id'] for c in resp.data['conflicting_appointments']], ['APT1'])
        self.assertEqual(Appointment.objects.count(), 1)

    def test_back_to_back_booking_is_accepted(self):
        resp = self.book('09:30', '10:00', appointmentType='follow_up')
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        data = resp.data['data']
        self.assertTrue(data['appointmentId'].startswith('APT'))
        self.assertEqual(data['startTime'], '09:30')
        self.assertEqual(data['type'], 'follow_up')
        self.assertEqual(data['status'], 'scheduled')
        self.assertEqual(Appointment.objects.count(), 2)

    def test_cancelled_slot_can_be_rebooked(self):
        self.existing.status = Appointment.STATUS_CANCELLED
        self.existing.save()
        resp = self.book('09:00', '09:30')
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)

    def test_inverted_slot_is_a_validation_error(self):
        resp = self.book('10:00', '09:00')
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(resp.data['error']['code'], 'api_error')

    def test_check_conflicts_endpoint(self):
        url = reverse('appointment_check_conflicts')
        body = {'doctorId': 'D1', 'appointmentDate': '2024-03-04', 'startTime': '09:00', 'endTime': '09:45'}

        resp = self.client.post(url, body, format='json')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertTrue(resp.data['has_conflict'])

        resp = self.client.post(url, {**body, 'excludeAppointmentId': 'APT1'}, format='json')
        self.assertFalse(resp.data['has_conflict'])
        self.assertEqual(resp.data['conflicting_appointments'], [])

    def test_reschedule_excludes_itself(self):
        url = reverse('appointment_reschedule', args=['APT1'])
        resp = self.client.post(url, {
            'appointmentDate': '2024-03-04', 'startTime': '09:00', 'endTime': '09:45',
        }, format='json')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.existing.refresh_from_db()
        self.assertEqual(self.existing.end_time, time(9, 45))

    def test_reschedule_into_another_appointment_conflicts(self):
        Appointment.objects.create(
            appointment_id='APT2', patient_id='P3', doctor_id='D1', appointment_date=date(2024, 3, 4),
            start_time=time(10, 0), end_time=time(10, 30),
        )
        url = reverse('appointment_reschedule', args=['APT1'])
        resp = self.client.post(url, {
            'appointmentDate': '2024-03-04', 'startTime': '10:15', 'endTime': '10:45',
        }, format='json')
        self.assertEqual(resp.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual([c['appointment_id'] for c in resp.data['conflicting_appointments']], ['APT2'])
        self.existing.refresh_from_db()
        self.assertEqual(self.existing.start_time, time(9, 0))

    def test_reschedule_unknown_or_inactive(self):
        body = {'appointmentDate': '2024-03-04', 'startTime': '11:00', 'endTime': '11:30'}
        resp = self.client.post(reverse('appointment_reschedule', args=['NOPE']), body, format='json')
        self.assertEqual(resp.status_code, status.HTTP_404_NOT_FOUND)

        self.existing.status = Appointment.STATUS_COMPLETED
        self.existing.save()
        resp = self.client.post(reverse('appointment_reschedule', args=['APT1']), body, format='json')
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)

    def test_doctor_schedule_is_cached_until_invalidated(self):
        url = reverse('doctor_schedule', args=['D1'])
        resp = self.client.get(url, {'date': '2024-03-04'})
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual([a['appointmentId'] for a in resp.data['data']], ['APT1'])

        Appointment.objects.create(
            appointment_id='APT2', patient_id='P3', doctor_id='D1', appointment_date=date(2024, 3, 4),
            start_time=time(8, 0), end_time=time(8, 30),
        )
        resp = self.client.get(url, {'date': '2024-03-04'})
        self.assertEqual(len(resp.data['data']), 1)

        cache_service.invalidate(cache_service.keys_for(doctor_id='D1', day='2024-03-04'))
        resp = self.client.get(url, {'date': '2024-03-04'})
        self.assertEqual([a['appointmentId'] for a in resp.data['data']], ['APT2', 'APT1'])

    def test_healthz(self):
        resp = self.client.get(reverse('healthz'))
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertTrue(resp.json()['ok'])
