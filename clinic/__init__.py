"""Clinic application for the hospital operations backend.

Holds the appointment and medical record tables, the scheduling conflict
checks that guard bookings, and the realtime subsystem that fans committed
changes out to the event bus and to live websocket clients.
"""
