"""Realtime propagation of committed appointment and medical record changes.

``ChangeFeedListener`` turns model signals into ``ChangeEvent`` objects,
``EventRouter`` fans each event out to the ``DurableEventBus`` and the
``ConnectionRegistry``, and ``RealtimeService`` wires them together for the
lifetime of the ASGI process.
"""
