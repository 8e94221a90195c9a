"""
Registry of live websocket connections and their rooms.

Rooms are channel-layer groups.  The registry mirrors each connection's
memberships locally so it can answer "who is in room X" without asking
the layer.  It is mutated only from consumer callbacks on the event loop.

Every push is best effort: when the layer is missing or a send fails the
registry logs and returns.  A live update is never a reason to fail the
write that caused it.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from channels.layers import get_channel_layer
from django.utils import timezone
from prometheus_client import Counter, Gauge

logger = logging.getLogger(__name__)

BROADCAST_GROUP = 'broadcast'
STAFF_ROOM = 'medical_staff'
ADMIN_ROOM = 'admin_dashboard'
STAFF_ROLES = {'doctor', 'nurse', 'admin'}

# Channel layer group names: ASCII alphanumerics, hyphens, underscores, periods; < 100 chars.
ROOM_NAME_RE = re.compile(r'^[A-Za-z0-9_.\-]{1,99}$')

CONNECTED_CLIENTS = Gauge('clinic_ws_connected_clients', 'Websocket clients connected to this process')
BROADCAST_FAILURES = Counter('clinic_ws_broadcast_failures_total', 'Failed websocket pushes', ['target'])


@dataclass
class ConnectedClient:
    id: str
    user_id: Optional[str] = None
    role: Optional[str] = None
    doctor_id: Optional[str] = None
    patient_id: Optional[str] = None
    rooms: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=timezone.now)


def validate_room(room) -> str:
    if not isinstance(room, str) or not ROOM_NAME_RE.match(room):
        raise ValueError(f'invalid room name: {room!r}')
    return room


def _stamp(data, **flags) -> dict:
    body = dict(data) if isinstance(data, dict) else {'value': data}
    body.update(flags)
    body['timestamp'] = timezone.now().isoformat()
    return body


class ConnectionRegistry:
    def __init__(self):
        self._layer = None
        self._clients: dict[str, ConnectedClient] = {}

    def initialize(self, channel_layer=None) -> bool:
        layer = channel_layer or get_channel_layer()
        if layer is None:
            logger.warning('No channel layer configured - websocket fan-out disabled')
            return False
        self._layer = layer
        logger.info('Connection registry initialized on %s', type(layer).__name__)
        return True

    def is_ready(self) -> bool:
        return self._layer is not None

    # -- connection lifecycle (called by the consumer) ------------------------

    async def register(self, channel_name: str) -> ConnectedClient:
        client = ConnectedClient(id=channel_name)
        self._clients[channel_name] = client
        if self._layer is not None:
            await self._layer.group_add(BROADCAST_GROUP, channel_name)
        CONNECTED_CLIENTS.set(len(self._clients))
        logger.info('Websocket connected: %s', channel_name)
        return client

    async def unregister(self, channel_name: str, reason=None) -> None:
        client = self._clients.pop(channel_name, None)
        if client is None:
            return
        if self._layer is not None:
            for group in [BROADCAST_GROUP, *client.rooms]:
                await self._layer.group_discard(group, channel_name)
        CONNECTED_CLIENTS.set(len(self._clients))
        logger.info(
            'Websocket disconnected: %s user=%s reason=%s after %.1fs',
            channel_name, client.user_id, reason,
            (timezone.now() - client.connected_at).total_seconds(),
        )

    def get_client(self, client_id: str) -> Optional[ConnectedClient]:
        return self._clients.get(client_id)

    async def authenticate(
        self,
        client_id: str,
        user_id,
        role: Optional[str],
        doctor_id=None,
        patient_id=None,
    ) -> list[str]:
        """Bind an identity to the connection and join its default rooms.

        The identity is trusted as given; token verification happens before
        the client reaches this point.
        """
        client = self._clients.get(client_id)
        if client is None:
            raise LookupError(f'unknown client {client_id}')
        if user_id in (None, ''):
            raise ValueError('userId is required')
        user_id = str(user_id)
        doctor_id = None if doctor_id in (None, '') else str(doctor_id)
        patient_id = None if patient_id in (None, '') else str(patient_id)

        rooms = [f'user_{user_id}']
        if role:
            rooms.append(f'role_{role}')
        if role == 'doctor' and doctor_id:
            rooms.append(f'doctor_{doctor_id}')
        elif role == 'patient' and patient_id:
            rooms.append(f'patient_{patient_id}')
        if role in STAFF_ROLES:
            rooms.append(STAFF_ROOM)
        if role == 'admin':
            rooms.append(ADMIN_ROOM)
        # Nothing is bound until every room name is known to be valid.
        for room in rooms:
            validate_room(room)

        client.user_id = user_id
        client.role = role
        client.doctor_id = doctor_id
        client.patient_id = patient_id
        for room in rooms:
            await self.join_room(client_id, room)
        logger.info('Websocket %s authenticated as %s (%s)', client_id, client.user_id, role)
        return sorted(client.rooms)

    async def join_room(self, client_id: str, room: str) -> bool:
        """Add the client to ``room``; returns False when it already was a member."""
        validate_room(room)
        client = self._clients.get(client_id)
        if client is None:
            raise LookupError(f'unknown client {client_id}')
        if room in client.rooms:
            return False
        if self._layer is not None:
            await self._layer.group_add(room, client_id)
        client.rooms.add(room)
        logger.debug('Websocket %s joined %s', client_id, room)
        return True

    async def leave_room(self, client_id: str, room: str) -> bool:
        validate_room(room)
        client = self._clients.get(client_id)
        if client is None:
            raise LookupError(f'unknown client {client_id}')
        if room not in client.rooms:
            return False
        if self._layer is not None:
            await self._layer.group_discard(room, client_id)
        client.rooms.discard(room)
        logger.debug('Websocket %s left %s', client_id, room)
        return True

    # -- fan-out --------------------------------------------------------------

    async def broadcast_to_all(self, event: str, data) -> None:
        await self._push('all', BROADCAST_GROUP, event, _stamp(data, broadcast=True), group=True)

    async def broadcast_to_room(self, room: str, event: str, data) -> None:
        await self._push('room', room, event, _stamp(data, room=room), group=True)

    async def send_to_client(self, client_id: str, event: str, data) -> None:
        await self._push('direct', client_id, event, _stamp(data, direct=True), group=False)

    async def _push(self, target: str, name: str, event: str, data: dict, *, group: bool) -> None:
        if self._layer is None:
            logger.warning('Websocket layer not initialized - skipping %s push of %s', target, event)
            return
        message = {'type': 'realtime.event', 'event': event, 'data': data}
        try:
            if group:
                await self._layer.group_send(name, message)
            else:
                await self._layer.send(name, message)
        except Exception:
            BROADCAST_FAILURES.labels(target=target).inc()
            logger.exception('Websocket %s push of %s to %s failed', target, event, name)
            return
        logger.debug('Pushed %s to %s %s', event, target, name)

    # -- introspection --------------------------------------------------------

    def get_connected_clients_count(self) -> int:
        return len(self._clients)

    def get_clients_in_room(self, room: str) -> list[ConnectedClient]:
        return [c for c in self._clients.values() if room in c.rooms]

    async def disconnect(self) -> None:
        """Close every connection and forget all state.  Safe to call twice."""
        layer, clients = self._layer, list(self._clients)
        self._layer = None
        self._clients.clear()
        CONNECTED_CLIENTS.set(0)
        if layer is None:
            return
        for channel_name in clients:
            try:
                await layer.send(channel_name, {'type': 'realtime.close'})
            except Exception:
                logger.exception('Could not close websocket %s', channel_name)
        logger.info('Connection registry shut down (%d clients closed)', len(clients))
