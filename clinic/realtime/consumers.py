from channels.generic.websocket import AsyncJsonWebsocketConsumer
from django.utils import timezone


class RealtimeConsumer(AsyncJsonWebsocketConsumer):
    """Websocket endpoint for live appointment and medical record updates.

    Frames are JSON objects ``{"event": <name>, "data": <payload>}`` in both
    directions.  Room bookkeeping is delegated to the
    :class:`~clinic.realtime.registry.ConnectionRegistry` passed through
    ``as_asgi(registry=...)``.
    """

    SUBSCRIPTIONS = {
        'subscribe_doctor': ('doctor_appointments', 'doctor_', 'doctorId'),
        'subscribe_patient': ('patient_appointments', 'patient_', 'patientId'),
        'subscribe_date': ('date_appointments', 'date_', 'date'),
        'subscribe_medical_record': ('medical_record', 'record_', 'recordId'),
    }

    def __init__(self, *args, registry=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.registry = registry

    async def emit(self, event: str, data: dict):
        await self.send_json({'event': event, 'data': data})

    async def connect(self):
        if self.registry is None:
            await self.close(code=1011)
            return
        await self.accept()
        await self.registry.register(self.channel_name)
        await self.emit('connected', {
            'message': 'Connected to hospital realtime service',
            'clientId': self.channel_name,
            'timestamp': timezone.now().isoformat(),
        })

    async def disconnect(self, close_code):
        if self.registry is not None:
            await self.registry.unregister(self.channel_name, reason=close_code)

    async def receive_json(self, content, **kwargs):
        if not isinstance(content, dict) or not isinstance(content.get('event'), str):
            await self.emit('error', {'code': 'invalid_payload', 'message': 'expected {"event": ..., "data": ...}'})
            return
        event, data = content['event'], content.get('data')
        try:
            if event == 'authenticate':
                await self.on_authenticate(data)
            elif event == 'join_room':
                await self.on_join_room(data)
            elif event == 'leave_room':
                await self.on_leave_room(data)
            elif event in self.SUBSCRIPTIONS:
                await self.on_subscribe(event, data)
            elif event == 'ping':
                await self.emit('pong', {'timestamp': timezone.now().isoformat()})
            else:
                await self.emit('error', {'code': 'unsupported_event', 'message': event})
        except (LookupError, ValueError) as exc:
            await self.emit('error', {'code': 'invalid_request', 'event': event, 'message': str(exc)})

    async def decode_json(self, text_data):
        try:
            return await super().decode_json(text_data)
        except ValueError:
            return None

    async def on_authenticate(self, data):
        data = data if isinstance(data, dict) else {}
        try:
            rooms = await self.registry.authenticate(
                self.channel_name,
                data.get('userId'),
                data.get('userRole'),
                doctor_id=data.get('doctorId'),
                patient_id=data.get('patientId'),
            )
        except (LookupError, ValueError) as exc:
            await self.emit('authentication_error', {
                'success': False,
                'message': 'Authentication failed',
                'error': str(exc),
            })
            return
        await self.emit('authenticated', {
            'success': True,
            'message': 'Authentication successful',
            'clientInfo': {'userId': data.get('userId'), 'userRole': data.get('userRole'), 'rooms': rooms},
        })

    async def on_join_room(self, room):
        await self.registry.join_room(self.channel_name, room)
        await self.emit('room_joined', {'room': room, 'message': f'Joined room: {room}'})

    async def on_leave_room(self, room):
        await self.registry.leave_room(self.channel_name, room)
        await self.emit('room_left', {'room': room, 'message': f'Left room: {room}'})

    async def on_subscribe(self, event, value):
        kind, prefix, key = self.SUBSCRIPTIONS[event]
        if value in (None, '') or isinstance(value, (dict, list)):
            raise ValueError(f'{key} is required')
        room = f'{prefix}{value}'
        await self.on_join_room(room)
        client = self.registry.get_client(self.channel_name)
        if client is not None and event == 'subscribe_doctor':
            client.doctor_id = str(value)
        elif client is not None and event == 'subscribe_patient':
            client.patient_id = str(value)
        await self.emit('subscription_confirmed', {'type': kind, key: value, 'room': room})

    # -- channel layer handlers ------------------------------------------------

    async def realtime_event(self, message):
        await self.emit(message['event'], message['data'])

    async def realtime_close(self, message):
        await self.close()
