import logging

logger = logging.getLogger(__name__)


class RealtimeLifespan:
    """ASGI ``lifespan`` handler that starts and stops the realtime service."""

    def __init__(self, service):
        self.service = service

    async def __call__(self, scope, receive, send):
        while True:
            message = await receive()
            if message['type'] == 'lifespan.startup':
                try:
                    await self.service.initialize()
                except Exception as exc:
                    await send({'type': 'lifespan.startup.failed', 'message': str(exc)})
                    return
                await send({'type': 'lifespan.startup.complete'})
            elif message['type'] == 'lifespan.shutdown':
                try:
                    await self.service.disconnect()
                except Exception:
                    logger.exception('Realtime service shutdown failed')
                await send({'type': 'lifespan.shutdown.complete'})
                return
