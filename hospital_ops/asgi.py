"""
ASGI config for the hospital operations backend.

Wires HTTP (Django), WebSocket (Channels) and the ASGI lifespan, which
starts the realtime service.  Model changes are observed in this process
only, so writes must be served by this application for live fan-out.
Order matters: configure Django before importing any Django-dependent modules.
"""
import os

# 1) Configure settings before any Django import
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "hospital_ops.settings")

# 2) Ensure Django is fully set up (so models/auth work during imports)
import django  # noqa: E402
django.setup()  # noqa: E402

# 3) Now import ASGI/Channels components and app consumers
from django.core.asgi import get_asgi_application  # noqa: E402
from channels.routing import ProtocolTypeRouter, URLRouter  # noqa: E402
from channels.auth import AuthMiddlewareStack  # noqa: E402
from django.urls import path  # noqa: E402

from clinic.realtime.consumers import RealtimeConsumer  # noqa: E402
from clinic.realtime.lifespan import RealtimeLifespan  # noqa: E402
from clinic.realtime.service import RealtimeService  # noqa: E402

django_asgi_app = get_asgi_application()

realtime = RealtimeService()

websocket_urlpatterns = [
    path("ws/realtime/", RealtimeConsumer.as_asgi(registry=realtime.registry)),
]

application = ProtocolTypeRouter({
    "http": django_asgi_app,
    "websocket": AuthMiddlewareStack(URLRouter(websocket_urlpatterns)),
    "lifespan": RealtimeLifespan(realtime),
})
