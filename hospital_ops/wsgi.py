"""
WSGI config for the hospital operations backend.

Serves HTTP only.  Model changes committed by a WSGI worker are not seen
by the realtime fan-out, which lives in the ASGI process; see ``asgi.py``.
"""
import os

from django.core.wsgi import get_wsgi_application  # type: ignore

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'hospital_ops.settings')

application = get_wsgi_application()
