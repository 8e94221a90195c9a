"""
URL configuration for the hospital operations backend.

Routes the Django admin, the clinic API, Prometheus metrics and the
OpenAPI documentation at ``/swagger/`` and ``/redoc/``.  Websocket routes
live in ``asgi.py``.
"""
from django.contrib import admin
from django.urls import path, include

from rest_framework import permissions
from drf_yasg.views import get_schema_view
from drf_yasg import openapi

api_info = openapi.Info(
    title="Hospital Operations API",
    default_version='v1',
    description="Appointment booking with conflict checks and realtime change propagation.",
)

schema_view = get_schema_view(
    api_info,
    public=True,
    permission_classes=(permissions.AllowAny,),
)

urlpatterns = [
    path('admin/', admin.site.urls),
    path('', include('clinic.routers')),
    path('', include('django_prometheus.urls')),
    path('swagger/', schema_view.with_ui('swagger', cache_timeout=0), name='schema-swagger-ui'),
    path('redoc/', schema_view.with_ui('redoc', cache_timeout=0), name='schema-redoc'),
]
