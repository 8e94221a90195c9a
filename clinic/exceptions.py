from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler


class SchedulingConflict(Exception):
    """Raised when a booking overlaps an active appointment of the same doctor.

    Carries the full :class:`~clinic.services.conflicts.ConflictResult` so the
    caller can offer alternative slots.
    """

    def __init__(self, result, message: str = 'Time slot conflicts with existing appointment'):
        super().__init__(message)
        self.result = result
        self.message = message


class EventBusError(Exception):
    """Broker connect or publish failure."""


def api_exception_handler(exc, context):
    if isinstance(exc, SchedulingConflict):
        return Response(
            {
                'ok': False,
                'error': {'code': 'scheduling_conflict', 'message': exc.message},
                **exc.result.to_dict(),
            },
            status=status.HTTP_409_CONFLICT,
        )
    resp = drf_exception_handler(exc, context)
    if resp is None:
        return Response({'ok': False, 'error': {'code': 'server_error', 'message': str(exc)}}, status=500)
    if isinstance(resp.data, dict):
        detail = resp.data.get('detail') or resp.data
    else:
        detail = str(resp.data)
    return Response({'ok': False, 'error': {'code': 'api_error', 'message': detail}}, status=resp.status_code)
