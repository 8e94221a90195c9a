from django.core.cache import cache
from django.db import connections
from django.http import JsonResponse


def healthz(request):
    """Liveness of the stores this process reads: database and cache."""
    checks = {}
    try:
        with connections['default'].cursor() as c:
            c.execute('SELECT 1')
            row = c.fetchone()
        checks['db'] = bool(row and row[0] == 1)
    except Exception as e:
        return JsonResponse({'ok': False, 'db': False, 'error': str(e)}, status=500)
    try:
        cache.set('healthz', 1, 5)
        checks['cache'] = cache.get('healthz') == 1
    except Exception:
        checks['cache'] = False
    return JsonResponse({'ok': all(checks.values()), **checks}, status=200 if all(checks.values()) else 503)
