import logging

from django.conf import settings
from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders import providers

logger = logging.getLogger("orders")


def health_view(_request):
    """Liveness of the database and, when it is in use, the stock service."""
    components = {}
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        components["db"] = {"ok": True}
    except DatabaseError as exc:
        logger.error("health check: database unavailable", extra={"error": str(exc)})
        components["db"] = {"ok": False}

    # The stock service only serves cart snapshots; it is reported but
    # does not fail the check, since checkout never depends on it.
    if settings.USE_HTTP_ADAPTERS:
        components["inventory"] = {"ok": providers.get_stock_source().health()}

    ok = components["db"]["ok"]
    return JsonResponse({"ok": ok, "components": components}, status=200 if ok else 503)
