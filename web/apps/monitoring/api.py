"""Liveness/readiness endpoint.

Reports the database and the state of every outbound circuit breaker. An
open breaker degrades the report but does not fail it; only the database
does.
"""

import logging

from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.common.http import breaker_states

logger = logging.getLogger(__name__)


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        logger.exception("health check: database unreachable")

    breakers = breaker_states()
    code = 200 if db_ok else 503
    return JsonResponse(
        {
            "ok": db_ok,
            "degraded": any(state != "CLOSED" for state in breakers.values()),
            "components": {
                "db": {"ok": db_ok},
                "circuits": breakers,
            },
        },
        status=code,
    )
