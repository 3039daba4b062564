"""Caller identity as forwarded by the edge proxy.

Authentication happens upstream; the proxy forwards the authenticated
user's id in ``X-User-Id``. Views only read it.
"""

import re

from rest_framework.response import Response

USER_ID_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,64}$")


def user_id_from(request) -> str | None:
    raw = (request.headers.get("X-User-Id") or "").strip()
    return raw if USER_ID_RE.match(raw) else None


def auth_required() -> Response:
    return Response({"detail": "AUTH_REQUIRED"}, status=401)
