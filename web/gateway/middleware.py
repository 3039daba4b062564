"""Request-scoped context for correlation and idempotency.

Every request gets a request id (client supplied ``X-Request-ID`` or a new
UUIDv4) and, when present, its ``Idempotency-Key``. Both are stored on the
request and in ContextVars so logging filters and outbound HTTP clients can
read them without threading the values through call signatures. The
response echoes the request id back in ``X-Request-ID``.
"""

import contextvars
import os
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
IDEMPOTENCY_KEY_CTX = contextvars.ContextVar("idempotency_key", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(256 * 1024)))


class RequestContextMiddleware(MiddlewareMixin):
    """Bind the request id and idempotency key for the current request."""

    REQUEST_HEADER = "HTTP_X_REQUEST_ID"
    IDEMPOTENCY_HEADER = "HTTP_IDEMPOTENCY_KEY"
    RESPONSE_HEADER = "X-Request-ID"

    def process_request(self, request):
        rid = request.META.get(self.REQUEST_HEADER) or str(uuid.uuid4())
        request.request_id = rid
        request._ctx_tokens = (
            REQUEST_ID_CTX.set(rid),
            IDEMPOTENCY_KEY_CTX.set(request.META.get(self.IDEMPOTENCY_HEADER) or "-"),
        )

    def process_response(self, request, response):
        """Echo the request id and reset the context for the worker thread.

        gthread workers reuse threads between requests, so the vars are
        reset here rather than left to leak into the next request's logs.
        """
        response[self.RESPONSE_HEADER] = getattr(request, "request_id", REQUEST_ID_CTX.get())
        tokens = getattr(request, "_ctx_tokens", None)
        if tokens:
            rid_token, key_token = tokens
            REQUEST_ID_CTX.reset(rid_token)
            IDEMPOTENCY_KEY_CTX.reset(key_token)
            request._ctx_tokens = None
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Reject oversized API bodies before they reach the views."""

    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
            return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)
        return None
