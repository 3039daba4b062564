"""Logging filter that stamps records with the current request context."""

from logging import Filter, LogRecord

from .middleware import IDEMPOTENCY_KEY_CTX, REQUEST_ID_CTX


class RequestContextFilter(Filter):
    """Attach ``request_id`` and ``idempotency_key`` to every record.

    Values come from the ContextVars bound by ``RequestContextMiddleware``.
    Outside a request (scheduler threads, management commands) both fall
    back to ``"-"`` so the JSON formatter always has the fields. A value
    passed explicitly through ``extra=`` wins over the context.
    """

    def filter(self, record: LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = REQUEST_ID_CTX.get()
        if not getattr(record, "idempotency_key", None):
            record.idempotency_key = IDEMPOTENCY_KEY_CTX.get()
        return True
