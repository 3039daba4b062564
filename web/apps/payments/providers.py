"""Wiring for the payment gateway and the services built on it.

With ``settings.USE_HTTP_ADAPTERS`` the HTTP gateway is used; otherwise a
process-wide ``SandboxGateway`` keeps provider state in memory so a local
run (or a test) sees the same provider across requests.
"""

import threading

from django.conf import settings

from .adapters import SandboxGateway
from .gateway import HttpPaymentGateway, PaymentGatewayPort
from .reconciliation import PaymentReconciler
from .service import PaymentService

_sandbox: SandboxGateway | None = None
_sandbox_lock = threading.Lock()


def get_sandbox_gateway() -> SandboxGateway:
    global _sandbox
    with _sandbox_lock:
        if _sandbox is None:
            _sandbox = SandboxGateway()
        return _sandbox


def get_gateway() -> PaymentGatewayPort:
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        return HttpPaymentGateway()
    return get_sandbox_gateway()


def get_payment_service() -> PaymentService:
    return PaymentService(get_gateway())


def get_reconciler() -> PaymentReconciler:
    return PaymentReconciler(get_gateway())
