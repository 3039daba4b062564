"""Django settings for the checkout service.

Every tunable is read from the environment with a development default so
the same module serves local runs, the test suite and containers.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-only-insecure-key")
DEBUG = env_bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = [h for h in os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.orders",
    "apps.inventory",
    "apps.payments",
    "apps.jobs",
    "apps.monitoring",
]

MIDDLEWARE = [
    "gateway.middleware.RequestContextMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

# ---- Database ----
if os.getenv("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.getenv("POSTGRES_DB"),
            "USER": os.getenv("POSTGRES_USER", "app"),
            "PASSWORD": os.getenv("POSTGRES_PASSWORD", "app"),
            "HOST": os.getenv("POSTGRES_HOST", "db"),
            "PORT": os.getenv("POSTGRES_PORT", "5432"),
            "CONN_MAX_AGE": int(os.getenv("DB_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

# ---- REST framework ----
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": [],
    "UNAUTHENTICATED_USER": None,
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_THROTTLE_RATES": {
        "checkout": os.getenv("THROTTLE_CHECKOUT", "60/min"),
        "checkout_read": os.getenv("THROTTLE_CHECKOUT_READ", "240/min"),
        "orders_detail": os.getenv("THROTTLE_ORDERS_DETAIL", "240/min"),
        "orders_admin": os.getenv("THROTTLE_ORDERS_ADMIN", "60/min"),
        "payments": os.getenv("THROTTLE_PAYMENTS", "120/min"),
        "inventory": os.getenv("THROTTLE_INVENTORY", "240/min"),
    },
}

CACHES = {
    "default": {"BACKEND": "django.core.cache.backends.locmem.LocMemCache"},
}

# ---- Collaborators ----
USE_HTTP_ADAPTERS = env_bool("USE_HTTP_ADAPTERS", False)
CART_BASE_URL = os.getenv("CART_BASE_URL", "http://cart:9010")
COUPON_BASE_URL = os.getenv("COUPON_BASE_URL", "http://coupons:9011")
PRICING_BASE_URL = os.getenv("PRICING_BASE_URL", "http://pricing:9012")
ADDRESS_BASE_URL = os.getenv("ADDRESS_BASE_URL", "http://addresses:9013")

# Tax applied by the in-process cart stub, in percent of the subtotal.
CART_TAX_RATE_PERCENT = int(os.getenv("CART_TAX_RATE_PERCENT", "18"))
CHECKOUT_CURRENCY = os.getenv("CHECKOUT_CURRENCY", "INR")

# ---- Outbound HTTP policy ----
HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "5.0"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "3"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30.0"))

# ---- Payment gateway ----
PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER", "sandbox")
GATEWAY_BASE_URL = os.getenv("GATEWAY_BASE_URL", "http://gateway-sandbox:9002")
GATEWAY_KEY_ID = os.getenv("GATEWAY_KEY_ID", "rzp_test_key")
GATEWAY_KEY_SECRET = os.getenv("GATEWAY_KEY_SECRET", "sandbox-key-secret")
GATEWAY_WEBHOOK_SECRET = os.getenv("GATEWAY_WEBHOOK_SECRET", "sandbox-webhook-secret")

# ---- Idempotency ----
IDEMPOTENCY_CACHE_TTL_SECS = int(os.getenv("IDEMPOTENCY_CACHE_TTL_SECS", "86400"))
IDEMPOTENCY_CACHE_MAX_ENTRIES = int(os.getenv("IDEMPOTENCY_CACHE_MAX_ENTRIES", "10000"))
IDEMPOTENCY_KEY_TTL_HOURS = int(os.getenv("IDEMPOTENCY_KEY_TTL_HOURS", "24"))

# ---- Reconciliation ----
PAYMENT_RETRY_MAX = int(os.getenv("PAYMENT_RETRY_MAX", "3"))
PAYMENT_RETRY_BACKOFF_BASE = int(os.getenv("PAYMENT_RETRY_BACKOFF_BASE", "2"))
PAYMENT_RETRY_BACKOFF_UNIT_SECS = int(os.getenv("PAYMENT_RETRY_BACKOFF_UNIT_SECS", "60"))
PAYMENT_SYNC_BATCH_SIZE = int(os.getenv("PAYMENT_SYNC_BATCH_SIZE", "100"))
PAYMENT_SYNC_MIN_AGE_SECS = int(os.getenv("PAYMENT_SYNC_MIN_AGE_SECS", "120"))
PAYMENT_RECONCILE_BATCH_SIZE = int(os.getenv("PAYMENT_RECONCILE_BATCH_SIZE", "100"))
PAYMENT_RECONCILE_LOOKBACK_MINUTES = int(os.getenv("PAYMENT_RECONCILE_LOOKBACK_MINUTES", "60"))
PAYMENT_RETRY_BATCH_SIZE = int(os.getenv("PAYMENT_RETRY_BATCH_SIZE", "50"))
REFUND_SYNC_BATCH_SIZE = int(os.getenv("REFUND_SYNC_BATCH_SIZE", "100"))

# ---- Scheduler (minutes) ----
SCHEDULER_POLL_SECS = float(os.getenv("SCHEDULER_POLL_SECS", "5"))
SCHEDULE_PAYMENT_SYNC_MINUTES = int(os.getenv("SCHEDULE_PAYMENT_SYNC_MINUTES", "15"))
SCHEDULE_PAYMENT_RECONCILE_MINUTES = int(os.getenv("SCHEDULE_PAYMENT_RECONCILE_MINUTES", "60"))
SCHEDULE_PAYMENT_RETRY_MINUTES = int(os.getenv("SCHEDULE_PAYMENT_RETRY_MINUTES", "5"))
SCHEDULE_REFUND_SYNC_MINUTES = int(os.getenv("SCHEDULE_REFUND_SYNC_MINUTES", "60"))
SCHEDULE_ORDER_CLEANUP_MINUTES = int(os.getenv("SCHEDULE_ORDER_CLEANUP_MINUTES", str(24 * 60)))
SCHEDULE_IDEMPOTENCY_PURGE_MINUTES = int(os.getenv("SCHEDULE_IDEMPOTENCY_PURGE_MINUTES", "60"))
ORDER_PENDING_RETENTION_HOURS = int(os.getenv("ORDER_PENDING_RETENTION_HOURS", "24"))

# ---- Logging ----
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_context": {"()": "gateway.logging_filters.RequestContextFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(idempotency_key)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_context"],
        },
    },
    "root": {"handlers": ["console"], "level": LOG_LEVEL},
    "loggers": {
        "django": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        "payments.audit": {"handlers": ["console"], "level": "INFO", "propagate": False},
    },
}
