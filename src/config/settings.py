import re
from datetime import timedelta
from pathlib import Path

import structlog
from decouple import Csv, config
from dj_database_url import parse as db_url

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent

# Security - Fail Fast: no default forces explicit configuration
SECRET_KEY = config("SECRET_KEY")

DEBUG = config("DEBUG", default=False, cast=bool)

ALLOWED_HOSTS = config("ALLOWED_HOSTS", default="127.0.0.1,localhost", cast=Csv())

# Application definition
INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    # Third-party
    "rest_framework",
    # Local Apps (Modules)
    "modules.core",
    "modules.shopify",
    "modules.orders",
    "modules.fulfillment",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "modules.core.middleware.CorrelationIdMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
]

ROOT_URLCONF = "config.urls"

TEMPLATES = []

# Database - sqlite for local development, DATABASE_URL in production
DATABASES = {
    "default": config(
        "DATABASE_URL", default=f'sqlite:///{BASE_DIR / "db.sqlite3"}', cast=db_url
    )
}

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ---------------------------------------------------------------------------
# Celery (async tasks via Redis)
# ---------------------------------------------------------------------------
CELERY_BROKER_URL = config("CELERY_BROKER_URL", default="redis://localhost:6379/0")
CELERY_RESULT_BACKEND = config(
    "CELERY_RESULT_BACKEND", default="redis://localhost:6379/0"
)
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = "json"
CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE

# Scheduled drain + sweep of the fulfillment queue
CELERY_BEAT_SCHEDULE = {
    "fulfillment-drain-queue": {
        "task": "fulfillment.drain_queue",
        "schedule": config("FULFILLMENT_DRAIN_INTERVAL", default=30.0, cast=float),
    },
    "fulfillment-sweep-unsynced": {
        "task": "fulfillment.sweep_unsynced",
        "schedule": config("FULFILLMENT_SWEEP_INTERVAL", default=900.0, cast=float),
    },
}

# ---------------------------------------------------------------------------
# Fulfillment sync (Shopify)
# ---------------------------------------------------------------------------
FULFILLMENT_SYNC = {
    "MAX_RETRIES": config("FULFILLMENT_MAX_RETRIES", default=3, cast=int),
    "INITIAL_DELAY": config("FULFILLMENT_INITIAL_DELAY", default=1.0, cast=float),
    "TIMEOUT": config("FULFILLMENT_TIMEOUT", default=30.0, cast=float),
    "MAX_DELAY": config("FULFILLMENT_MAX_DELAY", default=30.0, cast=float),
    "BATCH_SIZE": config("FULFILLMENT_BATCH_SIZE", default=10, cast=int),
    "MAX_DRAIN_CYCLES": config("FULFILLMENT_MAX_DRAIN_CYCLES", default=5, cast=int),
    "WORKERS": config("FULFILLMENT_WORKERS", default=5, cast=int),
    "REQUEUE_DELAY": config("FULFILLMENT_REQUEUE_DELAY", default=60.0, cast=float),
    "SWEEP_LIMIT": config("FULFILLMENT_SWEEP_LIMIT", default=50, cast=int),
    "STALE_AFTER": config("FULFILLMENT_STALE_AFTER", default=600.0, cast=float),
    "DRAIN_ON_EVENT": config("FULFILLMENT_DRAIN_ON_EVENT", default=True, cast=bool),
    "API_VERSION": config("SHOPIFY_API_VERSION", default="2023-10"),
    "TRACKING_COMPANY": config(
        "FULFILLMENT_TRACKING_COMPANY", default="DeliveryOS Local Delivery"
    ),
    "NOTIFY_CUSTOMER": config("FULFILLMENT_NOTIFY_CUSTOMER", default=True, cast=bool),
    "USER_AGENT": config("FULFILLMENT_USER_AGENT", default="DeliveryOS/1.0"),
}

# DRF: fail closed, every endpoint requires auth by default
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework_simplejwt.authentication.JWTAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_THROTTLE_CLASSES": [
        "rest_framework.throttling.ScopedRateThrottle",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "fulfillment_sync": "30/minute",
    },
    "DEFAULT_RENDERER_CLASSES": [
        "rest_framework.renderers.JSONRenderer",
    ],
}

# ---------------------------------------------------------------------------
# SimpleJWT (local JWT for dev/test)
# ---------------------------------------------------------------------------
SIMPLE_JWT = {
    "ALGORITHM": "HS256",
    "SIGNING_KEY": SECRET_KEY,
    "AUTH_HEADER_TYPES": ("Bearer",),
    "ACCESS_TOKEN_LIFETIME": timedelta(minutes=15),
    "REFRESH_TOKEN_LIFETIME": timedelta(days=1),
}

# ---------------------------------------------------------------------------
# Structured Logging (structlog + Django LOGGING)
# ---------------------------------------------------------------------------
SENSITIVE_PATTERN = re.compile(
    r"(shp(?:at|ca|ss)_[0-9A-Za-z]+)"  # Shopify Admin API access token
    r"|(password|passwd|secret|token|authorization|access-token)"
    r"""([=:]\s*["']?)([^\s,}"']+)""",
    re.IGNORECASE,
)


def mask_sensitive_data(_, __, event_dict):
    """Processor that masks access tokens, passwords and secrets in log values."""
    for key, value in list(event_dict.items()):
        if isinstance(value, str):
            event_dict[key] = SENSITIVE_PATTERN.sub("***MASKED***", value)
    return event_dict


# Shared processors used by both structlog and stdlib logging
_shared_processors = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso"),
    mask_sensitive_data,
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]

structlog.configure(
    processors=[
        *_shared_processors,
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ],
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "json": {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": [
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.JSONRenderer(),
            ],
            "foreign_pre_chain": _shared_processors,
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "django.server": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
        "celery": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
    },
}
