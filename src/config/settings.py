import re
from decimal import Decimal
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
    "django.contrib.contenttypes",
    # Local Apps (Modules)
    "modules.core",
    "modules.customers",
    "modules.products",
    "modules.inventory",
    "modules.orders",
]

MIDDLEWARE: list[str] = []

# Database - row locks (SELECT ... FOR UPDATE) require PostgreSQL or MySQL in
# production; SQLite serialises writers on the whole file instead.
DATABASES = {
    "default": config(
        "DATABASE_URL", default=f'sqlite:///{BASE_DIR / "db.sqlite3"}', cast=db_url
    )
}

# Outbound email (order notifications)
EMAIL_BACKEND = config(
    "EMAIL_BACKEND", default="django.core.mail.backends.console.EmailBackend"
)
DEFAULT_FROM_EMAIL = config("DEFAULT_FROM_EMAIL", default="orders@example.com")

# Internationalization
LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

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
CELERY_TASK_ALWAYS_EAGER = config("CELERY_TASK_ALWAYS_EAGER", default=False, cast=bool)

# Default primary key field type
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

# ---------------------------------------------------------------------------
# Order core tunables
# ---------------------------------------------------------------------------
ORDERS = {
    # Concurrency guard
    "LOCK_TIMEOUT_SECONDS": config("ORDERS_LOCK_TIMEOUT", default=5.0, cast=float),
    "LOCK_STRIPES": config("ORDERS_LOCK_STRIPES", default=256, cast=int),
    # Backpressure
    "MAX_IN_FLIGHT": config("ORDERS_MAX_IN_FLIGHT", default=64, cast=int),
    "ADMISSION_TIMEOUT_SECONDS": config(
        "ORDERS_ADMISSION_TIMEOUT", default=5.0, cast=float
    ),
    "DEFAULT_DEADLINE_SECONDS": config(
        "ORDERS_DEFAULT_DEADLINE", default=30.0, cast=float
    ),
    # Retry on inventory conflicts
    "RETRY_ATTEMPTS": config("ORDERS_RETRY_ATTEMPTS", default=3, cast=int),
    "RETRY_BASE_DELAY_SECONDS": config(
        "ORDERS_RETRY_BASE_DELAY", default=0.05, cast=float
    ),
    "RETRY_JITTER": config("ORDERS_RETRY_JITTER", default=0.25, cast=float),
    # Pricing collaborators
    "DEFAULT_TAX_RATE": config("ORDERS_DEFAULT_TAX_RATE", default="0", cast=Decimal),
    "SHIPPING_RATES": {
        "STANDARD": Decimal("10.00"),
        "EXPRESS": Decimal("25.00"),
        "OVERNIGHT": Decimal("45.00"),
        "INTERNATIONAL": Decimal("60.00"),
        "PICKUP": Decimal("0"),
        "DIGITAL": Decimal("0"),
    },
    "FREE_SHIPPING_THRESHOLD": config(
        "ORDERS_FREE_SHIPPING_THRESHOLD",
        default="",
        cast=lambda v: Decimal(v) if v else None,
    ),
    "DISCOUNT_CODES": {},
    # Orders above this total get a warning from validate_order
    "APPROVAL_THRESHOLD": config(
        "ORDERS_APPROVAL_THRESHOLD", default="10000", cast=Decimal
    ),
}

# ---------------------------------------------------------------------------
# Structured Logging (structlog + Django LOGGING)
# ---------------------------------------------------------------------------
SENSITIVE_PATTERN = re.compile(
    r"(\d{3}\.?\d{3}\.?\d{3}-?\d{2})"  # CPF
    r"|(\d{2}\.?\d{3}\.?\d{3}/?\d{4}-?\d{2})"  # CNPJ
    r"|(password|passwd|secret|token|authorization)"
    r"""([=:]\s*["']?)([^\s,}"']+)""",
    re.IGNORECASE,
)


def mask_sensitive_data(_, __, event_dict):
    """Processor that masks CPF, CNPJ, passwords and tokens in log values."""
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
    structlog.processors.format_exc_info,
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
        "level": config("LOG_LEVEL", default="INFO"),
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "django.db.backends": {
            "handlers": ["console"],
            "level": "WARNING",
            "propagate": False,
        },
    },
}
