"""
Django settings for the credits backend.

Values are read from the environment; a local ``.env`` file is loaded first
when present.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value in (None, ""):
        return default
    return int(value)


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "django-insecure-local-development-key")
DEBUG = _env_bool("DJANGO_DEBUG", default=False)
ALLOWED_HOSTS = [host for host in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if host]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "django_filters",
    "accounts",
    "credits",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "backend.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

ASGI_APPLICATION = "backend.asgi.application"

# PostgreSQL in deployed environments; SQLite keeps local runs self-contained.
if os.environ.get("POSTGRES_DB"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "NAME": os.environ["POSTGRES_DB"],
            "USER": os.environ.get("POSTGRES_USER", "postgres"),
            "PASSWORD": os.environ.get("POSTGRES_PASSWORD", ""),
            "HOST": os.environ.get("POSTGRES_HOST", "localhost"),
            "PORT": os.environ.get("POSTGRES_PORT", "5432"),
            "ATOMIC_REQUESTS": False,
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": BASE_DIR / "db.sqlite3",
            # SQLite ignores SELECT ... FOR UPDATE; IMMEDIATE transactions take the
            # write lock on BEGIN so ledger mutations still serialise.
            "OPTIONS": {"transaction_mode": "IMMEDIATE", "timeout": 20},
            # File-backed so that threads in the concurrency tests share one database.
            "TEST": {"NAME": BASE_DIR / "test_db.sqlite3"},
        }
    }

AUTH_USER_MODEL = "accounts.User"
DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"
STATIC_ROOT = BASE_DIR / "staticfiles"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_FILTER_BACKENDS": [
        "django_filters.rest_framework.DjangoFilterBackend",
    ],
}

# Stripe
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
STRIPE_API_VERSION = os.environ.get("STRIPE_API_VERSION", "")
STRIPE_CURRENCY = os.environ.get("STRIPE_CURRENCY", "usd")

# Credits
CREDITS_ADMIN_API_KEY = os.environ.get("CREDITS_ADMIN_API_KEY", "")
CREDIT_WEBHOOK_MAX_ATTEMPTS = _env_int("CREDIT_WEBHOOK_MAX_ATTEMPTS", 3)
CREDIT_WEBHOOK_RETRY_BASE_SECONDS = _env_int("CREDIT_WEBHOOK_RETRY_BASE_SECONDS", 1)
CREDIT_ORPHAN_LOOKBACK_DAYS = _env_int("CREDIT_ORPHAN_LOOKBACK_DAYS", 30)
CREDIT_STALE_PENDING_MINUTES = _env_int("CREDIT_STALE_PENDING_MINUTES", 10)
CREDIT_HEALTH_WINDOW_DAYS = _env_int("CREDIT_HEALTH_WINDOW_DAYS", 7)
CREDIT_WEBHOOK_LOG_RETENTION_DAYS = _env_int("CREDIT_WEBHOOK_LOG_RETENTION_DAYS", 30)

# Seeded after every migrate run and by ``manage.py seed_credit_catalog``.
CREDIT_CATALOG = {
    "packages": [
        {"slug": "starter", "name": "Starter", "credits": 100, "price": 499, "sort_order": 10},
        {"slug": "popular", "name": "Popular", "credits": 500, "price": 1999, "sort_order": 20},
        {"slug": "studio", "name": "Studio", "credits": 1500, "price": 4999, "sort_order": 30},
    ],
    "consumption": [
        {"action_type": "face_swap_image", "credits_required": 1, "description": "Face swap on a single image"},
        {"action_type": "face_swap_video", "credits_required": 10, "description": "Face swap on a short video"},
    ],
    "subscription_tiers": [
        {"name": "Monthly", "stripe_price_id": os.environ.get("STRIPE_PRICE_MONTHLY", ""), "unit_amount": 1690, "interval": "month", "credits": 120},
        {"name": "Yearly", "stripe_price_id": os.environ.get("STRIPE_PRICE_YEARLY", ""), "unit_amount": 990, "interval": "year", "credits": 1800},
    ],
}

# External image transformation API
IMAGE_TRANSFORM_API_URL = os.environ.get("IMAGE_TRANSFORM_API_URL", "")
IMAGE_TRANSFORM_API_KEY = os.environ.get("IMAGE_TRANSFORM_API_KEY", "")
IMAGE_TRANSFORM_TIMEOUT_SECONDS = _env_int("IMAGE_TRANSFORM_TIMEOUT_SECONDS", 60)

# Celery
CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", CELERY_BROKER_URL)
CELERY_TASK_ALWAYS_EAGER = _env_bool("CELERY_TASK_ALWAYS_EAGER", default=False)

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{asctime} {levelname} {name} {message}",
            "style": "{",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.environ.get("DJANGO_LOG_LEVEL", "INFO"),
    },
    "loggers": {
        "credits": {
            "level": os.environ.get("CREDITS_LOG_LEVEL", "INFO"),
        },
    },
}
