"""
Settings for the escrow settlement service.

One module serves every environment; everything that differs between
them comes from environment variables read with django-environ. A local
.env file (ENV_FILE, default ../.env.development) is loaded when present,
containers pass variables directly.

Sections:
    runtime          secret key, debug, hosts
    apps / http      installed apps, middleware, templates
    storage          database and shared cache
    api              Django REST Framework
    tasks            Celery and django-celery-beat
    gateway          PayPal credentials, timeouts, circuit breaker
    settlement       fees, escrow window, scheduler and reconciliation
    logging
    hardening        applied when DEBUG is off
"""

import os
from pathlib import Path

import environ

BASE_DIR = Path(__file__).resolve().parent.parent

env = environ.Env(
    DEBUG=(bool, False),
    ALLOWED_HOSTS=(list, []),
    LOG_LEVEL=(str, "INFO"),
)

_env_file = Path(os.environ.get("ENV_FILE", BASE_DIR.parent / ".env.development"))
if _env_file.exists():
    environ.Env.read_env(_env_file)


# -----------------------------------------------------------------------------
# runtime
# -----------------------------------------------------------------------------

SECRET_KEY = env("SECRET_KEY", default="settlement-dev-only-secret")
DEBUG = env("DEBUG")
ALLOWED_HOSTS = env("ALLOWED_HOSTS")

TIME_ZONE = "UTC"
USE_TZ = True
LANGUAGE_CODE = "en-us"
USE_I18N = False

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


# -----------------------------------------------------------------------------
# apps / http
# -----------------------------------------------------------------------------

_DJANGO_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
]
_VENDOR_APPS = ["rest_framework", "django_celery_beat"]
_PROJECT_APPS = ["core", "settlement"]

INSTALLED_APPS = _DJANGO_APPS + _VENDOR_APPS + _PROJECT_APPS

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"
ASGI_APPLICATION = "config.asgi.application"

# Admin only; the API renders JSON
TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
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

STATIC_URL = env("STATIC_URL", default="/static/")
STATIC_ROOT = BASE_DIR / "staticfiles"

AUTH_PASSWORD_VALIDATORS = [
    {"NAME": f"django.contrib.auth.password_validation.{name}"}
    for name in (
        "UserAttributeSimilarityValidator",
        "MinimumLengthValidator",
        "CommonPasswordValidator",
        "NumericPasswordValidator",
    )
]


# -----------------------------------------------------------------------------
# storage
# -----------------------------------------------------------------------------

# postgres://... with psycopg in deployment, SQLite file otherwise
DATABASES = {
    "default": env.db("DATABASE_URL", default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}"),
}
if DATABASES["default"]["ENGINE"] == "django.db.backends.postgresql":
    DATABASES["default"].setdefault("OPTIONS", {})["connect_timeout"] = 10

# Circuit breaker state, PayPal tokens and platform settings are cached here.
# Web and worker processes must share it, so deployments set REDIS_URL.
REDIS_URL = env("REDIS_URL", default="")

if REDIS_URL:
    _cache = {
        "BACKEND": "django_redis.cache.RedisCache",
        "LOCATION": REDIS_URL,
        "OPTIONS": {
            "CLIENT_CLASS": "django_redis.client.DefaultClient",
            "IGNORE_EXCEPTIONS": True,
        },
    }
else:
    _cache = {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "settlement-local",
    }
CACHES = {"default": _cache}


# -----------------------------------------------------------------------------
# api
# -----------------------------------------------------------------------------

_renderers = ["rest_framework.renderers.JSONRenderer"]
if DEBUG:
    _renderers.append("rest_framework.renderers.BrowsableAPIRenderer")

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework.authentication.SessionAuthentication",
        "rest_framework.authentication.BasicAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.IsAuthenticated"],
    "DEFAULT_RENDERER_CLASSES": _renderers,
    # Money leaves the API as strings
    "COERCE_DECIMAL_TO_STRING": True,
    "DEFAULT_THROTTLE_CLASSES": [
        "rest_framework.throttling.AnonRateThrottle",
        "rest_framework.throttling.UserRateThrottle",
    ],
    "DEFAULT_THROTTLE_RATES": {
        "anon": env("THROTTLE_RATE_ANON", default="100/hour"),
        "user": env("THROTTLE_RATE_USER", default="1000/hour"),
    },
}


# -----------------------------------------------------------------------------
# tasks
# -----------------------------------------------------------------------------

CELERY_BROKER_URL = env("CELERY_BROKER_URL", default="redis://redis:6379/1")
CELERY_RESULT_BACKEND = env("CELERY_RESULT_BACKEND", default=CELERY_BROKER_URL)
CELERY_ACCEPT_CONTENT = ["json"]
CELERY_TASK_SERIALIZER = CELERY_RESULT_SERIALIZER = "json"
CELERY_TIMEZONE = TIME_ZONE
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = env.int("CELERY_TASK_TIME_LIMIT", default=30 * 60)
# Periodic schedules are rows seeded by migration 0002
CELERY_BEAT_SCHEDULER = "django_celery_beat.schedulers:DatabaseScheduler"


# -----------------------------------------------------------------------------
# gateway
# -----------------------------------------------------------------------------

PAYPAL_CLIENT_ID = env("PAYPAL_CLIENT_ID", default="")
PAYPAL_CLIENT_SECRET = env("PAYPAL_CLIENT_SECRET", default="")
PAYPAL_MODE = env("PAYPAL_MODE", default="sandbox")  # sandbox | live

# None: mock only while credentials are missing. True: always mock, refused
# in live mode. False: real client, credentials required.
PAYPAL_MOCK_MODE = env.bool("PAYPAL_MOCK_MODE", default=None)

PAYPAL_API_TIMEOUT_SECONDS = env.float("PAYPAL_API_TIMEOUT_SECONDS", default=10.0)
PAYPAL_TOKEN_REFRESH_MARGIN_SECONDS = env.int(
    "PAYPAL_TOKEN_REFRESH_MARGIN_SECONDS", default=60
)
# Reads only; order, capture, refund and payout calls are sent once
PAYPAL_MAX_READ_RETRIES = env.int("PAYPAL_MAX_READ_RETRIES", default=1)

PAYPAL_MARKETPLACE_ENABLED = env.bool("PAYPAL_MARKETPLACE_ENABLED", default=True)
PAYPAL_PAYOUT_EMAIL_SUBJECT = env(
    "PAYPAL_PAYOUT_EMAIL_SUBJECT", default="You have received a payout"
)

# Where the payer lands after approving or cancelling at the gateway
PAYPAL_RETURN_URL = env("PAYPAL_RETURN_URL", default="")
PAYPAL_CANCEL_URL = env("PAYPAL_CANCEL_URL", default="")

# Webhook id from the PayPal dashboard; webhooks are rejected while unset
PAYPAL_WEBHOOK_ID = env("PAYPAL_WEBHOOK_ID", default="")

PAYPAL_CIRCUIT_FAILURE_THRESHOLD = env.int("PAYPAL_CIRCUIT_FAILURE_THRESHOLD", default=5)
PAYPAL_CIRCUIT_RECOVERY_TIMEOUT = env.int("PAYPAL_CIRCUIT_RECOVERY_TIMEOUT", default=60)

# Breakers listed by /health/
HEALTH_CHECK_CIRCUITS = ["paypal-api"]


# -----------------------------------------------------------------------------
# settlement
# -----------------------------------------------------------------------------

# Percentages as strings, parsed to Decimal. PlatformSetting rows win.
PLATFORM_FEE_PERCENT = env("PLATFORM_FEE_PERCENT", default="10")
CLIENT_FEE_PERCENT = env("CLIENT_FEE_PERCENT", default="5")
PROVIDER_FEE_PERCENT = env("PROVIDER_FEE_PERCENT", default="10")

SETTLEMENT_DEFAULT_CURRENCY = env("SETTLEMENT_DEFAULT_CURRENCY", default="USD")

ESCROW_REVIEW_WINDOW_HOURS = env.int("ESCROW_REVIEW_WINDOW_HOURS", default=72)
ESCROW_RELEASE_BATCH_SIZE = env.int("ESCROW_RELEASE_BATCH_SIZE", default=100)
SETTLEMENT_CLAIM_TTL_SECONDS = env.int("SETTLEMENT_CLAIM_TTL_SECONDS", default=300)

STALE_PENDING_AFTER_MINUTES = env.int("STALE_PENDING_AFTER_MINUTES", default=60)
STALE_PENDING_EXPIRE_HOURS = env.int("STALE_PENDING_EXPIRE_HOURS", default=24)


# -----------------------------------------------------------------------------
# logging
# -----------------------------------------------------------------------------

LOG_LEVEL = env("LOG_LEVEL")
LOG_DIR = BASE_DIR / "logs"
LOG_DIR.mkdir(parents=True, exist_ok=True)
# web, celery-worker and celery-beat each write their own file
LOG_FILE_NAME = env("LOG_FILE_NAME", default="django.log")

_handlers = ["console", "file"]


def _logger(level=LOG_LEVEL):
    return {"handlers": _handlers, "level": level, "propagate": False}


LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "{levelname} {asctime} {name} {message}",
            "style": "{",
        },
        "file": {
            "format": "[{asctime}] {levelname} {name} {module}:{lineno} - {message}",
            "style": "{",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "verbose"},
        "file": {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": LOG_DIR / LOG_FILE_NAME,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
            "formatter": "file",
        },
    },
    "root": {"handlers": _handlers, "level": LOG_LEVEL},
    "loggers": {
        "django": _logger(),
        "django.request": _logger("ERROR"),
        "celery": _logger(),
        "settlement": _logger(),
        "core": _logger(),
    },
}


# -----------------------------------------------------------------------------
# hardening
# -----------------------------------------------------------------------------

if not DEBUG:
    SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")
    SECURE_SSL_REDIRECT = env.bool("SECURE_SSL_REDIRECT", default=True)
    SESSION_COOKIE_SECURE = env.bool("SESSION_COOKIE_SECURE", default=True)
    CSRF_COOKIE_SECURE = env.bool("CSRF_COOKIE_SECURE", default=True)
    SECURE_HSTS_SECONDS = env.int("SECURE_HSTS_SECONDS", default=60 * 60 * 24 * 365)
    SECURE_HSTS_INCLUDE_SUBDOMAINS = env.bool(
        "SECURE_HSTS_INCLUDE_SUBDOMAINS", default=True
    )
    SECURE_HSTS_PRELOAD = env.bool("SECURE_HSTS_PRELOAD", default=True)
    SECURE_CONTENT_TYPE_NOSNIFF = True
    X_FRAME_OPTIONS = "DENY"
