"""
Django settings for the Groupeat backend.

Values that differ between environments are read from the environment
(optionally populated from a local .env file).
"""
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

load_dotenv(BASE_DIR / ".env")

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "groupeat-insecure-development-key")

DEBUG = os.environ.get("DJANGO_DEBUG", "True").lower() in ("1", "true", "yes")

ALLOWED_HOSTS = [h for h in os.environ.get("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",") if h]

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "channels",
    "rest_framework",
    "core_backend",
    "offices",
    "users",
    "restaurants",
    "notifications",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "core_backend.urls"

ASGI_APPLICATION = "core_backend.asgi.application"

DATABASES = {
    "default": {
        "ENGINE": os.environ.get("DB_ENGINE", "django.db.backends.sqlite3"),
        "NAME": os.environ.get("DB_NAME", str(BASE_DIR / "db.sqlite3")),
        "USER": os.environ.get("DB_USER", ""),
        "PASSWORD": os.environ.get("DB_PASSWORD", ""),
        "HOST": os.environ.get("DB_HOST", ""),
        "PORT": os.environ.get("DB_PORT", ""),
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("GROUPEAT_TIME_ZONE", "Asia/Jerusalem")
USE_I18N = True
USE_TZ = True

# Channel layer used by the notification gateway. Redis in production,
# in-memory for development and tests.
REDIS_URL = os.environ.get("REDIS_URL")

if REDIS_URL:
    CHANNEL_LAYERS = {
        "default": {
            "BACKEND": "channels_redis.core.RedisChannelLayer",
            "CONFIG": {"hosts": [REDIS_URL]},
        }
    }
else:
    CHANNEL_LAYERS = {
        "default": {"BACKEND": "channels.layers.InMemoryChannelLayer"}
    }

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": [],
    "UNAUTHENTICATED_USER": None,
}

# Group order settlement configuration. Read through core_backend.config.app_settings.
GROUPEAT = {
    "ORDERS_PER_DAY_THRESHOLD": 2,
    "ALLOW_PAID_ORDERS_UPDATE": True,
    "LIVENESS_CHECK_INTERVAL": 1.0,
    "LIVENESS_TIMEOUT": 20.0,
    "SETTLEMENT_RETRY_DELAY": 30.0,
    "DAY_START_HOUR": None,
    "DAY_END_HOUR": None,
    "NOTIFICATIONS_PER_PAGE": 10,
    "ORDERS_PER_PAGE": 20,
}

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
        "level": "WARNING",
    },
    "loggers": {
        name: {
            "handlers": ["console"],
            "level": os.environ.get("GROUPEAT_LOG_LEVEL", "INFO"),
            "propagate": False,
        }
        for name in ("core_backend", "offices", "users", "restaurants", "notifications")
    },
}
