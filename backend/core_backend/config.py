"""
Centralized access to the group order settlement configuration.

Values come from the GROUPEAT dict in Django settings, falling back to the
defaults below. Django settings are re-read on every access so tests can use
override_settings without restarting anything.
"""

from typing import Any, Dict, Optional
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
import logging

logger = logging.getLogger(__name__)


DEFAULTS: Dict[str, Any] = {
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


class AppSettings:
    """
    A singleton accessor for the GROUPEAT settings dict.

    Usage:
        from core_backend.config import app_settings
        app_settings.LIVENESS_TIMEOUT
    """

    _instance: Optional["AppSettings"] = None

    def __new__(cls) -> "AppSettings":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __getattr__(self, name: str) -> Any:
        if name not in DEFAULTS:
            raise AttributeError(f"'AppSettings' object has no attribute '{name}'")

        overrides = getattr(settings, "GROUPEAT", None) or {}
        return overrides.get(name, DEFAULTS[name])

    def as_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in DEFAULTS}

    def validate(self) -> None:
        """
        Raise ImproperlyConfigured when the settlement timings or the day
        boundaries cannot work together.
        """
        interval = self.LIVENESS_CHECK_INTERVAL
        timeout = self.LIVENESS_TIMEOUT

        if interval <= 0 or timeout <= 0:
            raise ImproperlyConfigured(
                "GROUPEAT LIVENESS_CHECK_INTERVAL and LIVENESS_TIMEOUT must be positive."
            )

        if interval > timeout:
            raise ImproperlyConfigured(
                "GROUPEAT LIVENESS_CHECK_INTERVAL cannot be longer than LIVENESS_TIMEOUT."
            )

        if self.ORDERS_PER_DAY_THRESHOLD < 1:
            raise ImproperlyConfigured("GROUPEAT ORDERS_PER_DAY_THRESHOLD must be at least 1.")

        for key in ("DAY_START_HOUR", "DAY_END_HOUR"):
            hour = getattr(self, key)
            if hour is not None and not 0 <= hour <= 23:
                raise ImproperlyConfigured(f"GROUPEAT {key} must be between 0 and 23.")


app_settings = AppSettings()
