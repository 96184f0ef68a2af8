from django.apps import AppConfig
import logging

logger = logging.getLogger(__name__)


class CoreBackendConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "core_backend"

    def ready(self):
        """
        Validate the settlement configuration once Django is loaded so a bad
        deployment fails at startup instead of in the middle of a settlement.
        """
        from core_backend.config import app_settings

        app_settings.validate()
        logger.debug(
            f"Settlement liveness: tick={app_settings.LIVENESS_CHECK_INTERVAL}s, "
            f"ceiling={app_settings.LIVENESS_TIMEOUT}s"
        )
