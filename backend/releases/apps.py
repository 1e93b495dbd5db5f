"""
Releases app configuration.

Connects the version registry and blob store on app startup.
"""

import logging
from django.apps import AppConfig

logger = logging.getLogger(__name__)


class ReleasesConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'releases'

    def ready(self):
        """
        Initialize the release backends when serving requests.

        Configuration problems are fatal here: the server must not start
        without a registry and blob store.
        """
        # Only initialize in server processes (not in tests or other commands)
        import sys
        if 'runserver' in sys.argv or 'gunicorn' in sys.argv[0]:
            from releases.services import ServiceBackends

            logger.info("Initializing release backends on startup...")
            ServiceBackends.initialize()
