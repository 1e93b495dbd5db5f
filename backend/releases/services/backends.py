"""
Process-wide registry and blob store handles.

Both handles are built once from Django settings, normally at startup
(see ReleasesConfig.ready), and handed to the services as constructor
arguments. They are safe to share between concurrent requests.
"""

import json
import logging
import threading
from typing import Any, Optional

import firebase_admin
from firebase_admin import credentials
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from .blob_store import BlobStore, CloudStorageBlobStore, FileSystemBlobStore
from .registry import FirebaseVersionRegistry, InMemoryVersionRegistry, VersionRegistry

logger = logging.getLogger(__name__)


def load_credentials(value: str) -> credentials.Certificate:
    """
    Service-account credentials from inline JSON or a file path.

    Values starting with '{' are parsed as JSON; anything else is a path.
    """
    value = value.strip()
    if value.startswith('{'):
        logger.info("Using Firebase credentials from JSON string")
        try:
            return credentials.Certificate(json.loads(value))
        except ValueError as e:
            raise ImproperlyConfigured(f"Invalid FIREBASE_CREDENTIALS_JSON: {e}") from e
    logger.info("Using Firebase credentials from file path")
    try:
        return credentials.Certificate(value)
    except (IOError, ValueError) as e:
        raise ImproperlyConfigured(f"Cannot load Firebase credentials from {value}: {e}") from e


def _required_setting(name: str) -> str:
    value = getattr(settings, name, '')
    if not value:
        raise ImproperlyConfigured(f"{name} is not configured")
    return value


class ServiceBackends:
    """Holder for the initialize-once registry and blob store."""

    _registry: Optional[VersionRegistry] = None
    _blob_store: Optional[BlobStore] = None
    _firebase_app: Optional[Any] = None
    _lock = threading.Lock()

    @classmethod
    def initialize(cls) -> None:
        """
        Build the backends selected by settings.OTA_BACKEND.

        Raises:
            ImproperlyConfigured: if required settings are missing
        """
        with cls._lock:
            if cls._registry is not None:
                return

            backend = getattr(settings, 'OTA_BACKEND', 'firebase')
            if backend == 'firebase':
                registry, blob_store = cls._build_firebase()
            elif backend == 'local':
                registry, blob_store = cls._build_local()
            else:
                raise ImproperlyConfigured(f"Unknown OTA_BACKEND '{backend}'")

            cls._registry, cls._blob_store = registry, blob_store
            logger.info(
                f"Release backends ready: {registry.__class__.__name__}, "
                f"blobs at {blob_store.describe()}"
            )

    @classmethod
    def _build_firebase(cls):
        creds = load_credentials(_required_setting('FIREBASE_CREDENTIALS'))
        project_id = _required_setting('FIREBASE_PROJECT_ID')
        db_url = _required_setting('FIREBASE_DB_URL')
        bucket_name = _required_setting('FIREBASE_STORAGE_BUCKET')

        logger.info(f"Using Firebase project ID: {project_id!r}")
        logger.info(f"Using Firebase DB URL: {db_url!r}")
        logger.info(f"Using Firebase storage bucket: {bucket_name!r}")

        if cls._firebase_app is None:
            cls._firebase_app = firebase_admin.initialize_app(creds, {
                'projectId': project_id,
                'databaseURL': db_url,
                'storageBucket': bucket_name,
            })

        registry = FirebaseVersionRegistry(
            cls._firebase_app,
            path=getattr(settings, 'OTA_REGISTRY_PATH', 'versions'),
        )
        blob_store = CloudStorageBlobStore(
            cls._firebase_app,
            bucket_name,
            upload_timeout=getattr(settings, 'OTA_UPLOAD_TIMEOUT', 600),
        )
        return registry, blob_store

    @staticmethod
    def _build_local():
        root = getattr(settings, 'MEDIA_ROOT', '') or settings.BASE_DIR / 'media'
        logger.warning("Using in-memory version registry; records are lost on restart")
        return InMemoryVersionRegistry(), FileSystemBlobStore(root)

    @classmethod
    def configure(cls, registry: VersionRegistry, blob_store: BlobStore) -> None:
        """Install explicit backends, replacing any built from settings."""
        with cls._lock:
            cls._registry, cls._blob_store = registry, blob_store

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._registry = cls._blob_store = None

    @classmethod
    def get_registry(cls) -> VersionRegistry:
        if cls._registry is None:
            cls.initialize()
        return cls._registry

    @classmethod
    def get_blob_store(cls) -> BlobStore:
        if cls._blob_store is None:
            cls.initialize()
        return cls._blob_store
