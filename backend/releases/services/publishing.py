"""
Publish Pipeline
================
Validated ingestion of a new build.

Publish Algorithm:
1. Validation: platform, version, version code, version-code collision,
   file extension. Each check fails fast and nothing is written before all pass.
2. Upload: stream the binary to the blob store under
   releases/{platform}/{version}-{unix timestamp}{ext}, hashing it on the way.
3. Visibility: optionally make the blob publicly readable (warning on failure).
4. Registry: allocate a key and write the AppVersion record. If either step
   fails, the uploaded blob is deleted before the error is surfaced.

The collision check and the registry write are not atomic in the registry.
Publishes within one process are serialized by a lock; publishes racing
from separate processes can still both pass the check.
"""

import logging
import os
import threading
import time
from typing import BinaryIO, Optional

from django.utils import timezone

from contracts.models import (
    AppVersion,
    DEFAULT_PLATFORM,
    PLATFORMS,
    belongs_to,
    build_download_url,
    build_storage_path,
    content_type_for,
    expected_extension,
    is_known_platform,
)
from .blob_store import BlobStore, HashingReader
from .exceptions import (
    BlobStoreError,
    RegistryError,
    ReleaseValidationError,
    SourceStreamError,
    VersionConflictError,
)
from .registry import VersionRegistry

logger = logging.getLogger(__name__)


DEFAULT_UPLOAD_TIMEOUT = 10 * 60  # seconds

# characters that would break the storage key or the download route
UNSAFE_VERSION_CHARS = '/?#%'

_publish_lock = threading.Lock()


def format_file_size(size_bytes):
    """Format bytes as human-readable string."""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def parse_version_code(value) -> int:
    """Parse a version code; only strictly positive integers are accepted."""
    text = str(value).strip()
    if not (text.isascii() and text.isdigit()) or int(text) <= 0:
        raise ReleaseValidationError(
            'Invalid version_code', {'expected': 'positive integer'}
        )
    return int(text)


class PublishService:
    """Publishes builds into the registry and blob store."""

    def __init__(
        self,
        registry: VersionRegistry,
        blob_store: BlobStore,
        upload_timeout: float = DEFAULT_UPLOAD_TIMEOUT,
        make_public: bool = True,
        clock=time.time,
    ):
        self.registry = registry
        self.blob_store = blob_store
        self.upload_timeout = upload_timeout
        self.make_public = make_public
        self.clock = clock

    def publish(
        self,
        platform: Optional[str],
        version: Optional[str],
        version_code,
        release_notes: Optional[str],
        file_obj,
        filename: Optional[str],
    ) -> AppVersion:
        """
        Validate and publish one build.

        Args:
            platform: 'android' or 'ios'; empty means android
            version: display version, e.g. '1.2.3'
            version_code: positive integer (or its string form)
            release_notes: free text, optional
            file_obj: Django UploadedFile holding the binary
            filename: client-declared filename, used for the extension check

        Returns:
            AppVersion: the stored record

        Raises:
            ReleaseValidationError, VersionConflictError: bad input, nothing written
            SourceStreamError: the uploaded file could not be opened
            BlobStoreError: the binary could not be stored
            RegistryError: the registry failed; any stored blob was removed
        """
        platform = (platform or '').strip().lower() or DEFAULT_PLATFORM
        if not is_known_platform(platform):
            raise ReleaseValidationError(
                'Invalid platform', {'expected': sorted(PLATFORMS)}
            )

        version = (version or '').strip()
        code_text = '' if version_code is None else str(version_code).strip()
        if not version or not code_text:
            raise ReleaseValidationError(
                'Missing required fields', {'required': ['version', 'version_code']}
            )
        if any(ch in UNSAFE_VERSION_CHARS or ch.isspace() for ch in version):
            raise ReleaseValidationError(
                'Invalid version',
                {'expected': 'no whitespace or any of ' + ' '.join(UNSAFE_VERSION_CHARS)},
            )
        code = parse_version_code(code_text)

        with _publish_lock:
            self._ensure_version_code_free(platform, code)
            ext = self._validate_file(platform, file_obj, filename)
            return self._store(
                platform, version, code, (release_notes or '').strip(), file_obj, ext
            )

    def _ensure_version_code_free(self, platform: str, version_code: int) -> None:
        try:
            existing = self.registry.find_by_version_code(version_code)
        except RegistryError as e:
            raise RegistryError('Could not check for existing versions') from e

        if any(belongs_to(record, platform) for record in existing):
            raise VersionConflictError(
                f'Version code {version_code} already exists',
                {'platform': platform},
            )

    @staticmethod
    def _validate_file(platform: str, file_obj, filename: Optional[str]) -> str:
        if file_obj is None:
            raise ReleaseValidationError('No file uploaded')

        ext = os.path.splitext(filename or '')[1].lower()
        expected = expected_extension(platform)
        if ext != expected:
            raise ReleaseValidationError(
                f'Invalid file extension for {platform} platform, expected {expected}',
                {'expected': expected},
            )
        return ext

    def _store(self, platform, version, version_code, release_notes, file_obj, ext) -> AppVersion:
        storage_path = self._new_storage_path(platform, version, ext)

        try:
            source: BinaryIO = file_obj.open('rb')
        except (OSError, ValueError) as e:
            logger.error(f"File open error: {e}")
            raise SourceStreamError('Failed to process uploaded file') from e

        reader = HashingReader(source, deadline=time.monotonic() + self.upload_timeout)

        try:
            self.blob_store.upload(storage_path, reader, content_type=content_type_for(platform))
        except BlobStoreError as e:
            logger.error(f"File upload error for {storage_path}: {e.message}")
            raise
        finally:
            source.close()

        checksum = reader.hexdigest()
        logger.info(
            f"Stored {storage_path} ({format_file_size(reader.bytes_read)}, "
            f"sha256 {checksum[:12]}...)"
        )

        if self.make_public:
            try:
                self.blob_store.make_public(storage_path)
            except BlobStoreError as e:
                logger.warning(f"Failed to set public access: {e.message}")

        try:
            version_id = self.registry.allocate_id()
        except RegistryError as e:
            logger.error(f"Database reference creation error: {e.message}")
            self._discard_blob(storage_path)
            raise RegistryError('Failed to create version record') from e

        now = timezone.now().isoformat()
        record = AppVersion(
            id=version_id,
            version=version,
            version_code=version_code,
            download_url=build_download_url(version, platform),
            release_notes=release_notes,
            file_size=reader.bytes_read,
            checksum=checksum,
            created_at=now,
            updated_at=now,
            storage_path=storage_path,
            platform=platform,
        )

        try:
            self.registry.save(record)
        except RegistryError as e:
            logger.error(f"Database save error for {version_id}: {e.message}")
            self._discard_blob(storage_path)
            self._discard_key(version_id)
            raise RegistryError('Failed to save version information') from e

        logger.info(f"Published {record} as {version_id}")
        return record

    def _new_storage_path(self, platform: str, version: str, ext: str) -> str:
        # same version re-uploaded within one second: move to the next free second
        timestamp = int(self.clock())
        storage_path = build_storage_path(platform, version, timestamp, ext)
        while self.blob_store.exists(storage_path):
            timestamp += 1
            storage_path = build_storage_path(platform, version, timestamp, ext)
        return storage_path

    def _discard_blob(self, storage_path: str) -> None:
        """Compensation: remove a blob whose registry record was never written."""
        try:
            self.blob_store.delete(storage_path)
            logger.info(f"Removed orphaned upload {storage_path}")
        except BlobStoreError as e:
            logger.warning(f"Failed to clean up uploaded file {storage_path}: {e.message}")

    def _discard_key(self, version_id: str) -> None:
        try:
            self.registry.delete(version_id)
        except RegistryError as e:
            logger.warning(f"Failed to release registry key {version_id}: {e.message}")
