"""
Download, list and delete of published builds.
"""

import logging
from dataclasses import dataclass, replace
from typing import Iterator, List, Optional

from contracts.models import (
    AppVersion,
    DEFAULT_PLATFORM,
    PLATFORMS,
    belongs_to,
    content_type_for,
    expected_extension,
    is_known_platform,
)
from .blob_store import BlobStore, CHUNK_SIZE, iter_chunks
from .exceptions import (
    BlobStoreError,
    RegistryError,
    ReleaseNotFoundError,
    ReleaseValidationError,
)
from .registry import VersionRegistry

logger = logging.getLogger(__name__)


@dataclass
class BinaryDownload:
    """An opened binary plus the headers describing it."""
    record: AppVersion
    filename: str
    content_type: str
    content_length: int
    chunks: Iterator[bytes]


def _require_platform(platform: str) -> str:
    if not is_known_platform(platform):
        raise ReleaseValidationError('Invalid platform', {'expected': sorted(PLATFORMS)})
    return platform


class DistributionService:
    """Serves, lists and removes published builds."""

    def __init__(self, registry: VersionRegistry, blob_store: BlobStore, chunk_size: int = CHUNK_SIZE):
        self.registry = registry
        self.blob_store = blob_store
        self.chunk_size = chunk_size

    def find_release(self, version: str, platform: str) -> AppVersion:
        """
        Record for a display version on a platform.

        If the same version string was published more than once, the build
        with the highest version code wins.
        """
        matches = [
            record for record in self.registry.all()
            if record.version == version and belongs_to(record, platform)
        ]
        if not matches:
            raise ReleaseNotFoundError(
                'Requested platform/version does not match any available file',
                {'version': version, 'platform': platform},
            )
        return max(matches, key=lambda record: record.version_code)

    def download(self, version: str, platform: Optional[str] = None) -> BinaryDownload:
        """
        Open the binary for `version` on `platform` (android by default).

        Opening happens here so that storage failures are reported before any
        response header is sent. Failures while the returned chunks are being
        consumed are logged and end the stream early.
        """
        platform = _require_platform(platform or DEFAULT_PLATFORM)
        record = self.find_release(version, platform)

        reader = self.blob_store.open_reader(record.storage_path)
        return BinaryDownload(
            record=record,
            filename=f"app-v{version}{expected_extension(platform)}",
            content_type=content_type_for(platform),
            content_length=record.file_size,
            chunks=self._stream(reader, record),
        )

    def _stream(self, reader, record: AppVersion) -> Iterator[bytes]:
        sent = 0
        try:
            for chunk in iter_chunks(reader, self.chunk_size):
                sent += len(chunk)
                yield chunk
        except (BlobStoreError, OSError) as e:
            logger.error(
                f"Error streaming file {record.storage_path} after {sent} "
                f"of {record.file_size} bytes: {e}"
            )
        else:
            logger.info(f"Served {record.storage_path} ({sent} bytes)")

    def list_versions(self, platform: Optional[str] = None) -> List[AppVersion]:
        """
        All records, newest first, optionally restricted to one platform.

        With a platform filter, download URLs lacking a query string get
        `?platform=` appended.
        """
        records = self.registry.all()
        if platform:
            _require_platform(platform)
            records = [
                replace(record, download_url=f"{record.download_url}?platform={platform}")
                if record.download_url and '?' not in record.download_url else record
                for record in records
                if belongs_to(record, platform)
            ]
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    def delete(self, version_id: str) -> AppVersion:
        """
        Remove a build: blob first, then the registry record.

        A failed blob delete is logged and does not stop the record delete.
        """
        record = self.registry.get(version_id)
        if record is None:
            raise ReleaseNotFoundError('Version not found', {'id': version_id})

        if record.storage_path:
            try:
                self.blob_store.delete(record.storage_path)
            except BlobStoreError as e:
                logger.warning(f"Failed to delete file from storage: {e.message}")

        try:
            self.registry.delete(version_id)
        except RegistryError as e:
            raise RegistryError('Failed to delete version') from e

        logger.info(f"Deleted {record} ({version_id})")
        return record
