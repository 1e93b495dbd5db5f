"""
Blob Store Adapter
==================
Streamed upload, download and deletion of release binaries.

Uploads are single-pass: the destination pulls bytes through a
HashingReader, which feeds every chunk it hands out to a running SHA-256
digest and byte counter. The binary is never held in memory as a whole and
is never read twice.
"""

import hashlib
import logging
import os
import time
from pathlib import Path
from typing import BinaryIO, Optional

from firebase_admin import storage
from google.api_core.exceptions import GoogleAPIError, NotFound
from google.auth.exceptions import GoogleAuthError
from requests.exceptions import RequestException

from .exceptions import BlobStoreError, UploadTimeoutError

logger = logging.getLogger(__name__)


CHUNK_SIZE = 65536  # 64KB read size for streaming
UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024  # resumable upload chunk, multiple of 256KB

# google-cloud-storage wraps HTTP errors but lets transport and auth failures through
STORAGE_ERRORS = (GoogleAPIError, RequestException, GoogleAuthError)


class HashingReader:
    """
    Read-through tap over an upload source.

    Every chunk returned by read() is also fed to a SHA-256 digest and counted,
    so whatever consumes the reader gets the checksum and size for free.
    Reads past `deadline` (a time.monotonic() value) raise UploadTimeoutError.
    """

    def __init__(self, source: BinaryIO, deadline: Optional[float] = None):
        self._source = source
        self._deadline = deadline
        self._sha256 = hashlib.sha256()
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise UploadTimeoutError('Upload timed out')
        chunk = self._source.read(size)
        if chunk:
            self._sha256.update(chunk)
            self.bytes_read += len(chunk)
        return chunk

    def tell(self) -> int:
        # resumable uploads check the stream position against bytes sent
        return self.bytes_read

    def hexdigest(self) -> str:
        return self._sha256.hexdigest()


def iter_chunks(reader, chunk_size: int = CHUNK_SIZE):
    """Yield chunks from a readable until exhausted, closing it afterwards."""
    try:
        for chunk in iter(lambda: reader.read(chunk_size), b''):
            yield chunk
    finally:
        reader.close()


class BlobStore:
    """Base class for blob store backends."""

    def upload(self, path: str, source: BinaryIO, content_type: str = None) -> None:
        """Stream `source` to `path`; the object is visible only on success."""
        raise NotImplementedError

    def open_reader(self, path: str):
        """Open `path` for streamed reading; returns an object with read/close."""
        raise NotImplementedError

    def delete(self, path: str) -> None:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def make_public(self, path: str) -> None:
        """Grant anonymous read access, where the backend supports it."""

    def describe(self) -> str:
        return self.__class__.__name__


class _CloudStorageReader:
    """Wraps a BlobReader so read errors surface as BlobStoreError."""

    def __init__(self, path: str, reader):
        self.path = path
        self._reader = reader

    def read(self, size: int = -1) -> bytes:
        try:
            return self._reader.read(size)
        except STORAGE_ERRORS as e:
            raise BlobStoreError('Storage error') from e

    def close(self):
        self._reader.close()


class CloudStorageBlobStore(BlobStore):
    """Firebase Storage bucket, accessed through google-cloud-storage."""

    def __init__(self, app, bucket_name: str, upload_timeout: float = 600):
        self.bucket_name = bucket_name
        self.upload_timeout = upload_timeout
        self._bucket = storage.bucket(bucket_name, app=app)

    def describe(self) -> str:
        return f"gs://{self.bucket_name}"

    def upload(self, path, source, content_type=None):
        blob = self._bucket.blob(path, chunk_size=UPLOAD_CHUNK_SIZE)
        try:
            # size unknown up front: always a resumable upload, which only
            # becomes visible once the final chunk is committed
            blob.upload_from_file(
                source,
                rewind=False,
                content_type=content_type,
                timeout=self.upload_timeout,
            )
        except STORAGE_ERRORS as e:
            logger.error(f"Upload to gs://{self.bucket_name}/{path} failed: {e}")
            raise BlobStoreError('Failed to upload file') from e

    def open_reader(self, path):
        blob = self._bucket.blob(path)
        try:
            blob.reload()
            return _CloudStorageReader(path, blob.open('rb', chunk_size=UPLOAD_CHUNK_SIZE))
        except STORAGE_ERRORS as e:
            logger.error(f"Cannot open gs://{self.bucket_name}/{path}: {e}")
            raise BlobStoreError('Failed to read file from storage') from e

    def delete(self, path):
        try:
            self._bucket.blob(path).delete()
        except STORAGE_ERRORS as e:
            raise BlobStoreError(f'Failed to delete {path}: {e}') from e

    def exists(self, path):
        try:
            return self._bucket.blob(path).exists()
        except STORAGE_ERRORS as e:
            raise BlobStoreError('Storage error') from e

    def make_public(self, path):
        try:
            self._bucket.blob(path).make_public()
        except NotFound as e:
            raise BlobStoreError(f'{path} does not exist') from e
        except STORAGE_ERRORS as e:
            raise BlobStoreError(f'Failed to set public access on {path}: {e}') from e

    def bucket_exists(self) -> bool:
        try:
            return self._bucket.exists()
        except STORAGE_ERRORS as e:
            raise BlobStoreError('Storage error') from e


class FileSystemBlobStore(BlobStore):
    """
    Blobs stored as files under a root directory.

    Writes go to a `.part` file that is renamed into place once complete,
    so a failed or abandoned upload never leaves a readable object behind.
    """

    def __init__(self, root):
        self.root = Path(root)

    def describe(self) -> str:
        return str(self.root)

    def _abs(self, path: str) -> Path:
        full = (self.root / path).resolve()
        if self.root.resolve() not in full.parents:
            raise BlobStoreError(f'Invalid storage path: {path}')
        return full

    def upload(self, path, source, content_type=None):
        target = self._abs(path)
        partial = target.with_name(target.name + '.part')
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(partial, 'wb') as out:
                for chunk in iter(lambda: source.read(CHUNK_SIZE), b''):
                    out.write(chunk)
            os.replace(partial, target)
        except OSError as e:
            logger.error(f"Upload to {target} failed: {e}")
            raise BlobStoreError('Failed to upload file') from e
        finally:
            partial.unlink(missing_ok=True)

    def open_reader(self, path):
        try:
            return open(self._abs(path), 'rb')
        except OSError as e:
            logger.error(f"Cannot open {path} under {self.root}: {e}")
            raise BlobStoreError('Failed to read file from storage') from e

    def delete(self, path):
        target = self._abs(path)
        try:
            target.unlink()
        except OSError as e:
            raise BlobStoreError(f'Failed to delete {path}: {e}') from e
        self._cleanup_empty_directories(target)

    def _cleanup_empty_directories(self, file_path: Path) -> None:
        """Remove empty parent directories up to the store root."""
        root = self.root.resolve()
        parent = file_path.parent
        while parent != root and root in parent.parents:
            try:
                parent.rmdir()
            except OSError:
                # not empty
                break
            parent = parent.parent

    def exists(self, path):
        return self._abs(path).is_file()
