"""
Unit Tests for Download, List and Delete
========================================
Tests cover:
- Download metadata and streamed content
- Checksum round-trip from publish to download
- Mid-stream storage failures
- Listing with platform filter
- Delete ordering and failure handling
"""

import hashlib
import io
import shutil
import tempfile
from unittest.mock import patch

import google.auth.exceptions
import requests
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import SimpleTestCase

from releases.services import (
    CloudStorageBlobStore,
    DistributionService,
    FileSystemBlobStore,
    FirebaseVersionRegistry,
    InMemoryVersionRegistry,
    PublishService,
)
from releases.services.exceptions import (
    BlobStoreError,
    RegistryError,
    ReleaseNotFoundError,
    ReleaseValidationError,
)
from releases.tests_resolver import make_record


class FailingReader:
    """Reader that returns one chunk and then fails."""

    def __init__(self, first_chunk: bytes):
        self._chunks = [first_chunk]
        self.closed = False

    def read(self, size=-1):
        if self._chunks:
            return self._chunks.pop()
        raise OSError('connection reset')

    def close(self):
        self.closed = True


class DistributionServiceTests(SimpleTestCase):
    """Tests for DistributionService."""

    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.registry = InMemoryVersionRegistry()
        self.blob_store = FileSystemBlobStore(self.root)
        self.publisher = PublishService(self.registry, self.blob_store)
        self.service = DistributionService(self.registry, self.blob_store, chunk_size=1024)

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def _publish(self, version, code, content, platform='android', created_at=None):
        filename = 'app.ipa' if platform == 'ios' else 'app.apk'
        file_obj = SimpleUploadedFile(filename, content)
        record = self.publisher.publish(platform, version, code, '', file_obj, filename)
        if created_at:
            record.created_at = created_at
            self.registry.save(record)
        return record

    # ===================
    # Download
    # ===================

    def test_download_returns_headers_and_content(self):
        content = b"android binary " * 300
        self._publish('1.0.0', 1, content)

        binary = self.service.download('1.0.0', 'android')

        self.assertEqual(binary.filename, 'app-v1.0.0.apk')
        self.assertEqual(binary.content_type, 'application/vnd.android.package-archive')
        self.assertEqual(binary.content_length, len(content))
        self.assertEqual(b''.join(binary.chunks), content)

    def test_download_ios(self):
        self._publish('1.0.0', 1, b"ios binary", platform='ios')

        binary = self.service.download('1.0.0', 'ios')

        self.assertEqual(binary.filename, 'app-v1.0.0.ipa')
        self.assertEqual(binary.content_type, 'application/octet-stream')

    def test_download_defaults_to_android(self):
        self._publish('1.0.0', 1, b"android")
        self._publish('1.0.0', 1, b"ios", platform='ios')

        binary = self.service.download('1.0.0')

        self.assertEqual(b''.join(binary.chunks), b"android")

    def test_checksum_round_trip(self):
        content = bytes(range(256)) * 512
        record = self._publish('4.1.0', 12, content)

        binary = self.service.download('4.1.0', 'android')

        self.assertEqual(hashlib.sha256(b''.join(binary.chunks)).hexdigest(), record.checksum)

    def test_unknown_version_not_found(self):
        self._publish('1.0.0', 1, b"x")

        with self.assertRaises(ReleaseNotFoundError):
            self.service.download('2.0.0', 'android')

    def test_version_on_other_platform_not_found(self):
        self._publish('1.0.0', 1, b"x", platform='ios')

        with self.assertRaises(ReleaseNotFoundError):
            self.service.download('1.0.0', 'android')

    def test_unknown_platform_rejected(self):
        with self.assertRaises(ReleaseValidationError):
            self.service.download('1.0.0', 'blackberry')

    def test_missing_blob_fails_before_streaming(self):
        record = self._publish('1.0.0', 1, b"x")
        self.blob_store.delete(record.storage_path)

        with self.assertRaises(BlobStoreError):
            self.service.download('1.0.0', 'android')

    def test_mid_stream_failure_is_logged_and_truncates(self):
        self._publish('1.0.0', 1, b"complete content")
        reader = FailingReader(b"partial")

        with patch.object(self.blob_store, 'open_reader', return_value=reader):
            binary = self.service.download('1.0.0', 'android')
            with self.assertLogs('releases.services.distribution', level='ERROR'):
                received = b''.join(binary.chunks)

        self.assertEqual(received, b"partial")
        self.assertTrue(reader.closed)

    def test_republished_version_serves_highest_code(self):
        self._publish('1.0.0', 1, b"first")
        self._publish('1.0.0', 2, b"second")

        binary = self.service.download('1.0.0', 'android')

        self.assertEqual(b''.join(binary.chunks), b"second")

    # ===================
    # List
    # ===================

    def test_list_all_newest_first(self):
        self._publish('1.0.0', 1, b"a", created_at='2024-01-01T00:00:00+00:00')
        self._publish('1.1.0', 2, b"b", created_at='2024-03-01T00:00:00+00:00')
        self._publish('1.0.0', 1, b"c", platform='ios', created_at='2024-02-01T00:00:00+00:00')

        records = self.service.list_versions()

        self.assertEqual(
            [(r.version, r.platform) for r in records],
            [('1.1.0', 'android'), ('1.0.0', 'ios'), ('1.0.0', 'android')],
        )

    def test_list_filters_by_platform(self):
        self._publish('1.0.0', 1, b"a")
        self._publish('1.0.0', 1, b"b", platform='ios')

        records = self.service.list_versions('ios')

        self.assertEqual([r.platform for r in records], ['ios'])
        self.assertEqual(records[0].download_url, '/download/1.0.0?platform=ios')

    def test_list_appends_platform_to_bare_download_url(self):
        legacy = make_record('legacy', '0.9.0', 1)
        legacy.download_url = '/download/0.9.0'
        self.registry.save(legacy)

        records = self.service.list_versions('android')

        self.assertEqual(records[0].download_url, '/download/0.9.0?platform=android')
        self.assertEqual(self.registry.get('legacy').download_url, '/download/0.9.0')

    def test_list_rejects_unknown_platform(self):
        with self.assertRaises(ReleaseValidationError):
            self.service.list_versions('tizen')

    # ===================
    # Delete
    # ===================

    def test_delete_removes_blob_and_record(self):
        record = self._publish('1.0.0', 1, b"x")

        self.service.delete(record.id)

        self.assertIsNone(self.registry.get(record.id))
        self.assertFalse(self.blob_store.exists(record.storage_path))

    def test_delete_unknown_id_not_found(self):
        with self.assertRaises(ReleaseNotFoundError):
            self.service.delete('nope')

    def test_delete_blob_failure_still_deletes_record(self):
        record = self._publish('1.0.0', 1, b"x")
        self.blob_store.delete(record.storage_path)

        with self.assertLogs('releases.services.distribution', level='WARNING'):
            self.service.delete(record.id)

        self.assertIsNone(self.registry.get(record.id))

    def test_delete_registry_failure_is_surfaced(self):
        record = self._publish('1.0.0', 1, b"x")

        with patch.object(self.registry, 'delete', side_effect=RegistryError('Database error')):
            with self.assertRaises(RegistryError) as ctx:
                self.service.delete(record.id)

        self.assertEqual(ctx.exception.message, 'Failed to delete version')

    def test_delete_removes_blob_before_record(self):
        record = self._publish('1.0.0', 1, b"x")
        calls = []

        with patch.object(self.blob_store, 'delete', side_effect=lambda p: calls.append('blob')), \
                patch.object(self.registry, 'delete', side_effect=lambda k: calls.append('record')):
            self.service.delete(record.id)

        self.assertEqual(calls, ['blob', 'record'])


class InMemoryRegistryTests(SimpleTestCase):
    """Tests for the registry capability set on the in-memory backend."""

    def test_query_by_version_code_with_limit(self):
        registry = InMemoryVersionRegistry()
        for i, platform in enumerate(['android', 'ios', 'android']):
            registry.save(make_record(f'r{i}', f'1.0.{i}', 5, platform=platform))

        self.assertEqual(len(registry.find_by_version_code(5)), 3)
        self.assertEqual(len(registry.find_by_version_code(5, limit=1)), 1)
        self.assertEqual(registry.find_by_version_code(6), [])

    def test_allocated_ids_are_unique(self):
        registry = InMemoryVersionRegistry()

        ids = {registry.allocate_id() for _ in range(50)}

        self.assertEqual(len(ids), 50)

    def test_returned_documents_are_copies(self):
        registry = InMemoryVersionRegistry()
        registry.save(make_record('a', '1.0.0', 1))

        registry._fetch_all()['a']['version'] = 'tampered'

        self.assertEqual(registry.get('a').version, '1.0.0')


class FirebaseVersionRegistryTests(SimpleTestCase):
    """Tests for FirebaseVersionRegistry error handling."""

    def setUp(self):
        patcher = patch('releases.services.registry.db.reference')
        self.ref = patcher.start().return_value
        self.addCleanup(patcher.stop)
        self.registry = FirebaseVersionRegistry(app=None)

    def test_get_with_illegal_key_characters_is_missing(self):
        for key in ['a$b', 'a#b', 'a[0]', 'a.b', 'a?b', '']:
            with self.subTest(key=key):
                self.assertIsNone(self.registry.get(key))
        self.ref.child.assert_not_called()

    def test_invalid_child_path_becomes_registry_error(self):
        self.ref.child.side_effect = ValueError('Invalid path')

        for call in [lambda: self.registry.delete('k'),
                     lambda: self.registry.save(make_record('k', '1.0.0', 1))]:
            with self.assertLogs('releases.services.registry', level='ERROR'):
                with self.assertRaises(RegistryError):
                    call()


class CloudStorageBlobStoreTests(SimpleTestCase):
    """Tests for transport failures in CloudStorageBlobStore."""

    def setUp(self):
        patcher = patch('releases.services.blob_store.storage.bucket')
        self.bucket = patcher.start().return_value
        self.addCleanup(patcher.stop)
        self.store = CloudStorageBlobStore(app=None, bucket_name='ota-test')

    def test_connection_reset_on_delete_still_removes_record(self):
        registry = InMemoryVersionRegistry()
        registry.save(make_record('k', '1.0.0', 1))
        self.bucket.blob.return_value.delete.side_effect = requests.exceptions.ConnectionError('reset')

        with self.assertLogs('releases.services.distribution', level='WARNING'):
            DistributionService(registry, self.store).delete('k')

        self.assertEqual(registry.all(), [])

    def test_transport_failures_become_blob_store_errors(self):
        blob = self.bucket.blob.return_value
        blob.reload.side_effect = google.auth.exceptions.TransportError('unreachable')
        blob.upload_from_file.side_effect = requests.exceptions.ConnectionError('reset')
        blob.exists.side_effect = google.auth.exceptions.RefreshError('token expired')

        with self.assertLogs('releases.services.blob_store', level='ERROR'):
            with self.assertRaises(BlobStoreError):
                self.store.open_reader('releases/android/1.0.0-1.apk')
            with self.assertRaises(BlobStoreError):
                self.store.upload('releases/android/1.0.0-1.apk', io.BytesIO(b"apk"))
        with self.assertRaises(BlobStoreError):
            self.store.exists('releases/android/1.0.0-1.apk')
