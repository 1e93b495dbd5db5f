"""
Unit Tests for the Publish Pipeline
===================================
Tests cover:
- Streaming checksum computation
- Filesystem blob store
- Publish validation order and failures
- Storage path and record construction
- Compensation when the registry write fails
- Upload deadline
"""

import hashlib
import io
import os
import shutil
import tempfile
from unittest.mock import patch

from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import SimpleTestCase

from releases.services import FileSystemBlobStore, HashingReader, InMemoryVersionRegistry, PublishService
from releases.services.exceptions import (
    BlobStoreError,
    RegistryError,
    ReleaseValidationError,
    UploadTimeoutError,
    VersionConflictError,
)


FIXED_TIME = 1700000000


class HashingReaderTests(SimpleTestCase):
    """Tests for the read-through SHA-256 tap."""

    def test_digest_matches_sha256_of_content(self):
        content = b"binary payload" * 1000
        reader = HashingReader(io.BytesIO(content))

        while reader.read(4096):
            pass

        self.assertEqual(reader.hexdigest(), hashlib.sha256(content).hexdigest())
        self.assertEqual(reader.bytes_read, len(content))

    def test_returns_source_bytes_unchanged(self):
        content = b"abcdefghij"
        reader = HashingReader(io.BytesIO(content))

        self.assertEqual(reader.read(4) + reader.read(), content)

    def test_empty_source_produces_empty_hash(self):
        reader = HashingReader(io.BytesIO(b""))

        self.assertEqual(reader.read(), b"")
        self.assertEqual(reader.hexdigest(), hashlib.sha256(b"").hexdigest())
        self.assertEqual(reader.bytes_read, 0)

    def test_read_after_deadline_raises(self):
        reader = HashingReader(io.BytesIO(b"late"), deadline=0)

        with self.assertRaises(UploadTimeoutError):
            reader.read()


class FileSystemBlobStoreTests(SimpleTestCase):
    """Tests for the filesystem blob backend."""

    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.store = FileSystemBlobStore(self.root)

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def test_upload_then_read(self):
        self.store.upload('releases/android/1.0.0-1.apk', io.BytesIO(b"apk bytes"))

        reader = self.store.open_reader('releases/android/1.0.0-1.apk')
        try:
            self.assertEqual(reader.read(), b"apk bytes")
        finally:
            reader.close()
        self.assertTrue(self.store.exists('releases/android/1.0.0-1.apk'))

    def test_failed_upload_leaves_nothing_behind(self):
        source = HashingReader(io.BytesIO(b"data"), deadline=0)

        with self.assertRaises(UploadTimeoutError):
            self.store.upload('releases/ios/1.0.0-1.ipa', source)

        target_dir = os.path.join(self.root, 'releases', 'ios')
        self.assertFalse(self.store.exists('releases/ios/1.0.0-1.ipa'))
        self.assertEqual(os.listdir(target_dir), [])

    def test_delete_removes_file_and_empty_directories(self):
        self.store.upload('releases/ios/2.0.0-1.ipa', io.BytesIO(b"ipa"))

        self.store.delete('releases/ios/2.0.0-1.ipa')

        self.assertFalse(self.store.exists('releases/ios/2.0.0-1.ipa'))
        self.assertFalse(os.path.exists(os.path.join(self.root, 'releases')))
        self.assertTrue(os.path.isdir(self.root))

    def test_delete_missing_blob_raises(self):
        with self.assertRaises(BlobStoreError):
            self.store.delete('releases/android/missing.apk')

    def test_open_missing_blob_raises(self):
        with self.assertRaises(BlobStoreError):
            self.store.open_reader('releases/android/missing.apk')

    def test_path_outside_root_rejected(self):
        with self.assertRaises(BlobStoreError):
            self.store.upload('../escape.apk', io.BytesIO(b"x"))


class PublishServiceTests(SimpleTestCase):
    """Tests for PublishService.publish."""

    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.registry = InMemoryVersionRegistry()
        self.blob_store = FileSystemBlobStore(self.root)
        self.service = PublishService(
            self.registry, self.blob_store, clock=lambda: FIXED_TIME
        )

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def _binary(self, content: bytes = b"PK\x03\x04 fake apk", filename: str = 'build.apk'):
        """Helper to create an uploaded binary."""
        return SimpleUploadedFile(filename, content, content_type='application/octet-stream')

    def _publish(self, platform='android', version='1.0.0', version_code='1',
                 content=b"PK\x03\x04 fake apk", filename='build.apk', notes=''):
        file_obj = self._binary(content, filename)
        return self.service.publish(platform, version, version_code, notes, file_obj, filename)

    def _assert_nothing_stored(self):
        self.assertEqual(self.registry.all(), [])
        stored = [files for _, _, files in os.walk(self.root) if files]
        self.assertEqual(stored, [])

    # ===================
    # Successful publish
    # ===================

    def test_publish_builds_record(self):
        content = b"release 2.0.0 binary"

        record = self._publish(version='2.0.0', version_code='5', content=content, notes='Fixes')

        self.assertEqual(record.version, '2.0.0')
        self.assertEqual(record.version_code, 5)
        self.assertEqual(record.download_url, '/download/2.0.0?platform=android')
        self.assertEqual(record.release_notes, 'Fixes')
        self.assertEqual(record.file_size, len(content))
        self.assertEqual(record.checksum, hashlib.sha256(content).hexdigest())
        self.assertEqual(record.storage_path, f'releases/android/2.0.0-{FIXED_TIME}.apk')
        self.assertEqual(record.platform, 'android')
        self.assertTrue(record.created_at)
        self.assertEqual(record.created_at, record.updated_at)

    def test_publish_writes_registry_and_blob(self):
        record = self._publish()

        self.assertEqual(self.registry.get(record.id), record)
        self.assertTrue(self.blob_store.exists(record.storage_path))

    def test_stored_blob_matches_checksum(self):
        content = os.urandom(200 * 1024)

        record = self._publish(content=content)

        with open(os.path.join(self.root, record.storage_path), 'rb') as f:
            self.assertEqual(hashlib.sha256(f.read()).hexdigest(), record.checksum)

    def test_empty_platform_defaults_to_android(self):
        record = self._publish(platform='')

        self.assertEqual(record.platform, 'android')
        self.assertTrue(record.storage_path.startswith('releases/android/'))

    def test_platform_is_normalized(self):
        record = self._publish(platform=' IOS ', filename='Runner.ipa')

        self.assertEqual(record.platform, 'ios')
        self.assertEqual(record.storage_path, f'releases/ios/1.0.0-{FIXED_TIME}.ipa')

    def test_extension_check_is_case_insensitive(self):
        record = self._publish(filename='BUILD.APK')

        self.assertTrue(record.storage_path.endswith('.apk'))

    def test_same_version_in_same_second_gets_distinct_path(self):
        first = self._publish(version='1.0.0', version_code='1')
        second = self._publish(version='1.0.0', version_code='2')

        self.assertNotEqual(first.storage_path, second.storage_path)
        self.assertEqual(second.storage_path, f'releases/android/1.0.0-{FIXED_TIME + 1}.apk')

    def test_same_version_code_allowed_on_other_platform(self):
        self._publish(platform='android', version_code='7')
        record = self._publish(platform='ios', version_code='7', filename='app.ipa')

        self.assertEqual(record.version_code, 7)
        self.assertEqual(len(self.registry.all()), 2)

    # ===================
    # Validation
    # ===================

    def test_unknown_platform_rejected(self):
        with self.assertRaises(ReleaseValidationError):
            self._publish(platform='windows', filename='setup.exe')
        self._assert_nothing_stored()

    def test_missing_version_rejected(self):
        with self.assertRaises(ReleaseValidationError) as ctx:
            self._publish(version='  ')
        self.assertEqual(ctx.exception.message, 'Missing required fields')
        self._assert_nothing_stored()

    def test_missing_version_code_rejected(self):
        with self.assertRaises(ReleaseValidationError):
            self._publish(version_code=None)
        self._assert_nothing_stored()

    def test_non_positive_or_non_integer_version_code_rejected(self):
        for bad in ['0', '-3', 'abc', '1.5', '²']:
            with self.subTest(version_code=bad):
                with self.assertRaises(ReleaseValidationError) as ctx:
                    self._publish(version_code=bad)
                self.assertEqual(ctx.exception.message, 'Invalid version_code')
        self._assert_nothing_stored()

    def test_version_with_slash_rejected(self):
        with self.assertRaises(ReleaseValidationError):
            self._publish(version='1.0/../../x')
        self._assert_nothing_stored()

    def test_version_breaking_download_route_rejected(self):
        for version in ['1.0#beta', '1.0?x', '1.0%2F', '1.0 beta']:
            with self.subTest(version=version):
                with self.assertRaises(ReleaseValidationError) as ctx:
                    self._publish(version=version)
                self.assertEqual(ctx.exception.message, 'Invalid version')
        self._assert_nothing_stored()

    def test_source_closed_after_upload(self):
        file_obj = self._binary()

        self.service.publish('android', '1.0.0', '1', '', file_obj, 'build.apk')

        self.assertTrue(file_obj.closed)

    def test_source_closed_when_upload_fails(self):
        file_obj = self._binary()

        with patch.object(self.blob_store, 'upload', side_effect=BlobStoreError('Failed to upload file')):
            with self.assertRaises(BlobStoreError):
                self.service.publish('android', '1.0.0', '1', '', file_obj, 'build.apk')

        self.assertTrue(file_obj.closed)

    def test_duplicate_version_code_conflicts_regardless_of_version(self):
        self._publish(version='1.0.0', version_code='3')

        with self.assertRaises(VersionConflictError) as ctx:
            self._publish(version='9.9.9', version_code='3')

        self.assertIn('3', ctx.exception.message)
        self.assertEqual(len(self.registry.all()), 1)

    def test_apk_for_ios_rejected_naming_ipa(self):
        with self.assertRaises(ReleaseValidationError) as ctx:
            self._publish(platform='ios', filename='build.apk')

        self.assertIn('.ipa', ctx.exception.message)
        self.assertEqual(ctx.exception.details['expected'], '.ipa')
        self._assert_nothing_stored()

    def test_missing_file_rejected(self):
        with self.assertRaises(ReleaseValidationError) as ctx:
            self.service.publish('android', '1.0.0', '1', '', None, None)

        self.assertEqual(ctx.exception.message, 'No file uploaded')

    def test_conflict_checked_before_extension(self):
        self._publish(version_code='4')

        with self.assertRaises(VersionConflictError):
            self._publish(version_code='4', filename='wrong.ipa')

    # ===================
    # Failures and compensation
    # ===================

    def test_registry_write_failure_removes_blob(self):
        expected_path = f'releases/android/1.0.0-{FIXED_TIME}.apk'

        with patch.object(self.registry, 'save', side_effect=RegistryError('Database error')):
            with self.assertLogs('releases.services.publishing', level='INFO'):
                with self.assertRaises(RegistryError) as ctx:
                    self._publish()

        self.assertEqual(ctx.exception.message, 'Failed to save version information')
        self.assertFalse(self.blob_store.exists(expected_path))
        self.assertEqual(self.registry._fetch_all(), {})

    def test_key_allocation_failure_removes_blob(self):
        expected_path = f'releases/android/1.0.0-{FIXED_TIME}.apk'

        with patch.object(self.registry, 'allocate_id', side_effect=RegistryError('Database error')):
            with self.assertRaises(RegistryError):
                self._publish()

        self.assertFalse(self.blob_store.exists(expected_path))

    def test_failed_compensation_is_logged_not_escalated(self):
        with patch.object(self.registry, 'save', side_effect=RegistryError('Database error')), \
                patch.object(self.blob_store, 'delete', side_effect=BlobStoreError('gone')):
            with self.assertLogs('releases.services.publishing', level='WARNING') as logs:
                with self.assertRaises(RegistryError) as ctx:
                    self._publish()

        self.assertEqual(ctx.exception.message, 'Failed to save version information')
        self.assertTrue(any('Failed to clean up uploaded file' in line for line in logs.output))

    def test_existence_check_failure_stores_nothing(self):
        with patch.object(self.registry, 'find_by_version_code', side_effect=RegistryError('Database error')):
            with self.assertRaises(RegistryError):
                self._publish()
        self._assert_nothing_stored()

    def test_blob_upload_failure_writes_no_record(self):
        with patch.object(self.blob_store, 'upload', side_effect=BlobStoreError('Failed to upload file')):
            with self.assertRaises(BlobStoreError):
                self._publish()
        self.assertEqual(self.registry.all(), [])

    def test_make_public_failure_is_only_a_warning(self):
        with patch.object(self.blob_store, 'make_public', side_effect=BlobStoreError('acl denied')):
            with self.assertLogs('releases.services.publishing', level='WARNING') as logs:
                record = self._publish()

        self.assertTrue(self.blob_store.exists(record.storage_path))
        self.assertTrue(any('Failed to set public access' in line for line in logs.output))

    def test_make_public_skipped_when_disabled(self):
        self.service.make_public = False

        with patch.object(self.blob_store, 'make_public') as make_public:
            self._publish()

        make_public.assert_not_called()

    def test_upload_past_deadline_is_abandoned(self):
        self.service.upload_timeout = -1

        with self.assertRaises(UploadTimeoutError):
            self._publish()
        self._assert_nothing_stored()
