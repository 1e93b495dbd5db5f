"""
API Tests for the OTA Endpoints
===============================
Tests cover:
- Health check
- Upload, check-update and download end to end
- Error status codes and bodies
- Version listing and deletion
"""

import hashlib
import os
import re
import shutil
import tempfile
from unittest.mock import patch

from django.core.files.uploadedfile import SimpleUploadedFile
from rest_framework import status
from rest_framework.test import APISimpleTestCase

from releases.services import FileSystemBlobStore, InMemoryVersionRegistry, ServiceBackends
from releases.services.exceptions import RegistryError


API = '/api/v1/ota'


class OTAApiTests(APISimpleTestCase):
    """End-to-end tests against the in-memory registry and a temporary blob root."""

    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.registry = InMemoryVersionRegistry()
        self.blob_store = FileSystemBlobStore(self.root)
        ServiceBackends.configure(self.registry, self.blob_store)

    def tearDown(self):
        ServiceBackends.reset()
        shutil.rmtree(self.root, ignore_errors=True)

    def _upload(self, version, version_code, content=b"binary", filename='build.apk',
                platform='android', release_notes=''):
        """Helper to upload a build and return the response."""
        data = {
            'version': version,
            'version_code': str(version_code),
            'platform': platform,
            'release_notes': release_notes,
            'file': SimpleUploadedFile(filename, content),
        }
        return self.client.post(f'{API}/upload', data, format='multipart')

    def _check(self, current_code, platform='android', current_version='1.0.0'):
        return self.client.post(
            f'{API}/check-update',
            {'current_version': current_version, 'current_code': current_code, 'platform': platform},
            format='json',
        )

    def test_health(self):
        response = self.client.get('/health')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), {'status': 'ok'})

    # ===================
    # Upload + check-update
    # ===================

    def test_upload_then_mandatory_update(self):
        response = self._upload('2.0.0', 5, content=b"v2 apk", release_notes='Big release')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        body = response.json()
        self.assertEqual(body['version']['version_code'], 5)
        self.assertEqual(body['download_url'], '/download/2.0.0?platform=android')
        self.assertEqual(body['version']['download_url'], '/download/2.0.0?platform=android')
        self.assertRegex(body['version']['checksum'], r'^[0-9a-f]{64}$')
        self.assertEqual(body['version']['checksum'], hashlib.sha256(b"v2 apk").hexdigest())

        check = self._check(3)

        self.assertEqual(check.status_code, status.HTTP_200_OK)
        result = check.json()
        self.assertTrue(result['update_available'])
        self.assertTrue(result['is_mandatory'])
        self.assertEqual(result['latest_version']['version'], '2.0.0')
        self.assertEqual(result['change_log'], 'Big release')

    def test_check_update_one_behind_is_optional(self):
        self._upload('2.0.0', 5)

        result = self._check(4).json()

        self.assertTrue(result['update_available'])
        self.assertFalse(result['is_mandatory'])

    def test_check_update_with_nothing_published(self):
        response = self._check(1, platform='ios')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), {'update_available': False})

    def test_check_update_invalid_platform(self):
        response = self._check(1, platform='windows')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()['error'], 'Invalid platform')

    def test_check_update_missing_fields(self):
        response = self.client.post(f'{API}/check-update', {'platform': 'android'}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('current_code', response.json()['details'])

    def test_check_update_registry_failure_is_generic(self):
        with patch.object(self.registry, 'all', side_effect=RegistryError('Database error')):
            response = self._check(1)

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.json(), {'error': 'Database error'})

    def test_upload_duplicate_code_conflicts(self):
        self._upload('1.0.0', 3)

        response = self._upload('1.0.1', 3)

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertIn('Version code 3 already exists', response.json()['error'])

    def test_upload_wrong_extension(self):
        response = self._upload('1.0.0', 1, filename='build.apk', platform='ios')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()['expected'], '.ipa')

    def test_upload_invalid_version_code(self):
        response = self._upload('1.0.0', 'zero')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()['error'], 'Invalid version_code')

    def test_upload_without_file(self):
        response = self.client.post(
            f'{API}/upload', {'version': '1.0.0', 'version_code': '1'}, format='multipart'
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()['error'], 'No file uploaded')

    def test_upload_registry_failure_cleans_up(self):
        with patch.object(self.registry, 'save', side_effect=RegistryError('Database error')):
            response = self._upload('1.0.0', 1)

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.json()['error'], 'Failed to save version information')
        self.assertEqual(self.registry.all(), [])
        self.assertFalse(any(files for _, _, files in os.walk(self.root)))

    # ===================
    # Download
    # ===================

    def test_download_streams_binary(self):
        content = b"\x00\x01apk-bytes" * 1000
        self._upload('3.1.0', 7, content=content)

        response = self.client.get(f'{API}/download/3.1.0', {'platform': 'android'})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response['Content-Type'], 'application/vnd.android.package-archive')
        self.assertEqual(response['Content-Disposition'], 'attachment; filename=app-v3.1.0.apk')
        self.assertEqual(response['Content-Length'], str(len(content)))
        self.assertEqual(b''.join(response.streaming_content), content)

    def test_download_ios(self):
        self._upload('3.1.0', 7, content=b"ipa", filename='Runner.ipa', platform='ios')

        response = self.client.get(f'{API}/download/3.1.0', {'platform': 'ios'})

        self.assertEqual(response['Content-Type'], 'application/octet-stream')
        self.assertEqual(response['Content-Disposition'], 'attachment; filename=app-v3.1.0.ipa')
        self.assertEqual(b''.join(response.streaming_content), b"ipa")

    def test_download_unknown_version(self):
        response = self.client.get(f'{API}/download/9.9.9')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_download_url_from_upload_resolves(self):
        body = self._upload('1.4.0', 2, content=b"fetch me").json()

        response = self.client.get(f"{API}{body['download_url']}")

        self.assertEqual(b''.join(response.streaming_content), b"fetch me")

    # ===================
    # Versions
    # ===================

    def test_list_versions(self):
        self._upload('1.0.0', 1)
        self._upload('1.0.0', 1, filename='a.ipa', platform='ios')

        all_versions = self.client.get(f'{API}/versions').json()
        ios_versions = self.client.get(f'{API}/versions', {'platform': 'ios'}).json()

        self.assertEqual(len(all_versions), 2)
        self.assertEqual(len(ios_versions), 1)
        self.assertTrue(re.match(r'^releases/ios/1\.0\.0-\d+\.ipa$', ios_versions[0]['storage_path']))

    def test_list_versions_invalid_platform(self):
        response = self.client.get(f'{API}/versions', {'platform': 'palm'})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_delete_version(self):
        record = self._upload('1.0.0', 1).json()['version']

        response = self.client.delete(f"{API}/versions/{record['id']}")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json(), {'message': 'Version deleted successfully'})
        self.assertEqual(self.registry.all(), [])
        self.assertFalse(self.blob_store.exists(record['storage_path']))

    def test_delete_unknown_version(self):
        response = self.client.delete(f'{API}/versions/missing')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.json()['error'], 'Version not found')

    def test_delete_id_with_illegal_key_characters(self):
        response = self.client.delete(f'{API}/versions/a$b')

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.json()['error'], 'Version not found')

    def test_upload_version_with_fragment_rejected(self):
        response = self._upload('1.0#beta', 1)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()['error'], 'Invalid version')
        self.assertEqual(self.registry.all(), [])
