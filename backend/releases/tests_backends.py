"""
Unit Tests for Backend Initialization
=====================================
Tests cover:
- Credential source detection (inline JSON vs file path)
- Fatal configuration errors
- Backend selection and initialize-once behavior
- check_backends management command
- Request logging middleware
"""

import shutil
import tempfile
from io import StringIO
from unittest.mock import MagicMock, patch

from django.core.exceptions import ImproperlyConfigured
from django.core.management import call_command
from django.test import SimpleTestCase, override_settings

from releases.services import FileSystemBlobStore, InMemoryVersionRegistry, ServiceBackends
from releases.services.backends import load_credentials
from releases.tests_resolver import make_record


FIREBASE_SETTINGS = {
    'OTA_BACKEND': 'firebase',
    'FIREBASE_CREDENTIALS': '/secrets/service-account.json',
    'FIREBASE_PROJECT_ID': 'ota-project',
    'FIREBASE_DB_URL': 'https://ota-project.firebaseio.com',
    'FIREBASE_STORAGE_BUCKET': 'ota-project.appspot.com',
    'OTA_UPLOAD_TIMEOUT': 120,
}


class LoadCredentialsTests(SimpleTestCase):
    """Tests for load_credentials."""

    @patch('releases.services.backends.credentials.Certificate')
    def test_inline_json(self, certificate):
        load_credentials('  {"type": "service_account", "project_id": "p"}')

        certificate.assert_called_once_with({'type': 'service_account', 'project_id': 'p'})

    @patch('releases.services.backends.credentials.Certificate')
    def test_file_path(self, certificate):
        load_credentials('/secrets/service-account.json')

        certificate.assert_called_once_with('/secrets/service-account.json')

    def test_malformed_json_is_fatal(self):
        with self.assertRaises(ImproperlyConfigured):
            load_credentials('{not json')

    def test_missing_file_is_fatal(self):
        with self.assertRaises(ImproperlyConfigured):
            load_credentials('/definitely/not/here.json')


class ServiceBackendsTests(SimpleTestCase):
    """Tests for ServiceBackends.initialize."""

    def setUp(self):
        ServiceBackends.reset()
        self.root = tempfile.mkdtemp()

    def tearDown(self):
        ServiceBackends.reset()
        ServiceBackends._firebase_app = None
        shutil.rmtree(self.root, ignore_errors=True)

    def test_local_backend(self):
        with override_settings(OTA_BACKEND='local', MEDIA_ROOT=self.root):
            registry = ServiceBackends.get_registry()
            blob_store = ServiceBackends.get_blob_store()

        self.assertIsInstance(registry, InMemoryVersionRegistry)
        self.assertIsInstance(blob_store, FileSystemBlobStore)
        self.assertEqual(str(blob_store.root), self.root)

    def test_initialized_once(self):
        with override_settings(OTA_BACKEND='local', MEDIA_ROOT=self.root):
            first = ServiceBackends.get_registry()
            ServiceBackends.initialize()

            self.assertIs(ServiceBackends.get_registry(), first)

    def test_unknown_backend_is_fatal(self):
        with override_settings(OTA_BACKEND='dropbox'):
            with self.assertRaises(ImproperlyConfigured):
                ServiceBackends.initialize()

    def test_missing_firebase_settings_are_fatal(self):
        for missing in ['FIREBASE_CREDENTIALS', 'FIREBASE_PROJECT_ID',
                        'FIREBASE_DB_URL', 'FIREBASE_STORAGE_BUCKET']:
            with self.subTest(missing=missing):
                config = dict(FIREBASE_SETTINGS, **{missing: ''})
                with override_settings(**config), \
                        patch('releases.services.backends.load_credentials'):
                    with self.assertRaises(ImproperlyConfigured):
                        ServiceBackends.initialize()

    @patch('releases.services.backends.CloudStorageBlobStore')
    @patch('releases.services.backends.FirebaseVersionRegistry')
    @patch('releases.services.backends.firebase_admin.initialize_app')
    @patch('releases.services.backends.load_credentials')
    def test_firebase_backend_wiring(self, load_creds, initialize_app, registry_cls, blob_cls):
        app = MagicMock()
        initialize_app.return_value = app

        with override_settings(**FIREBASE_SETTINGS):
            ServiceBackends.initialize()

        load_creds.assert_called_once_with('/secrets/service-account.json')
        initialize_app.assert_called_once_with(load_creds.return_value, {
            'projectId': 'ota-project',
            'databaseURL': 'https://ota-project.firebaseio.com',
            'storageBucket': 'ota-project.appspot.com',
        })
        registry_cls.assert_called_once_with(app, path='versions')
        blob_cls.assert_called_once_with(app, 'ota-project.appspot.com', upload_timeout=120)
        self.assertIs(ServiceBackends.get_registry(), registry_cls.return_value)


class CheckBackendsCommandTests(SimpleTestCase):
    """Tests for the check_backends management command."""

    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.registry = InMemoryVersionRegistry()
        ServiceBackends.configure(self.registry, FileSystemBlobStore(self.root))

    def tearDown(self):
        ServiceBackends.reset()
        shutil.rmtree(self.root, ignore_errors=True)

    def test_reports_registry_state(self):
        self.registry.save(make_record('a', '1.2.0', 12))
        out = StringIO()

        call_command('check_backends', '--platform', 'android', stdout=out)

        output = out.getvalue()
        self.assertIn('Registry records: 1', output)
        self.assertIn('Latest android build: 1.2.0 (code 12', output)
        self.assertIn('Release backends OK', output)

    def test_reports_missing_platform_builds(self):
        out = StringIO()

        call_command('check_backends', '--platform', 'ios', stdout=out)

        self.assertIn('No ios builds published', out.getvalue())


class RequestLoggingMiddlewareTests(SimpleTestCase):
    """Tests for RequestLoggingMiddleware."""

    def setUp(self):
        self.root = tempfile.mkdtemp()
        ServiceBackends.configure(InMemoryVersionRegistry(), FileSystemBlobStore(self.root))

    def tearDown(self):
        ServiceBackends.reset()
        shutil.rmtree(self.root, ignore_errors=True)

    def test_logs_successful_request(self):
        with self.assertLogs('releases.middleware', level='INFO') as logs:
            self.client.get('/api/v1/ota/versions')

        self.assertTrue(any('GET /api/v1/ota/versions -> 200' in line for line in logs.output))

    def test_logs_failed_request_with_error(self):
        with self.assertLogs('releases.middleware', level='WARNING') as logs:
            self.client.delete('/api/v1/ota/versions/missing')

        self.assertTrue(any('404' in line and 'Version not found' in line for line in logs.output))

    def test_health_is_not_logged(self):
        from releases.middleware import RequestLoggingMiddleware

        self.assertFalse(RequestLoggingMiddleware(lambda r: None).should_log('/health'))
        self.assertTrue(RequestLoggingMiddleware(lambda r: None).should_log('/api/v1/ota/upload'))
