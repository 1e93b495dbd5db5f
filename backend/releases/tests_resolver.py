"""
Unit Tests for Version Resolution
=================================
Tests cover:
- Platform scoping of the latest build
- Update availability
- Mandatory update threshold
- Platform derivation for records without a stored platform
"""

from django.test import SimpleTestCase

from contracts.models import AppVersion, platform_of
from releases.services import InMemoryVersionRegistry, VersionResolver
from releases.services.exceptions import ReleaseValidationError


def make_record(record_id, version, code, platform='android', notes='', storage_path=None):
    """Helper to build a registry record."""
    ext = '.ipa' if platform == 'ios' else '.apk'
    return AppVersion(
        id=record_id,
        version=version,
        version_code=code,
        download_url=f'/download/{version}?platform={platform}',
        release_notes=notes,
        file_size=10,
        checksum='0' * 64,
        created_at=f'2024-01-{code:02d}T00:00:00+00:00',
        updated_at=f'2024-01-{code:02d}T00:00:00+00:00',
        storage_path=storage_path or f'releases/{platform}/{version}-1700000000{ext}',
        platform=platform,
    )


class VersionResolverTests(SimpleTestCase):
    """Tests for VersionResolver.resolve."""

    def setUp(self):
        self.registry = InMemoryVersionRegistry()
        self.resolver = VersionResolver(self.registry)

    def _add(self, *records):
        for record in records:
            self.registry.save(record)

    def test_empty_registry_has_no_update(self):
        result = self.resolver.resolve('android', 1)

        self.assertFalse(result.update_available)
        self.assertFalse(result.is_mandatory)
        self.assertIsNone(result.latest_version)

    def test_other_platform_builds_are_ignored(self):
        self._add(make_record('a', '5.0.0', 50, platform='ios'))

        result = self.resolver.resolve('android', 1)

        self.assertFalse(result.update_available)
        self.assertIsNone(result.latest_version)

    def test_one_version_behind_is_optional(self):
        self._add(make_record('a', '1.0.0', 1), make_record('b', '1.1.0', 2))

        result = self.resolver.resolve('android', 1)

        self.assertTrue(result.update_available)
        self.assertFalse(result.is_mandatory)
        self.assertEqual(result.latest_version.version_code, 2)

    def test_two_versions_behind_is_mandatory(self):
        self._add(make_record('a', '1.2.0', 3))

        result = self.resolver.resolve('android', 1)

        self.assertTrue(result.update_available)
        self.assertTrue(result.is_mandatory)

    def test_up_to_date_client(self):
        self._add(make_record('a', '1.2.0', 3))

        result = self.resolver.resolve('android', 3)

        self.assertFalse(result.update_available)
        self.assertFalse(result.is_mandatory)
        self.assertEqual(result.latest_version.version, '1.2.0')

    def test_client_ahead_of_latest(self):
        self._add(make_record('a', '1.2.0', 3))

        result = self.resolver.resolve('android', 10)

        self.assertFalse(result.update_available)
        self.assertFalse(result.is_mandatory)

    def test_latest_is_highest_code_on_platform(self):
        self._add(
            make_record('a', '1.0.0', 4),
            make_record('b', '1.3.0', 9),
            make_record('c', '1.1.0', 6),
            make_record('d', '7.0.0', 70, platform='ios'),
        )

        result = self.resolver.resolve('android', 8)

        self.assertEqual(result.latest_version.id, 'b')
        self.assertTrue(result.update_available)
        self.assertFalse(result.is_mandatory)

    def test_change_log_is_latest_release_notes(self):
        self._add(make_record('a', '2.0.0', 2, notes='New onboarding'))

        result = self.resolver.resolve('android', 1)

        self.assertEqual(result.change_log, 'New onboarding')

    def test_record_without_platform_uses_storage_prefix(self):
        self.registry._write('legacy', {
            'version': '3.0.0',
            'version_code': 30,
            'storage_path': 'releases/ios/3.0.0-1690000000.ipa',
        })

        self.assertEqual(self.resolver.resolve('ios', 1).latest_version.id, 'legacy')
        self.assertIsNone(self.resolver.resolve('android', 1).latest_version)

    def test_underscore_prefixed_path_is_not_a_platform(self):
        self.registry._write('odd', {
            'version': '3.0.0',
            'version_code': 30,
            'storage_path': 'android_3.0.0.apk',
        })

        self.assertIsNone(self.resolver.resolve('android', 1).latest_version)

    def test_unknown_platform_rejected(self):
        with self.assertRaises(ReleaseValidationError):
            self.resolver.resolve('windows', 1)

    def test_non_positive_code_rejected(self):
        with self.assertRaises(ReleaseValidationError):
            self.resolver.resolve('android', 0)


class PlatformDerivationTests(SimpleTestCase):
    """Tests for contracts.models.platform_of."""

    def test_stored_platform_wins(self):
        record = make_record('a', '1.0.0', 1, platform='ios',
                             storage_path='releases/android/1.0.0-1.apk')
        self.assertEqual(platform_of(record), 'ios')

    def test_unknown_stored_platform(self):
        record = make_record('a', '1.0.0', 1)
        record.platform = 'symbian'
        self.assertIsNone(platform_of(record))

    def test_prefix_fallback(self):
        record = make_record('a', '1.0.0', 1)
        record.platform = ''
        self.assertEqual(platform_of(record), 'android')

    def test_placeholder_entries_are_skipped(self):
        registry = InMemoryVersionRegistry({'pending': '', 'a': make_record('a', '1.0.0', 1).to_dict()})

        self.assertEqual([record.id for record in registry.all()], ['a'])
        self.assertIsNone(registry.get('pending'))
