"""
Management command to verify the release backends are reachable.

Usage:
    python manage.py check_backends
    python manage.py check_backends --platform ios   # also show the latest ios build
"""

from django.core.exceptions import ImproperlyConfigured
from django.core.management.base import BaseCommand, CommandError

from contracts.models import PLATFORMS
from releases.services import CloudStorageBlobStore, ServiceBackends, VersionResolver
from releases.services.exceptions import ReleaseError


class Command(BaseCommand):
    help = 'Connect to the version registry and blob store and report their state'

    def add_arguments(self, parser):
        parser.add_argument(
            '--platform',
            choices=sorted(PLATFORMS),
            help='Also report the latest published build for this platform',
        )

    def handle(self, *args, **options):
        self.stdout.write(self.style.NOTICE('Connecting release backends...'))

        try:
            ServiceBackends.initialize()
        except ImproperlyConfigured as e:
            raise CommandError(f'Configuration error: {e}')

        registry = ServiceBackends.get_registry()
        blob_store = ServiceBackends.get_blob_store()

        try:
            self.stdout.write(f'Blob store: {blob_store.describe()}')
            if isinstance(blob_store, CloudStorageBlobStore) and not blob_store.bucket_exists():
                raise CommandError(f'Bucket {blob_store.bucket_name} does not exist')

            self.stdout.write(f'Registry records: {registry.count()}')

            if options['platform']:
                latest = VersionResolver(registry).latest(options['platform'])
                if latest:
                    self.stdout.write(
                        f"Latest {options['platform']} build: {latest.version} "
                        f"(code {latest.version_code}, {latest.file_size} bytes)"
                    )
                else:
                    self.stdout.write(
                        self.style.WARNING(f"No {options['platform']} builds published")
                    )
        except ReleaseError as e:
            raise CommandError(f'Backend check failed: {e.message}')

        self.stdout.write(self.style.SUCCESS('Release backends OK'))
