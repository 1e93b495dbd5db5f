"""
Version resolution: is there a newer build for this client, and must it update?
"""

import logging
from dataclasses import dataclass
from typing import Optional

from contracts.models import AppVersion, belongs_to, is_known_platform
from .exceptions import ReleaseValidationError
from .registry import VersionRegistry

logger = logging.getLogger(__name__)


# Clients two or more version codes behind the latest build must update.
MANDATORY_UPDATE_GAP = 2


@dataclass
class UpdateCheckResult:
    update_available: bool
    is_mandatory: bool = False
    latest_version: Optional[AppVersion] = None

    @property
    def change_log(self) -> str:
        return self.latest_version.release_notes if self.latest_version else ''


class VersionResolver:
    """Read-only lookups of the latest published build per platform."""

    def __init__(self, registry: VersionRegistry):
        self.registry = registry

    def latest(self, platform: str) -> Optional[AppVersion]:
        """Build with the highest version code on `platform`, or None."""
        latest = None
        for record in self.registry.all():
            if not belongs_to(record, platform):
                continue
            if latest is None or record.version_code > latest.version_code:
                latest = record
        return latest

    def resolve(self, platform: str, current_version_code: int) -> UpdateCheckResult:
        if not is_known_platform(platform):
            raise ReleaseValidationError('Invalid platform', {'platform': platform})
        if current_version_code < 1:
            raise ReleaseValidationError(
                'Invalid current_code', {'expected': 'positive integer'}
            )

        latest = self.latest(platform)
        if latest is None:
            logger.info(f"No {platform} builds published; nothing to offer")
            return UpdateCheckResult(update_available=False)

        return UpdateCheckResult(
            update_available=current_version_code < latest.version_code,
            is_mandatory=latest.version_code - current_version_code >= MANDATORY_UPDATE_GAP,
            latest_version=latest,
        )
