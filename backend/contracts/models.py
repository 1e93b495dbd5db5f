"""
Shared Data Contract
====================
Registry document shape shared by the publish, resolve and download paths.

Records live in an external keyed-document store, not in the Django database,
so the contract is a plain dataclass rather than an ORM model.

Contents:
    - PLATFORMS: per-platform binary extension and download content type
    - AppVersion: one published build
    - platform_of: the single rule for which platform a record belongs to
"""

from dataclasses import dataclass, asdict
from typing import Optional


DEFAULT_PLATFORM = 'android'

# platform -> (file extension, download content type)
PLATFORMS = {
    'android': ('.apk', 'application/vnd.android.package-archive'),
    'ios': ('.ipa', 'application/octet-stream'),
}

STORAGE_ROOT = 'releases'


def is_known_platform(platform: str) -> bool:
    return platform in PLATFORMS


def expected_extension(platform: str) -> str:
    """Binary extension, with the leading dot, accepted for a platform."""
    return PLATFORMS[platform][0]


def content_type_for(platform: str) -> str:
    return PLATFORMS[platform][1]


def storage_prefix(platform: str) -> str:
    """Object-store prefix under which a platform's binaries are stored."""
    return f"{STORAGE_ROOT}/{platform}/"


def build_storage_path(platform: str, version: str, timestamp: int, ext: str) -> str:
    """
    Object-store key for a new binary.
    Path structure: releases/{platform}/{version}-{unix timestamp}{ext}
    """
    return f"{storage_prefix(platform)}{version}-{timestamp}{ext}"


def build_download_url(version: str, platform: str) -> str:
    return f"/download/{version}?platform={platform}"


@dataclass
class AppVersion:
    """
    One published build of the mobile application.

    `version_code` is the ordering key and is unique within a platform.
    `checksum` is the hex SHA-256 of the stored binary, computed server-side.
    Records are created once and never updated in place.
    """
    id: str
    version: str
    version_code: int
    download_url: str = ''
    release_notes: str = ''
    file_size: int = 0
    checksum: str = ''
    created_at: str = ''
    updated_at: str = ''
    storage_path: str = ''
    platform: str = ''

    @classmethod
    def from_dict(cls, key: str, data: dict) -> 'AppVersion':
        """Build a record from a registry document stored under `key`."""
        return cls(
            id=data.get('id') or key,
            version=str(data.get('version', '')),
            version_code=int(data.get('version_code') or 0),
            download_url=data.get('download_url', ''),
            release_notes=data.get('release_notes', ''),
            file_size=int(data.get('file_size') or 0),
            checksum=data.get('checksum', ''),
            created_at=data.get('created_at', ''),
            updated_at=data.get('updated_at', ''),
            storage_path=data.get('storage_path', ''),
            platform=data.get('platform', ''),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def __str__(self):
        return f"{self.version} ({self.version_code}) [{platform_of(self) or '?'}]"


def platform_of(record: AppVersion) -> Optional[str]:
    """
    Platform a record belongs to.

    The stored `platform` field wins; records written before the field
    existed fall back to the `releases/{platform}/` prefix of their
    storage path. Returns None when neither identifies a known platform.
    """
    if record.platform:
        return record.platform if is_known_platform(record.platform) else None
    for platform in PLATFORMS:
        if record.storage_path.startswith(storage_prefix(platform)):
            return platform
    return None


def belongs_to(record: AppVersion, platform: str) -> bool:
    return platform_of(record) == platform
