"""
Release service errors.

Views translate these into HTTP responses at the request boundary.
"""


class ReleaseError(Exception):
    """Base class for release service failures."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ReleaseValidationError(ReleaseError):
    """Client input rejected before any side effect."""


class VersionConflictError(ReleaseError):
    """A build with the same version code already exists for the platform."""


class ReleaseNotFoundError(ReleaseError):
    pass


class RegistryError(ReleaseError):
    """The version registry could not be read or written."""


class BlobStoreError(ReleaseError):
    """The blob store could not be read or written."""


class SourceStreamError(ReleaseError):
    """The uploaded binary could not be opened for reading."""


class UploadTimeoutError(BlobStoreError):
    """The upload exceeded its wall-clock budget and was abandoned."""
