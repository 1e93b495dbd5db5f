from .backends import ServiceBackends
from .blob_store import BlobStore, CloudStorageBlobStore, FileSystemBlobStore, HashingReader
from .distribution import BinaryDownload, DistributionService
from .publishing import PublishService
from .registry import FirebaseVersionRegistry, InMemoryVersionRegistry, VersionRegistry
from .resolver import UpdateCheckResult, VersionResolver

__all__ = [
    'ServiceBackends',
    'BlobStore',
    'CloudStorageBlobStore',
    'FileSystemBlobStore',
    'HashingReader',
    'BinaryDownload',
    'DistributionService',
    'PublishService',
    'FirebaseVersionRegistry',
    'InMemoryVersionRegistry',
    'VersionRegistry',
    'UpdateCheckResult',
    'VersionResolver',
]
