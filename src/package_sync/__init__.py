"""
Package Sync

Discovers, evaluates, installs and updates plugins and themes hosted as
GitHub repositories.
"""

from .errors import (
    DuplicatePackageError,
    ForbiddenError,
    HTTPStatusError,
    IncompatiblePackageError,
    InstallError,
    InstallStage,
    InvalidResponseError,
    MissingCredentialError,
    NetworkError,
    NoValidMetadataError,
    NotFoundError,
    PackageNotTrackedError,
    PackageSyncError,
    RateLimitedError,
    RegistryStorageError,
    UnauthorizedError,
    ValidationError,
)
from .models import (
    CompatibilityVerdict,
    HostEnvironment,
    PackageKind,
    TrackedPackage,
    UpdateDescriptor,
    validate_repo_format,
)
from .service import PackageSyncService
from .settings import JsonSettingsStore, MemorySettingsStore, SyncSettings

__all__ = [
    'PackageSyncService',
    'SyncSettings',
    'MemorySettingsStore',
    'JsonSettingsStore',
    'PackageKind',
    'HostEnvironment',
    'TrackedPackage',
    'UpdateDescriptor',
    'CompatibilityVerdict',
    'validate_repo_format',
    'PackageSyncError',
    'NetworkError',
    'HTTPStatusError',
    'NotFoundError',
    'UnauthorizedError',
    'ForbiddenError',
    'RateLimitedError',
    'InvalidResponseError',
    'MissingCredentialError',
    'NoValidMetadataError',
    'IncompatiblePackageError',
    'ValidationError',
    'DuplicatePackageError',
    'PackageNotTrackedError',
    'RegistryStorageError',
    'InstallError',
    'InstallStage',
]
