"""
Compatibility verdicts: declared package requirements vs the running host.
"""

from src.common.version_compare import compare_versions
from src.logging_config import get_logger
from src.package_sync.errors import NoValidMetadataError
from src.package_sync.models import (
    CompatibilityVerdict, HostEnvironment, PackageHeaders, PackageKind,
)

logger = get_logger(__name__)

# How long a "no metadata" verdict is remembered before the repository is asked again.
NEGATIVE_VERDICT_TTL = 300

HOST_NAME = 'WordPress'
RUNTIME_NAME = 'PHP'


def evaluate_compatibility(headers: PackageHeaders, environment: HostEnvironment,
                           kind: PackageKind = PackageKind.PLUGIN) -> CompatibilityVerdict:
    """
    Compare ``headers`` against ``environment``.

    Rules are applied in order and the first match wins: minimum host
    version, minimum runtime version, then "tested up to". A host newer than
    the tested version is still compatible; only the reason carries a warning.
    """
    label = kind.value
    header_map = headers.as_dict()

    if headers.requires_host and compare_versions(environment.host_version, headers.requires_host) < 0:
        return CompatibilityVerdict(
            False,
            f"This {label} requires {HOST_NAME} version {headers.requires_host} or higher.",
            header_map,
        )

    if headers.requires_runtime and compare_versions(environment.runtime_version, headers.requires_runtime) < 0:
        return CompatibilityVerdict(
            False,
            f"This {label} requires {RUNTIME_NAME} version {headers.requires_runtime} or higher.",
            header_map,
        )

    if headers.tested_host and compare_versions(environment.host_version, headers.tested_host) > 0:
        logger.warning(
            f"{label.capitalize()} tested up to {headers.tested_host}, host is {environment.host_version}"
        )
        return CompatibilityVerdict(
            True,
            f"This {label} has not been tested with your {HOST_NAME} version.",
            header_map,
        )

    return CompatibilityVerdict(True, '', header_map)


def require_metadata(headers: PackageHeaders, kind: PackageKind) -> None:
    """
    Ensure the headers declare a release version.

    Plugins must carry ``Stable tag`` in readme.txt; themes must carry
    ``Version`` in style.css.

    Raises:
        NoValidMetadataError: if the required header is missing
    """
    if kind is PackageKind.THEME:
        if not headers.version:
            raise NoValidMetadataError(
                "style.css has no Version header",
                "No valid style.css file found.",
            )
        return
    if not headers.stable_tag:
        raise NoValidMetadataError("readme has no Stable tag header")


def missing_metadata_verdict(error: NoValidMetadataError) -> CompatibilityVerdict:
    """Verdict used when a repository has no readable metadata."""
    return CompatibilityVerdict(False, error.user_message, {})
