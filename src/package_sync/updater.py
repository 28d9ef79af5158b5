"""
Update checks and update descriptors.

``UpdateChecker`` refreshes the version headers of tracked repositories,
skipping any checked within the staleness window. ``UpdateInjector``
compares tracked versions against what is installed and produces the
entries the host shows in its update list, and re-runs the installer for an
update so it lands in the existing folder.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from html import escape
from typing import Any, Callable, Dict, List, Optional

from src.common.version_compare import compare_versions
from src.package_sync.errors import InstallError, InstallStage, PackageSyncError
from src.package_sync.github_client import RepositoryClient
from src.package_sync.installer import PackageInstaller
from src.package_sync.models import (
    InstallResult, PackageKind, Release, RepoDetails, TrackedPackage, UpdateDescriptor,
)
from src.package_sync.registry import RegistryStore
from src.package_sync.sanitizer import sanitize_html


@dataclass
class CheckSummary:
    """Keys handled by one run of the update check."""

    checked: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{len(self.checked)} checked, {len(self.skipped)} skipped, {len(self.failed)} failed"


class UpdateChecker:
    """Periodic refresh of tracked package metadata; invoked by the host's scheduler."""

    def __init__(self, client: RepositoryClient, registry: RegistryStore, stale_after: int,
                 clock: Callable[[], float] = time.time):
        self.client = client
        self.registry = registry
        self.stale_after = stale_after
        self.logger = logging.getLogger(__name__)
        self._clock = clock

    def is_stale(self, package: TrackedPackage) -> bool:
        if not package.last_checked:
            return True
        return self._clock() - package.last_checked >= self.stale_after

    def check_package(self, package: TrackedPackage, force: bool = False) -> bool:
        """
        Refresh one package's headers.

        Returns:
            False if the repository has no release version to record

        Raises:
            PackageSyncError: lookup failures
        """
        if force:
            self.client.forget_package_headers(package.owner, package.repo)

        headers = self.client.get_package_headers(package.owner, package.repo, package.kind)
        version = headers.version if package.kind is PackageKind.THEME else headers.stable_tag
        if not version:
            return False

        self.registry.record_check(
            package.key, package.kind,
            version=version,
            requires_host=headers.requires_host,
            tested_host=headers.tested_host,
            requires_runtime=headers.requires_runtime,
            download_url=self.client.get_download_url(package.owner, package.repo),
        )
        return True

    def check_for_updates(self, force: bool = False) -> CheckSummary:
        """
        Refresh every tracked package that is due.

        Packages checked within ``stale_after`` seconds are skipped unless
        ``force`` is set. A failure for one repository is logged and the run
        moves on to the next.
        """
        summary = CheckSummary()
        for package in self.registry.list():
            if not force and not self.is_stale(package):
                summary.skipped.append(package.key)
                continue

            try:
                if self.check_package(package, force=force):
                    summary.checked.append(package.key)
                else:
                    self.logger.warning(f"No release version declared by {package.key}; not updated")
                    summary.skipped.append(package.key)
            except PackageSyncError as e:
                self.logger.warning(f"Update check failed for {package.key}: {e}")
                summary.failed.append(package.key)

        if self.client.is_rate_limited():
            self.logger.warning("GitHub rate limit reached during update check")
        self.logger.info(f"Update check finished: {summary}")
        return summary


def _package_slug(package: TrackedPackage) -> str:
    if package.directory:
        return package.directory
    return package.installed_path.split('/', 1)[0]


class UpdateInjector:
    """Turns registry state into update descriptors and applies updates."""

    def __init__(self, registry: RegistryStore, installer: Optional[PackageInstaller] = None,
                 client: Optional[RepositoryClient] = None, access_token: Optional[str] = None,
                 html_base_url: str = 'https://github.com'):
        self.registry = registry
        self.installer = installer
        self.client = client
        self.access_token = access_token
        self.html_base_url = html_base_url.rstrip('/')
        self.logger = logging.getLogger(__name__)

    def _download_url(self, package: TrackedPackage) -> str:
        if package.download_url:
            return package.download_url
        if self.client is not None:
            return self.client.get_download_url(package.owner, package.repo)
        return ''

    def collect_updates(self, installed_versions: Dict[str, str],
                        kind: Optional[PackageKind] = None) -> List[UpdateDescriptor]:
        """
        Descriptors for tracked packages whose installed copy is older.

        Args:
            installed_versions: Installed version per package, keyed by
                ``owner/repo`` or by installed path (as the host reports it)
            kind: Restrict to one kind

        Returns:
            Descriptors sorted by kind and id; the same input always yields
            the same list
        """
        updates = []
        for package in self.registry.list(kind):
            if not package.version or not package.installed_path:
                continue
            installed = installed_versions.get(package.key)
            if installed is None:
                installed = installed_versions.get(package.installed_path)
            if installed is None:
                continue
            if compare_versions(installed, package.version) >= 0:
                continue

            updates.append(UpdateDescriptor(
                id=package.key,
                kind=package.kind,
                slug=_package_slug(package),
                installed_path=package.installed_path,
                current_version=installed,
                new_version=package.version,
                download_url=self._download_url(package),
                tested_host=package.tested_host,
                requires_runtime=package.requires_runtime,
                url=f"{self.html_base_url}/{package.owner}/{package.repo}",
                icon_url=package.owner_avatar_url,
            ))

        updates.sort(key=lambda u: (u.kind.value, u.id))
        return updates

    def apply_update(self, key: str, kind: PackageKind = PackageKind.PLUGIN) -> InstallResult:
        """
        Install the tracked version of ``key`` over the installed copy.

        The archive is renamed to the existing folder name so the host keeps
        treating it as the same package.

        Raises:
            PackageNotTrackedError: unknown key
            InstallError: the package is not installed, or the install failed
        """
        kind = PackageKind.parse(kind)
        package = self.registry.require(key, kind)
        if self.installer is None:
            raise InstallError(InstallStage.HOST_INSTALL, "No installer configured for updates")
        if not package.is_installed:
            raise InstallError(
                InstallStage.HOST_INSTALL,
                f"{package.key} is not installed",
                f"{package.key} is not installed yet. Install it before updating.",
            )

        download_url = self._download_url(package)
        token = self.access_token if package.private else None
        self.logger.info(f"Updating {kind.value} {package.key} to {package.version or 'latest'}")
        return self.installer.install(
            download_url, kind,
            access_token=token,
            target_folder=_package_slug(package),
            repo_key=package.key,
            private=package.private,
        )


def format_release_date(iso_timestamp: str) -> str:
    """``2024-03-05T10:00:00Z`` -> ``March 5, 2024``; '' when unparseable."""
    if not iso_timestamp:
        return ''
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace('Z', '+00:00'))
    except ValueError:
        return ''
    return f"{dt.strftime('%B')} {dt.day}, {dt.year}"


def changelog_html(releases: List[Release], sanitizer: Callable[[str], str] = sanitize_html) -> str:
    """Changelog fragment: one heading per release followed by its notes."""
    if not releases:
        return '<p>No release information available.</p>'

    parts = []
    for release in releases:
        heading = escape(release.version)
        date = format_release_date(release.date)
        if date:
            heading = f"{heading} - {escape(date)}"
        parts.append(f"<h4>{heading}</h4>")
        if release.description:
            parts.append(f'<div class="release-notes">{sanitizer(release.description)}</div>')
    return ''.join(parts)


def installation_instructions(key: str) -> str:
    return (
        '<h4>Installation</h4>'
        '<ol>'
        f'<li>Search for <strong>{escape(key)}</strong> in the GitHub package browser</li>'
        '<li>Click the "Install" button</li>'
        '<li>Activate the package</li>'
        '</ol>'
        '<h4>Manual Installation</h4>'
        '<ol>'
        '<li>Download the latest release from the GitHub repository</li>'
        '<li>Upload the files to your plugins or themes directory</li>'
        '<li>Activate the package</li>'
        '</ol>'
    )


def github_stats_html(details: RepoDetails, watchers: Optional[int]) -> str:
    html_url = escape(details.html_url, quote=True)
    links = [
        f'<li><a href="{html_url}" target="_blank">View on GitHub</a></li>',
        f'<li><a href="{html_url}/issues" target="_blank">Issue Tracker</a></li>',
        f'<li><a href="{html_url}/releases" target="_blank">Releases</a></li>',
    ]
    if details.has_wiki:
        links.append(f'<li><a href="{html_url}/wiki" target="_blank">Documentation Wiki</a></li>')

    return (
        '<div class="github-info">'
        '<h3>Repository Statistics</h3>'
        '<ul class="github-stats">'
        f'<li>Stars: {details.stargazers_count:,}</li>'
        f'<li>Forks: {details.forks_count:,}</li>'
        f'<li>Watchers: {(watchers or 0):,}</li>'
        f'<li>Open Issues: {details.open_issues_count:,}</li>'
        '</ul>'
        '<h3>Technical Details</h3>'
        '<ul class="github-technical">'
        f'<li>License: {escape(details.license_name or "Unknown")}</li>'
        f'<li>Created: {escape(details.created_at or "")}</li>'
        f'<li>Last Updated: {escape(details.updated_at or "")}</li>'
        '</ul>'
        '<h3>Quick Links</h3>'
        f'<ul class="github-links">{"".join(links)}</ul>'
        '</div>'
    )


def build_package_info(package: TrackedPackage, details: RepoDetails, readme_html: str,
                       releases: List[Release], watchers: Optional[int] = None,
                       og_image: Optional[str] = None, language: Optional[str] = None,
                       html_base_url: str = 'https://github.com',
                       sanitizer: Callable[[str], str] = sanitize_html) -> Dict[str, Any]:
    """
    Information bundle for the host's "view details" modal of a tracked package.
    """
    base = html_base_url.rstrip('/')
    owner_url = f"{base}/{package.owner}"
    avatar = details.owner.avatar_url
    image = og_image or ''

    return {
        'name': package.name or package.repo,
        'slug': _package_slug(package) if package.installed_path else package.repo,
        'version': package.version,
        'author': f'<a href="{escape(owner_url, quote=True)}">{escape(package.author or package.owner)}</a>',
        'author_profile': owner_url,
        'homepage': f"{base}/{package.owner}/{package.repo}",
        'requires': package.requires_host,
        'tested': package.tested_host,
        'requires_php': package.requires_runtime,
        'last_updated': package.last_updated,
        'download_link': package.download_url,
        'short_description': escape(details.description),
        'sections': {
            'description': readme_html,
            'installation': installation_instructions(package.key),
            'github': github_stats_html(details, watchers),
            'changelog': changelog_html(releases, sanitizer),
        },
        'banners': {'low': image, 'high': image},
        'icons': {'default': avatar, '1x': avatar, '2x': avatar},
        'github': {
            'stars': details.stargazers_count,
            'forks': details.forks_count,
            'open_issues': details.open_issues_count,
            'watchers': watchers or 0,
            'language': language or '',
            'last_commit': details.updated_at or '',
            'created_at': details.created_at or '',
            'license': details.license_name or 'Unknown',
        },
    }
