"""
Package sync service.

Wires settings, cache, repository client, registry, installer and updater
together and exposes the operations the host's screens and scheduler call.
"""

import logging
import time
from html import escape
from typing import Any, Callable, Dict, List, Optional

import requests

from src.package_sync.cache import TTLCache
from src.package_sync.errors import IncompatiblePackageError, PackageSyncError
from src.package_sync.github_client import RateLimitState, RepositoryClient, build_session
from src.package_sync.headers import strip_header_lines
from src.package_sync.installer import (
    DirectoryHostInstaller, HostInstaller, PackageInstaller, slugify,
)
from src.package_sync.models import (
    CompatibilityVerdict, HostEnvironment, InstallResult, PackageKind, Release, RepoRef,
    SearchResult, TrackedPackage, UpdateDescriptor,
)
from src.package_sync.registry import RegistryBackend, RegistryStore
from src.package_sync.sanitizer import sanitize_html
from src.package_sync.settings import SettingsStore, SyncSettings, save_access_token
from src.package_sync.updater import CheckSummary, UpdateChecker, UpdateInjector, build_package_info

# Topics that only say "this is a plugin" and are not worth showing.
GENERIC_TOPICS = frozenset({'wordpress-plugin', 'wordpress-plugins', 'wordpress', 'plugin', 'wp-plugin', 'wp'})

NO_README_HTML = 'No README available.'


def display_name(repo_name: str) -> str:
    """Human-friendly title for a repository name: ``wp-seo-tools`` -> ``WP SEO Tools``."""
    name = repo_name.replace('-', ' ')
    words = []
    for word in name.split(' '):
        lowered = word.lower()
        if lowered == 'wp':
            words.append('WP')
        elif lowered == 'wordpress':
            words.append('WordPress')
        elif lowered == 'seo':
            words.append('SEO')
        else:
            words.append(word[:1].upper() + word[1:])
    return ' '.join(words)


def filter_topics(topics: List[str]) -> List[str]:
    return [topic for topic in topics if topic.lower() not in GENERIC_TOPICS]


def release_list_html(releases: List[Release]) -> str:
    """Changelog fragment for the details screen, newest release first."""
    items = []
    for release in releases:
        title = f" ({escape(release.title)})" if release.title else ''
        notes = escape(release.description).replace('\n', '<br>\n')
        items.append(
            '<li>'
            f'<h4>{escape(release.version)}{title}</h4>'
            f'<p><strong>Released:</strong> {escape(release.date)}</p>'
            f'<p>{notes}</p>'
            f'<p><a href="{escape(release.url, quote=True)}" target="_blank">View on GitHub</a></p>'
            '</li>'
        )
    return f'<ul class="changelog">{"".join(items)}</ul>'


class PackageSyncService:
    """Host-facing entry point of the package sync core."""

    def __init__(self, settings: SyncSettings, environment: HostEnvironment,
                 cache: Optional[TTLCache] = None,
                 session: Optional[requests.Session] = None,
                 registry_backend: Optional[RegistryBackend] = None,
                 host_installer: Optional[HostInstaller] = None,
                 sanitizer: Callable[[str], str] = sanitize_html,
                 settings_store: Optional[SettingsStore] = None,
                 work_dir: Optional[str] = None,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            settings: Resolved configuration
            environment: Host and runtime versions used for compatibility checks
            cache: Cache shared by all lookups; built from ``settings`` when omitted
            session: HTTP session for API calls and downloads
            registry_backend: Storage for tracked packages; in-memory when omitted
            host_installer: Final move into place; plain directories when omitted
            sanitizer: HTML sanitizer for remote readme content
            settings_store: Where token changes are persisted
            work_dir: Scratch directory for downloads
            clock: Time source, injectable for tests
        """
        self.settings = settings
        self.environment = environment
        self.settings_store = settings_store
        self.sanitizer = sanitizer
        self.logger = logging.getLogger(__name__)
        self._clock = clock

        self.cache = cache if cache is not None else TTLCache(default_ttl=settings.cache_ttl, clock=clock)
        self.session = session if session is not None else build_session()
        self.rate_limit = RateLimitState(settings.rate_limit_cooldown, clock=clock)
        self.client = RepositoryClient(settings, self.cache, self.session, sanitizer, self.rate_limit)
        self.registry = RegistryStore(registry_backend, clock=clock)
        self.host_installer = host_installer or DirectoryHostInstaller(settings.plugins_dir, settings.themes_dir)
        self.installer = PackageInstaller(settings, self.host_installer, self.registry, self.session, work_dir)
        self.checker = UpdateChecker(self.client, self.registry, settings.stale_after, clock=clock)
        self.injector = UpdateInjector(self.registry, self.installer, self.client,
                                       settings.access_token, settings.html_base_url)

    @classmethod
    def from_store(cls, store: SettingsStore, environment: HostEnvironment, **kwargs: Any) -> 'PackageSyncService':
        """Build a service from the host's settings store."""
        return cls(SyncSettings.from_store(store), environment, settings_store=store, **kwargs)

    # ------------------------------------------------------------------
    # Browsing
    # ------------------------------------------------------------------

    def search(self, query: Optional[str] = None, page: int = 1, sort: str = 'stars',
               order: str = 'desc') -> SearchResult:
        return self.client.search(query, page, sort, order)

    def check_compatibility(self, owner: str, repo: str,
                            kind: PackageKind = PackageKind.PLUGIN) -> CompatibilityVerdict:
        return self.client.check_compatibility(owner, repo, PackageKind.parse(kind), self.environment)

    def _last_updated(self, owner: str, repo: str, pushed_at: Optional[str], branch: str) -> Optional[str]:
        try:
            commit_date = self.client.get_branch_details(owner, repo, branch).commit_date
        except PackageSyncError as e:
            self.logger.debug(f"No branch details for {owner}/{repo}@{branch}: {e}")
            commit_date = None
        return commit_date or pushed_at

    def get_package_details(self, owner: str, repo: str,
                            kind: PackageKind = PackageKind.PLUGIN) -> Dict[str, Any]:
        """
        Detail bundle for one repository.

        Only the repository lookup itself is required; readme, image,
        watchers, branch and compatibility problems degrade to defaults.

        Raises:
            PackageSyncError: if the repository details cannot be fetched
        """
        kind = PackageKind.parse(kind)
        details = self.client.get_repo_details(owner, repo)

        try:
            readme_html = strip_header_lines(self.client.get_readme_html(owner, repo))
        except PackageSyncError as e:
            self.logger.info(f"No readme for {owner}/{repo}: {e}")
            readme_html = NO_README_HTML

        og_image = self.client.get_og_image(owner, repo) or details.owner.avatar_url

        try:
            verdict = self.check_compatibility(owner, repo, kind)
        except PackageSyncError as e:
            self.logger.warning(f"Compatibility check failed for {owner}/{repo}: {e}")
            verdict = CompatibilityVerdict(False, e.user_message, {})

        tracked = self.registry.get(f"{owner}/{repo}", kind)

        return {
            'name': details.name,
            'display_name': display_name(details.name),
            'owner': details.owner.login,
            'repo': details.name,
            'kind': kind.value,
            'description': details.description,
            'readme': readme_html,
            'stargazers': details.stargazers_count,
            'forks': details.forks_count,
            'watchers': self.client.get_watchers_count(owner, repo),
            'open_issues': details.open_issues_count,
            'language': self.client.get_primary_language(owner, repo),
            'html_url': details.html_url,
            'homepage': details.homepage,
            'og_image': og_image,
            'owner_avatar_url': details.owner.avatar_url,
            'author': details.owner.login,
            'author_url': details.owner.html_url,
            'updated_at': self._last_updated(owner, repo, details.pushed_at, details.default_branch),
            'topics': filter_topics(details.topics),
            'private': details.private,
            'compatibility': verdict.to_dict(),
            'download_url': self.client.get_download_url(owner, repo),
            'is_installed': bool(tracked and tracked.is_installed),
        }

    def get_changelog_html(self, owner: str, repo: str) -> str:
        releases = self.client.get_changelog(owner, repo)
        if not releases:
            return '<p>No changelog available.</p>'
        return release_list_html(releases)

    def get_package_info(self, slug: str, kind: PackageKind = PackageKind.PLUGIN) -> Optional[Dict[str, Any]]:
        """
        Update-modal bundle for the installed tracked package in folder ``slug``.

        Returns:
            The bundle, or None if ``slug`` is not a tracked package
        """
        kind = PackageKind.parse(kind)
        package = next(
            (p for p in self.registry.list(kind) if p.installed_path.split('/', 1)[0] == slug),
            None,
        )
        if package is None:
            return None

        details = self.client.get_repo_details(package.owner, package.repo)
        try:
            readme_html = self.client.get_readme_html(package.owner, package.repo)
        except PackageSyncError as e:
            self.logger.info(f"No readme for {package.key}: {e}")
            readme_html = NO_README_HTML
        try:
            releases = self.client.get_changelog(package.owner, package.repo)
        except PackageSyncError as e:
            self.logger.info(f"No releases for {package.key}: {e}")
            releases = []

        return build_package_info(
            package, details, readme_html, releases,
            watchers=self.client.get_watchers_count(package.owner, package.repo),
            og_image=self.client.get_og_image(package.owner, package.repo),
            language=self.client.get_primary_language(package.owner, package.repo),
            html_base_url=self.settings.html_base_url,
            sanitizer=self.sanitizer,
        )

    # ------------------------------------------------------------------
    # Installing and tracking
    # ------------------------------------------------------------------

    def install(self, owner: str, repo: str, kind: PackageKind = PackageKind.PLUGIN) -> InstallResult:
        """
        Install ``owner/repo`` from its default branch.

        Raises:
            ValidationError: malformed reference
            IncompatiblePackageError: the package's requirements are not met
            InstallError: the install failed at a named stage
        """
        kind = PackageKind.parse(kind)
        ref = RepoRef.parse(f"{owner}/{repo}")

        verdict = self.check_compatibility(ref.owner, ref.repo, kind)
        if not verdict.is_compatible:
            raise IncompatiblePackageError(ref.key, verdict.reason)

        tracked = self.registry.get(ref.key, kind)
        private = bool(tracked and tracked.private)
        token = self.settings.access_token if private else None

        download_url = self.client.get_download_url(ref.owner, ref.repo)
        result = self.installer.install(download_url, kind, access_token=token, repo_key=ref.key, private=private)

        changes: Dict[str, Any] = {'last_checked': self._clock()}
        try:
            changes['owner_avatar_url'] = self.client.get_repo_details(ref.owner, ref.repo).owner.avatar_url
        except PackageSyncError as e:
            self.logger.debug(f"No owner avatar for {ref.key}: {e}")
        self.registry.update(ref.key, kind, **changes)
        return result

    def _find_installed_path(self, repo: str, kind: PackageKind) -> str:
        slug = slugify(repo)
        for installed_path in self.host_installer.installed_versions(kind):
            if installed_path.split('/', 1)[0] == slug:
                return installed_path
        return ''

    def add_repository(self, repo_ref: str, kind: PackageKind = PackageKind.PLUGIN) -> TrackedPackage:
        """
        Track a repository, typically a private one, for installs and updates.

        Raises:
            ValidationError, DuplicatePackageError: bad or repeated input
            HTTPStatusError, NetworkError: the repository could not be verified
        """
        kind = PackageKind.parse(kind)
        ref = RepoRef.parse(repo_ref)
        package = self.registry.add(
            ref.full_name, kind,
            verify=self.client.verify_repo,
            installed_path=self._find_installed_path(ref.repo, kind),
        )
        if not package.private:
            self.logger.info(f"{package.key} is public; it will still be tracked")
        return package

    def remove_repository(self, repo_key: str, kind: PackageKind = PackageKind.PLUGIN) -> None:
        self.registry.remove(repo_key, PackageKind.parse(kind))

    def list_repositories(self, kind: Optional[PackageKind] = None) -> List[TrackedPackage]:
        return self.registry.list(kind)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def run_update_check(self, force: bool = False) -> CheckSummary:
        """Entry point for the host's scheduler and its "check now" action."""
        return self.checker.check_for_updates(force=force)

    def get_available_updates(self, kind: Optional[PackageKind] = None) -> List[UpdateDescriptor]:
        kinds = [PackageKind.parse(kind)] if kind is not None else list(PackageKind)
        updates: List[UpdateDescriptor] = []
        for k in kinds:
            installed = self.host_installer.installed_versions(k)
            updates.extend(self.injector.collect_updates(installed, k))
        return updates

    def apply_update(self, repo_key: str, kind: PackageKind = PackageKind.PLUGIN) -> InstallResult:
        return self.injector.apply_update(repo_key, PackageKind.parse(kind))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear_cache(self) -> int:
        return self.cache.clear_all()

    def is_rate_limited(self) -> bool:
        return self.client.is_rate_limited()

    def set_access_token(self, token: Optional[str]) -> None:
        """
        Replace the GitHub token.

        Search results are keyed by token so they are not shared across
        tokens; the rate-limit flag is reset because it belonged to the old one.
        """
        token = (token or '').strip() or None
        self.settings.access_token = token
        self.injector.access_token = token
        self.rate_limit.reset()
        if self.settings_store is not None:
            save_access_token(self.settings_store, token)
        self.logger.info(f"GitHub access token {'updated' if token else 'cleared'}")


def rate_limit_notice(service: PackageSyncService) -> Optional[str]:
    """Warning text for the host to show while the rate limit is exhausted."""
    if not service.is_rate_limited():
        return None
    if service.settings.access_token:
        return "GitHub API rate limit reached. Requests will work again within an hour."
    return "GitHub API rate limit reached. Add a personal access token in the settings to raise the limit."


