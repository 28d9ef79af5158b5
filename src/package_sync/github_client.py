"""
GitHub repository client.

Maps domain lookups (search, repository details, readme, changelog,
contributors, branches) onto the GitHub REST API. Responses are converted
into the records in ``models`` and cached in a ``TTLCache``. Every call
carries a timeout, every non-200 becomes a typed ``HTTPStatusError``, and
the ``x-ratelimit-remaining`` header drives an advisory ``RateLimitState``.
"""

import base64
import hashlib
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from src.package_sync.cache import TTLCache
from src.package_sync.compatibility import (
    NEGATIVE_VERDICT_TTL, evaluate_compatibility, missing_metadata_verdict, require_metadata,
)
from src.package_sync.errors import (
    ForbiddenError, InvalidResponseError, MissingCredentialError, NetworkError, NoValidMetadataError,
    NotFoundError, PackageSyncError, RateLimitedError, UnauthorizedError, http_error_for_status,
)
from src.package_sync.headers import extract_headers
from src.package_sync.models import (
    AccessCheck, BranchInfo, CompatibilityVerdict, Contributor, HostEnvironment, PackageHeaders,
    PackageKind, Release, RepoDetails, SearchResult,
)
from src.package_sync.sanitizer import sanitize_html
from src.package_sync.settings import SyncSettings, token_fingerprint

ACCEPT_JSON = 'application/vnd.github.v3+json'
ACCEPT_HTML = 'application/vnd.github.v3.html'

README_CANDIDATES = ('readme.txt', 'README.txt')
STYLE_CANDIDATES = ('style.css', 'STYLE.CSS')

MAX_CONTRIBUTORS = 5

OG_IMAGE_RE = re.compile(r'<meta property="og:image" content="([^"]+)"', re.IGNORECASE)
WATCHERS_RE = re.compile(r'<strong>(\d+)</strong>\s+watching')
LANGUAGE_RE = re.compile(r'<span class="color-fg-default text-bold mr-1">([A-Za-z]+)</span>')


class RateLimitState:
    """
    Advisory "API quota exhausted" flag with a cool-down.

    The client never blocks on it; the host reads it to warn the user.
    """

    def __init__(self, cooldown: int = 3600, clock: Callable[[], float] = time.time):
        self.cooldown = cooldown
        self._clock = clock
        self._limited_until: Optional[float] = None

    def is_limited(self) -> bool:
        if self._limited_until is None:
            return False
        if self._clock() >= self._limited_until:
            self._limited_until = None
            return False
        return True

    def set_limited(self) -> None:
        self._limited_until = self._clock() + self.cooldown

    def clear(self) -> None:
        self._limited_until = None

    def reset(self) -> None:
        """Forget all state; used when the credential changes."""
        self.clear()


def build_session(retries: int = 3, backoff_factor: float = 1.0) -> requests.Session:
    """
    Session that retries idempotent requests on gateway errors.

    4xx responses (including rate limiting) are never retried.
    """
    session = requests.Session()
    retry = Retry(
        total=retries,
        backoff_factor=backoff_factor,
        status_forcelist=[502, 503, 504],
        allowed_methods=frozenset(['GET', 'HEAD']),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount('https://', adapter)
    session.mount('http://', adapter)
    return session


def _response_header(response, name: str) -> Optional[str]:
    headers = getattr(response, 'headers', None) or {}
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


class RepositoryClient:
    """
    Read access to GitHub repositories for the package sync core.

    One instance per configured credential. The cache may be shared; keys
    that depend on the credential include its fingerprint.
    """

    def __init__(self, settings: SyncSettings, cache: Optional[TTLCache] = None,
                 session: Optional[requests.Session] = None,
                 sanitizer: Callable[[str], str] = sanitize_html,
                 rate_limit: Optional[RateLimitState] = None):
        """
        Args:
            settings: Resolved configuration (token, timeouts, base URLs)
            cache: Shared cache; a private one with the configured TTL when omitted
            session: HTTP session; one with gateway retries when omitted
            sanitizer: Callable applied to remote HTML before it is cached
            rate_limit: Shared rate-limit state
        """
        self.settings = settings
        self.logger = logging.getLogger(__name__)
        self.cache = cache if cache is not None else TTLCache(default_ttl=settings.cache_ttl)
        self.session = session if session is not None else build_session()
        self.sanitizer = sanitizer
        self.rate_limit = rate_limit if rate_limit is not None else RateLimitState(settings.rate_limit_cooldown)

    # ------------------------------------------------------------------
    # Rate limit
    # ------------------------------------------------------------------

    def is_rate_limited(self) -> bool:
        return self.rate_limit.is_limited()

    def set_rate_limited(self, limited: bool = True) -> None:
        if limited:
            self.rate_limit.set_limited()
        else:
            self.rate_limit.clear()

    def _track_rate_limit(self, response) -> None:
        remaining = _response_header(response, 'x-ratelimit-remaining')
        if remaining is not None and str(remaining).strip() == '0':
            if not self.rate_limit.is_limited():
                self.logger.warning("GitHub API rate limit reached")
            self.rate_limit.set_limited()
        elif response.status_code < 400:
            self.rate_limit.clear()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    @property
    def has_token(self) -> bool:
        return bool(self.settings.access_token)

    def request_headers(self, accept: str = ACCEPT_JSON, authenticated: bool = True) -> Dict[str, str]:
        """Headers for an API request, with ``Authorization`` when a token is configured."""
        headers = {
            'Accept': accept,
            'User-Agent': self.settings.user_agent,
        }
        if authenticated and self.settings.access_token:
            headers['Authorization'] = f'token {self.settings.access_token}'
        return headers

    def _api_url(self, path: str) -> str:
        return f"{self.settings.api_base_url.rstrip('/')}/{path.lstrip('/')}"

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None, accept: str = ACCEPT_JSON,
             timeout: Optional[float] = None, authenticated: bool = True, track: bool = True):
        """
        GET ``url`` and return the response, raising on anything but 200.

        Raises:
            NetworkError: on timeouts and connection failures
            HTTPStatusError: (or a subclass) on a non-200 status
        """
        timeout = timeout if timeout is not None else self.settings.request_timeout
        try:
            response = self.session.get(
                url,
                params=params,
                headers=self.request_headers(accept, authenticated),
                timeout=timeout,
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"Timed out after {timeout}s fetching {url}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e

        if track:
            self._track_rate_limit(response)

        if response.status_code != 200:
            error = http_error_for_status(
                response.status_code, url, response.text or '',
                _response_header(response, 'x-ratelimit-remaining'),
            )
            if track and isinstance(error, RateLimitedError):
                self.rate_limit.set_limited()
                if not self.has_token:
                    self.logger.warning(
                        "GitHub API rate limit exceeded. Add a personal access token to raise the "
                        "limit from 60 to 5000 requests per hour."
                    )
            self.logger.debug(f"GitHub request failed: {response.status_code} for {url}")
            raise error

        return response

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = self._api_url(path)
        response = self._get(url, params=params)
        try:
            return response.json()
        except ValueError as e:
            raise InvalidResponseError(f"Could not decode JSON from {url}: {e}") from e

    @staticmethod
    def _repo_key(owner: str, repo: str) -> str:
        return f"{owner}_{repo}".lower()

    # ------------------------------------------------------------------
    # Search and repository details
    # ------------------------------------------------------------------

    def build_search_query(self, query: Optional[str]) -> str:
        """
        Scope ``query`` to packages.

        The default topic filter is always present; any other ``topic:``
        terms in the query narrow the results further. Archived repositories
        are excluded unless the query already filters on ``archived:``.
        """
        query = (query or '').strip()
        scope = f"topic:{self.settings.default_topic}"
        if scope not in query.split():
            query = f"{query} {scope}".strip()
        if 'archived:' not in query:
            query = f"{query} archived:false"
        return query

    def search(self, query: Optional[str] = None, page: int = 1, sort: str = 'stars',
               order: str = 'desc') -> SearchResult:
        """
        Search repositories.

        Args:
            query: GitHub search query; scoped by ``build_search_query``
            page: 1-based page number
            sort: stars, forks, help-wanted-issues or updated
            order: asc or desc

        Returns:
            One page of results with the total match count
        """
        page = max(1, int(page))
        full_query = self.build_search_query(query)
        per_page = self.settings.results_per_page
        signature = '|'.join([
            full_query, str(page), str(per_page), sort, order, token_fingerprint(self.settings.access_token),
        ])
        cache_key = 'search_' + hashlib.md5(signature.encode('utf-8')).hexdigest()

        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        data = self._get_json('search/repositories', params={
            'q': full_query,
            'page': page,
            'per_page': per_page,
            'sort': sort,
            'order': order,
        })
        if not isinstance(data, dict) or not isinstance(data.get('items'), list):
            raise InvalidResponseError("Invalid search response from GitHub API: missing 'items'")

        result = SearchResult(
            items=[RepoDetails.from_api(item) for item in data['items']],
            total_count=int(data.get('total_count') or 0),
            page=page,
            per_page=per_page,
        )
        self.cache.set(cache_key, result)
        self.logger.debug(f"Search {full_query!r} page {page}: {len(result.items)} of {result.total_count}")
        return result

    def get_repo_details(self, owner: str, repo: str) -> RepoDetails:
        cache_key = f"repo_details_{self._repo_key(owner, repo)}"
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        details = RepoDetails.from_api(self._get_json(f"repos/{owner}/{repo}"))
        self.cache.set(cache_key, details)
        return details

    def verify_repo(self, owner: str, repo: str) -> RepoDetails:
        """
        Probe a repository before it is tracked, bypassing the cache.

        Raises:
            NotFoundError, UnauthorizedError, ForbiddenError, RateLimitedError,
            NetworkError, InvalidResponseError
        """
        details = RepoDetails.from_api(self._get_json(f"repos/{owner}/{repo}"))
        self.cache.set(f"repo_details_{self._repo_key(owner, repo)}", details)
        return details

    def verify_private_repo_access(self, owner: str, repo: str) -> AccessCheck:
        """
        Check that the configured token can read ``owner/repo``.

        A repository that turns out to be public is accessible; the result
        carries a warning instead of failing.

        Raises:
            MissingCredentialError: if no token is configured
            NotFoundError: the repository does not exist or the token cannot see it
            UnauthorizedError: the token was rejected
            ForbiddenError: the token lacks the "repo" scope
        """
        if not self.has_token:
            raise MissingCredentialError(f"Token required to verify access to {owner}/{repo}")

        full_name = f"{owner}/{repo}"
        try:
            details = self.verify_repo(owner, repo)
        except NotFoundError as e:
            raise NotFoundError(
                e.url,
                user_message=f'Repository "{full_name}" not found or you do not have access to it. '
                             f'Please verify the repository name and ensure your access token has the "repo" scope.',
            ) from e
        except UnauthorizedError as e:
            raise UnauthorizedError(
                e.url,
                user_message="Your access token is invalid or does not have permission to access this "
                             "repository. Please check your token and ensure it has the \"repo\" scope.",
            ) from e
        except ForbiddenError as e:
            raise ForbiddenError(
                e.url,
                user_message="Your access token does not have permission to access this repository. "
                             "Please ensure it has the \"repo\" scope.",
            ) from e

        if not details.private:
            return AccessCheck(
                accessible=True,
                is_public=True,
                warning=f'Note: Repository "{full_name}" is public. It will work, but you may want to '
                        f'use the regular search instead.',
            )
        return AccessCheck(accessible=True)

    def get_private_repo_details(self, owner: str, repo: str) -> RepoDetails:
        if not self.has_token:
            raise MissingCredentialError(f"Token required to fetch private repository {owner}/{repo}")
        check = self.verify_private_repo_access(owner, repo)
        if check.warning:
            self.logger.info(check.warning)
        return self.get_repo_details(owner, repo)

    def get_branch_details(self, owner: str, repo: str, branch: str) -> BranchInfo:
        cache_key = f"branch_details_{self._repo_key(owner, repo)}_{branch}"
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        info = BranchInfo.from_api(self._get_json(f"repos/{owner}/{repo}/branches/{branch}"))
        self.cache.set(cache_key, info)
        return info

    def get_contributors(self, owner: str, repo: str) -> List[Contributor]:
        """Top contributors, at most five."""
        cache_key = f"contributors_{self._repo_key(owner, repo)}"
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        data = self._get_json(f"repos/{owner}/{repo}/contributors")
        if not isinstance(data, list):
            raise InvalidResponseError("Invalid contributors data from GitHub API")

        contributors = [
            Contributor(
                login=item.get('login') or '',
                html_url=item.get('html_url') or '',
                avatar_url=item.get('avatar_url') or '',
            )
            for item in data[:MAX_CONTRIBUTORS] if isinstance(item, dict)
        ]
        self.cache.set(cache_key, contributors)
        return contributors

    def get_changelog(self, owner: str, repo: str) -> List[Release]:
        """Releases, newest first, with the leading ``v`` stripped from tags."""
        cache_key = f"changelog_{self._repo_key(owner, repo)}"
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        data = self._get_json(f"repos/{owner}/{repo}/releases")
        if not isinstance(data, list):
            raise InvalidResponseError("Invalid releases data from GitHub API")

        releases = [Release.from_api(item) for item in data]
        self.cache.set(cache_key, releases)
        return releases

    def get_latest_release(self, owner: str, repo: str) -> Optional[Release]:
        """The latest published release, or None when the repository has none."""
        cache_key = f"latest_release_{self._repo_key(owner, repo)}"
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        try:
            release = Release.from_api(self._get_json(f"repos/{owner}/{repo}/releases/latest"))
        except NotFoundError:
            return None
        self.cache.set(cache_key, release)
        return release

    def get_download_url(self, owner: str, repo: str, ref: Optional[str] = None) -> str:
        """Zipball URL for the default branch, or for ``ref`` when given."""
        url = self._api_url(f"repos/{owner}/{repo}/zipball")
        if ref:
            url = f"{url}/{ref}"
        return url

    # ------------------------------------------------------------------
    # Readme and style.css
    # ------------------------------------------------------------------

    def get_readme_html(self, owner: str, repo: str) -> str:
        """Rendered README, passed through the sanitizer before caching."""
        cache_key = f"readme_html_{self._repo_key(owner, repo)}"
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        response = self._get(self._api_url(f"repos/{owner}/{repo}/readme"), accept=ACCEPT_HTML)
        html = response.text or ''
        if not html.strip():
            raise InvalidResponseError(f"Empty README for {owner}/{repo}", "Unable to retrieve README.")

        sanitized = self.sanitizer(html)
        self.cache.set(cache_key, sanitized)
        return sanitized

    def _fetch_contents(self, owner: str, repo: str, path: str) -> Optional[str]:
        """
        Decoded content of a repository file, or None when the API has no
        ``content`` for it. A missing file raises ``NotFoundError``.
        """
        data = self._get_json(f"repos/{owner}/{repo}/{path}")
        if not isinstance(data, dict) or 'content' not in data:
            return None
        try:
            raw = base64.b64decode(data['content'] or '')
        except (ValueError, TypeError) as e:
            raise InvalidResponseError(f"Could not decode {path} of {owner}/{repo}: {e}") from e
        return raw.decode('utf-8', errors='replace')

    def get_readme_content(self, owner: str, repo: str) -> Optional[str]:
        """
        Raw readme text.

        Tries ``readme.txt``, then ``README.txt``, then whatever the readme
        endpoint resolves to. Errors other than 404 are raised.

        Returns:
            Readme text, or None if the repository has no readme
        """
        for filename in README_CANDIDATES:
            try:
                content = self._fetch_contents(owner, repo, f"contents/{filename}")
            except NotFoundError:
                continue
            if content is not None:
                return content

        try:
            return self._fetch_contents(owner, repo, 'readme')
        except NotFoundError:
            return None

    def get_style_content(self, owner: str, repo: str) -> Optional[str]:
        """Theme ``style.css`` text, or None when the repository has none."""
        for filename in STYLE_CANDIDATES:
            try:
                content = self._fetch_contents(owner, repo, f"contents/{filename}")
            except NotFoundError:
                continue
            if content is not None:
                return content
        return None

    def get_package_headers(self, owner: str, repo: str,
                            kind: PackageKind = PackageKind.PLUGIN) -> PackageHeaders:
        """
        Version headers from readme.txt (plugins) or style.css (themes).

        Raises:
            NoValidMetadataError: the repository has no readme / style.css
        """
        kind = PackageKind.parse(kind)
        source = 'style_headers' if kind is PackageKind.THEME else 'readme_headers'
        cache_key = f"{source}_{self._repo_key(owner, repo)}"
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        if kind is PackageKind.THEME:
            content = self.get_style_content(owner, repo)
            if content is None:
                raise NoValidMetadataError(f"{owner}/{repo} has no style.css", "No valid style.css file found.")
        else:
            content = self.get_readme_content(owner, repo)
            if content is None:
                raise NoValidMetadataError(f"{owner}/{repo} has no readme")

        headers = extract_headers(content)
        try:
            require_metadata(headers, kind)
        except NoValidMetadataError:
            # Retried as soon as the negative compatibility verdict expires.
            self.cache.set(cache_key, headers, NEGATIVE_VERDICT_TTL)
        else:
            self.cache.set(cache_key, headers)
        return headers

    def forget_package_headers(self, owner: str, repo: str) -> None:
        """Drop cached readme/style.css headers so the next lookup hits GitHub."""
        for source in ('readme_headers', 'style_headers'):
            self.cache.delete(f"{source}_{self._repo_key(owner, repo)}")

    def get_readme_headers(self, owner: str, repo: str) -> PackageHeaders:
        return self.get_package_headers(owner, repo, PackageKind.PLUGIN)

    def check_compatibility(self, owner: str, repo: str, kind: PackageKind,
                            environment: HostEnvironment) -> CompatibilityVerdict:
        """
        Compatibility verdict for installing ``owner/repo`` on this host.

        A repository without usable metadata yields an incompatible verdict,
        remembered for a few minutes. Network and API failures propagate and
        are not cached.
        """
        kind = PackageKind.parse(kind)
        cache_key = (f"compatibility_{kind.value}_{self._repo_key(owner, repo)}_"
                     f"{environment.host_version}_{environment.runtime_version}")
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        try:
            headers = self.get_package_headers(owner, repo, kind)
            require_metadata(headers, kind)
        except NoValidMetadataError as e:
            self.logger.info(f"No usable metadata in {owner}/{repo}: {e}")
            verdict = missing_metadata_verdict(e)
            self.cache.set(cache_key, verdict, NEGATIVE_VERDICT_TTL)
            return verdict

        verdict = evaluate_compatibility(headers, environment, kind)
        self.cache.set(cache_key, verdict)
        return verdict

    # ------------------------------------------------------------------
    # Scraped fields
    # ------------------------------------------------------------------

    def get_repo_html(self, owner: str, repo: str) -> str:
        """Public repository page HTML; a best-effort source with a short timeout."""
        cache_key = f"repo_html_{self._repo_key(owner, repo)}"
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        url = f"{self.settings.html_base_url.rstrip('/')}/{owner}/{repo}"
        response = self._get(url, accept='text/html', timeout=self.settings.scrape_timeout,
                             authenticated=False, track=False)
        body = response.text or ''
        if not body.strip():
            raise InvalidResponseError(f"Empty repository page for {owner}/{repo}", "Empty repository page.")

        self.cache.set(cache_key, body)
        return body

    def _scrape(self, owner: str, repo: str, pattern: 're.Pattern[str]') -> Optional[str]:
        try:
            html = self.get_repo_html(owner, repo)
        except PackageSyncError as e:
            self.logger.warning(f"Could not scrape repository page for {owner}/{repo}: {e}")
            return None
        match = pattern.search(html)
        return match.group(1) if match else None

    def get_og_image(self, owner: str, repo: str) -> Optional[str]:
        """Social preview image URL, falling back to the owner's avatar."""
        cache_key = f"og_image_{self._repo_key(owner, repo)}"
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        image = self._scrape(owner, repo, OG_IMAGE_RE)
        if not image:
            image = self.get_repo_details(owner, repo).owner.avatar_url or None
        if image:
            self.cache.set(cache_key, image)
        return image

    def get_watchers_count(self, owner: str, repo: str) -> Optional[int]:
        """
        Number of watchers.

        ``watchers_count`` in the API mirrors the star count, so the number
        is scraped from the repository page, with the API's
        ``subscribers_count`` as a fallback.
        """
        cache_key = f"watchers_count_{self._repo_key(owner, repo)}"
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        scraped = self._scrape(owner, repo, WATCHERS_RE)
        if scraped is not None:
            count = int(scraped)
        else:
            count = self.get_repo_details(owner, repo).subscribers_count
        if count is not None:
            self.cache.set(cache_key, count)
        return count

    def get_primary_language(self, owner: str, repo: str) -> Optional[str]:
        cache_key = f"primary_language_{self._repo_key(owner, repo)}"
        cached, found = self.cache.get(cache_key)
        if found:
            return cached

        language = self._scrape(owner, repo, LANGUAGE_RE)
        if not language:
            language = self.get_repo_details(owner, repo).language
        if language:
            self.cache.set(cache_key, language)
        return language
