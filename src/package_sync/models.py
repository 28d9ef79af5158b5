"""
Data records for the package sync core.

API payloads are converted into these records at the client boundary so the
rest of the code never has to guess which keys a GitHub response contains.
"""

import re
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional

from src.package_sync.errors import InvalidResponseError, ValidationError

REPO_REF_PATTERN = re.compile(r'[A-Za-z0-9_-]+/[A-Za-z0-9_.-]+')


class PackageKind(Enum):
    """Kind of installable package a repository holds."""

    PLUGIN = 'plugin'
    THEME = 'theme'

    @property
    def section(self) -> str:
        """Registry section name for this kind."""
        return 'plugins' if self is PackageKind.PLUGIN else 'themes'

    @classmethod
    def parse(cls, value: Any) -> 'PackageKind':
        """Coerce a string (or kind) into a PackageKind, defaulting to plugin."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.PLUGIN


def validate_repo_format(value: str) -> bool:
    """Return True when ``value`` is an ``owner/repo`` reference."""
    if not isinstance(value, str):
        return False
    return REPO_REF_PATTERN.fullmatch(value) is not None


@dataclass(frozen=True)
class RepoRef:
    """An ``owner/repo`` pair."""

    owner: str
    repo: str

    @property
    def key(self) -> str:
        """Case-insensitive registry key."""
        return f"{self.owner}/{self.repo}".lower()

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @classmethod
    def parse(cls, value: str) -> 'RepoRef':
        """
        Parse ``owner/repo``.

        Raises:
            ValidationError: if the reference is malformed
        """
        value = (value or '').strip()
        if not validate_repo_format(value):
            raise ValidationError(f"Invalid repository reference: {value!r}")
        owner, repo = value.split('/', 1)
        return cls(owner, repo)


def _require_mapping(data: Any, what: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise InvalidResponseError(f"Invalid {what} data from GitHub API: expected object, got {type(data).__name__}")
    return data


@dataclass
class RepoOwner:
    login: str = ''
    avatar_url: str = ''
    html_url: str = ''

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> 'RepoOwner':
        data = data or {}
        return cls(
            login=data.get('login') or '',
            avatar_url=data.get('avatar_url') or '',
            html_url=data.get('html_url') or '',
        )


@dataclass
class RepoDetails:
    """Repository metadata as returned by ``GET /repos/{owner}/{repo}``."""

    name: str
    full_name: str
    owner: RepoOwner
    description: str = ''
    private: bool = False
    archived: bool = False
    html_url: str = ''
    homepage: str = ''
    default_branch: str = 'main'
    stargazers_count: int = 0
    forks_count: int = 0
    open_issues_count: int = 0
    watchers_count: int = 0
    subscribers_count: Optional[int] = None
    language: Optional[str] = None
    topics: List[str] = field(default_factory=list)
    license_name: Optional[str] = None
    has_wiki: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    pushed_at: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any) -> 'RepoDetails':
        data = _require_mapping(data, 'repository')
        if not data.get('name'):
            raise InvalidResponseError("Invalid repository data from GitHub API: missing 'name'")
        license_info = data.get('license') or {}
        return cls(
            name=data['name'],
            full_name=data.get('full_name') or data['name'],
            owner=RepoOwner.from_api(data.get('owner')),
            description=data.get('description') or '',
            private=bool(data.get('private', False)),
            archived=bool(data.get('archived', False)),
            html_url=data.get('html_url') or '',
            homepage=data.get('homepage') or '',
            default_branch=data.get('default_branch') or 'main',
            stargazers_count=int(data.get('stargazers_count') or 0),
            forks_count=int(data.get('forks_count') or 0),
            open_issues_count=int(data.get('open_issues_count') or 0),
            watchers_count=int(data.get('watchers_count') or 0),
            subscribers_count=data.get('subscribers_count'),
            language=data.get('language'),
            topics=list(data.get('topics') or []),
            license_name=license_info.get('name') if isinstance(license_info, dict) else None,
            has_wiki=bool(data.get('has_wiki', False)),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
            pushed_at=data.get('pushed_at'),
        )


@dataclass
class SearchResult:
    items: List[RepoDetails]
    total_count: int
    page: int
    per_page: int

    @property
    def total_pages(self) -> int:
        if self.per_page <= 0:
            return 0
        return -(-self.total_count // self.per_page)


@dataclass
class Release:
    version: str
    title: str
    description: str
    date: str
    url: str

    @classmethod
    def from_api(cls, data: Any) -> 'Release':
        data = _require_mapping(data, 'release')
        tag = data.get('tag_name') or ''
        return cls(
            version=tag.lstrip('v'),
            title=data.get('name') or '',
            description=data.get('body') or '',
            date=data.get('published_at') or '',
            url=data.get('html_url') or '',
        )


@dataclass
class Contributor:
    login: str
    html_url: str = ''
    avatar_url: str = ''


@dataclass
class BranchInfo:
    name: str
    commit_sha: str = ''
    commit_date: Optional[str] = None

    @classmethod
    def from_api(cls, data: Any) -> 'BranchInfo':
        data = _require_mapping(data, 'branch')
        commit = data.get('commit') or {}
        author = (commit.get('commit') or {}).get('author') or {}
        return cls(
            name=data.get('name') or '',
            commit_sha=commit.get('sha') or '',
            commit_date=author.get('date'),
        )


@dataclass
class PackageHeaders:
    """Header fields extracted from a readme.txt or style.css."""

    requires_host: str = ''
    tested_host: str = ''
    requires_runtime: str = ''
    stable_tag: str = ''
    version: str = ''

    @property
    def declared_version(self) -> str:
        """The release version the package advertises."""
        return self.stable_tag or self.version

    def as_dict(self) -> Dict[str, str]:
        """Header map keyed by the lowercase header names."""
        return {
            'requires at least': self.requires_host,
            'tested up to': self.tested_host,
            'requires php': self.requires_runtime,
            'stable tag': self.stable_tag,
            'version': self.declared_version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'PackageHeaders':
        return cls(
            requires_host=data.get('requires at least', ''),
            tested_host=data.get('tested up to', ''),
            requires_runtime=data.get('requires php', ''),
            stable_tag=data.get('stable tag', ''),
            version=data.get('version', ''),
        )


@dataclass(frozen=True)
class HostEnvironment:
    """Versions of the running host application and its runtime."""

    host_version: str
    runtime_version: str


@dataclass
class CompatibilityVerdict:
    is_compatible: bool
    reason: str = ''
    headers: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CompatibilityVerdict':
        return cls(
            is_compatible=bool(data.get('is_compatible')),
            reason=data.get('reason') or '',
            headers=dict(data.get('headers') or {}),
        )


@dataclass(frozen=True)
class AccessCheck:
    """Outcome of probing a private repository with the configured token."""

    accessible: bool
    is_public: bool = False
    warning: str = ''


@dataclass
class TrackedPackage:
    """A GitHub repository registered for installation and update checks."""

    owner: str
    repo: str
    kind: PackageKind = PackageKind.PLUGIN
    private: bool = False
    installed_path: str = ''
    version: str = ''
    requires_host: str = ''
    tested_host: str = ''
    requires_runtime: str = ''
    download_url: str = ''
    last_checked: Optional[float] = None
    last_updated: Optional[float] = None
    name: str = ''
    author: str = ''
    directory: str = ''
    owner_avatar_url: str = ''
    added_at: Optional[float] = None

    @property
    def key(self) -> str:
        return f"{self.owner}/{self.repo}".lower()

    @property
    def is_installed(self) -> bool:
        return bool(self.installed_path)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['kind'] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrackedPackage':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values['kind'] = PackageKind.parse(values.get('kind', PackageKind.PLUGIN))
        return cls(**values)


@dataclass
class UpdateDescriptor:
    """An "update available" entry for the host's update list."""

    id: str
    kind: PackageKind
    slug: str
    installed_path: str
    current_version: str
    new_version: str
    download_url: str
    tested_host: str = ''
    requires_runtime: str = ''
    url: str = ''
    icon_url: str = ''


@dataclass
class InstallResult:
    """Identity of a freshly installed package, read back from its own files."""

    kind: PackageKind
    name: str
    author: str
    version: str
    directory: str
    installed_path: str
