"""
Registry of tracked GitHub repositories.

The registry is one document with a section per package kind::

    {"plugins": {"owner/repo": {...}}, "themes": {...}}

Storage is delegated to a ``RegistryBackend``. Writers (the settings screen,
the installer and the periodic update check) only ever merge the fields they
own into a freshly loaded record, under locks the backend shares with every
store over the same document, so concurrent writers never drop each
other's fields.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from jsonschema import Draft7Validator

from src.common.file_utils import atomic_write_text
from src.package_sync.errors import (
    DuplicatePackageError, PackageNotTrackedError, RegistryStorageError, ValidationError,
)
from src.package_sync.models import PackageKind, RepoDetails, RepoRef, TrackedPackage

_OPTIONAL_STRING = {'type': 'string'}
_OPTIONAL_TIME = {'type': ['number', 'null']}

REGISTRY_SCHEMA: Dict[str, Any] = {
    '$schema': 'http://json-schema.org/draft-07/schema#',
    'type': 'object',
    'definitions': {
        'package': {
            'type': 'object',
            'required': ['owner', 'repo'],
            'properties': {
                'owner': {'type': 'string', 'minLength': 1},
                'repo': {'type': 'string', 'minLength': 1},
                'kind': {'enum': [k.value for k in PackageKind]},
                'private': {'type': 'boolean'},
                'installed_path': _OPTIONAL_STRING,
                'version': _OPTIONAL_STRING,
                'requires_host': _OPTIONAL_STRING,
                'tested_host': _OPTIONAL_STRING,
                'requires_runtime': _OPTIONAL_STRING,
                'download_url': _OPTIONAL_STRING,
                'last_checked': _OPTIONAL_TIME,
                'last_updated': _OPTIONAL_TIME,
                'name': _OPTIONAL_STRING,
                'author': _OPTIONAL_STRING,
                'directory': _OPTIONAL_STRING,
                'owner_avatar_url': _OPTIONAL_STRING,
                'added_at': _OPTIONAL_TIME,
            },
        },
        'section': {
            'type': 'object',
            'additionalProperties': {'$ref': '#/definitions/package'},
        },
    },
    'properties': {
        'plugins': {'$ref': '#/definitions/section'},
        'themes': {'$ref': '#/definitions/section'},
    },
}

_validator = Draft7Validator(REGISTRY_SCHEMA)


def validate_document(document: Any) -> List[str]:
    """
    Validate a registry document.

    Returns:
        Error messages, one per problem, prefixed with the JSON path
    """
    errors = []
    for error in _validator.iter_errors(document):
        path = '.'.join(str(p) for p in error.path)
        errors.append(f"{path}: {error.message}" if path else error.message)
    return errors


def _empty_document() -> Dict[str, Dict[str, Any]]:
    return {kind.section: {} for kind in PackageKind}


class RegistryLocks:
    """Locks shared by every store writing one registry document."""

    def __init__(self):
        self.document = threading.RLock()
        self._guard = threading.Lock()
        self._keys: Dict[str, threading.RLock] = {}

    def for_key(self, key: str) -> threading.RLock:
        with self._guard:
            return self._keys.setdefault(key.lower(), threading.RLock())


_file_locks_guard = threading.Lock()
_file_locks: Dict[str, RegistryLocks] = {}


def locks_for_path(path: Path) -> RegistryLocks:
    """The shared locks for the registry file at ``path``."""
    resolved = str(Path(path).resolve())
    with _file_locks_guard:
        return _file_locks.setdefault(resolved, RegistryLocks())


class RegistryBackend(ABC):
    """
    Persistence for the registry document; supplied by the host.

    Stores serialize their read-modify-writes on ``locks``. Backends that
    share one underlying document must share one ``RegistryLocks``.
    """

    def __init__(self):
        self.locks = RegistryLocks()

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        """Return a copy of the stored document."""

    @abstractmethod
    def save(self, document: Dict[str, Any]) -> None:
        """Replace the stored document."""


class MemoryRegistryBackend(RegistryBackend):

    def __init__(self, document: Optional[Dict[str, Any]] = None):
        super().__init__()
        self._document = json.loads(json.dumps(document)) if document else _empty_document()

    def load(self) -> Dict[str, Any]:
        return json.loads(json.dumps(self._document))

    def save(self, document: Dict[str, Any]) -> None:
        self._document = json.loads(json.dumps(document))


class JsonFileRegistryBackend(RegistryBackend):
    """
    Registry stored as a JSON file.

    Writes go through a temp file and ``os.replace`` so a crash never leaves
    a half-written registry. The document is schema-checked on load and save.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self.locks = locks_for_path(self.path)
        self.logger = logging.getLogger(__name__)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return _empty_document()
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except json.JSONDecodeError as e:
            raise RegistryStorageError(f"Registry file {self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise RegistryStorageError(f"Could not read registry file {self.path}: {e}") from e

        errors = validate_document(document)
        if errors:
            raise RegistryStorageError(f"Registry file {self.path} failed validation: {'; '.join(errors)}")
        return document

    def save(self, document: Dict[str, Any]) -> None:
        errors = validate_document(document)
        if errors:
            raise RegistryStorageError(f"Refusing to save invalid registry: {'; '.join(errors)}")
        try:
            atomic_write_text(self.path, json.dumps(document, indent=2, sort_keys=True))
        except OSError as e:
            raise RegistryStorageError(f"Could not write registry file {self.path}: {e}") from e


class RegistryStore:
    """Tracked packages keyed by lowercase ``owner/repo``, one section per kind."""

    def __init__(self, backend: Optional[RegistryBackend] = None, clock: Callable[[], float] = time.time):
        self.backend = backend if backend is not None else MemoryRegistryBackend()
        self.logger = logging.getLogger(__name__)
        self._clock = clock
        self._document_lock = self.backend.locks.document

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Serialize a read-modify-write sequence on one registry key."""
        with self.backend.locks.for_key(key):
            yield

    def _load(self) -> Dict[str, Any]:
        document = self.backend.load() or {}
        for kind in PackageKind:
            document.setdefault(kind.section, {})
        return document

    def _section(self, document: Dict[str, Any], kind: PackageKind) -> Dict[str, Any]:
        return document[kind.section]

    def _record(self, key: str, data: Dict[str, Any], kind: PackageKind) -> TrackedPackage:
        data = dict(data)
        data['kind'] = kind.value
        if not data.get('owner') or not data.get('repo'):
            data['owner'], data['repo'] = key.split('/', 1)
        return TrackedPackage.from_dict(data)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str, kind: PackageKind = PackageKind.PLUGIN) -> Optional[TrackedPackage]:
        kind = PackageKind.parse(kind)
        key = key.lower()
        with self._document_lock:
            data = self._section(self._load(), kind).get(key)
        return self._record(key, data, kind) if data is not None else None

    def require(self, key: str, kind: PackageKind = PackageKind.PLUGIN) -> TrackedPackage:
        package = self.get(key, kind)
        if package is None:
            raise PackageNotTrackedError(key.lower())
        return package

    def contains(self, key: str, kind: PackageKind = PackageKind.PLUGIN) -> bool:
        return self.get(key, kind) is not None

    def list(self, kind: Optional[PackageKind] = None) -> List[TrackedPackage]:
        """All tracked packages, optionally restricted to one kind, sorted by key."""
        kinds = [PackageKind.parse(kind)] if kind is not None else list(PackageKind)
        with self._document_lock:
            document = self._load()
        packages = []
        for k in kinds:
            for key, data in sorted(self._section(document, k).items()):
                packages.append(self._record(key, data, k))
        return packages

    def find_by_installed_path(self, installed_path: str,
                               kind: PackageKind = PackageKind.PLUGIN) -> Optional[TrackedPackage]:
        """The tracked package installed at ``installed_path``, if any."""
        if not installed_path:
            return None
        for package in self.list(kind):
            if package.installed_path == installed_path:
                return package
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def add(self, repo_ref: str, kind: PackageKind = PackageKind.PLUGIN,
            verify: Optional[Callable[[str, str], RepoDetails]] = None,
            private: bool = False, installed_path: str = '') -> TrackedPackage:
        """
        Start tracking ``owner/repo``.

        Args:
            repo_ref: Repository reference in ``owner/repo`` form
            kind: Plugin or theme
            verify: Reachability probe; its result supplies ``private`` and ``name``
            private: Private flag used when no probe is given
            installed_path: Identifier of an already installed copy, if the host has one

        Raises:
            ValidationError: malformed reference
            DuplicatePackageError: already tracked
            PackageSyncError: whatever ``verify`` raises; nothing is stored
        """
        kind = PackageKind.parse(kind)
        ref = RepoRef.parse(repo_ref)
        key = ref.key
        owner, repo = key.split('/', 1)

        with self.locked(key):
            if self.contains(key, kind):
                raise DuplicatePackageError(key)

            details = verify(owner, repo) if verify is not None else None

            now = self._clock()
            package = TrackedPackage(
                owner=owner,
                repo=repo,
                kind=kind,
                private=details.private if details is not None else bool(private),
                installed_path=installed_path or '',
                name=details.name if details is not None else repo,
                owner_avatar_url=details.owner.avatar_url if details is not None else '',
                added_at=now,
                last_checked=None,
            )
            with self._document_lock:
                document = self._load()
                section = self._section(document, kind)
                if key in section:
                    raise DuplicatePackageError(key)
                section[key] = package.to_dict()
                self.backend.save(document)

        self.logger.info(f"Tracking {kind.value} {key} (private={package.private})")
        return package

    def remove(self, key: str, kind: PackageKind = PackageKind.PLUGIN) -> None:
        """Stop tracking ``key``. Installed files are left alone."""
        kind = PackageKind.parse(kind)
        key = key.lower()
        with self.locked(key), self._document_lock:
            document = self._load()
            section = self._section(document, kind)
            if key not in section:
                raise PackageNotTrackedError(key)
            del section[key]
            self.backend.save(document)
        self.logger.info(f"Stopped tracking {kind.value} {key}")

    def update(self, key: str, kind: PackageKind = PackageKind.PLUGIN, **changes: Any) -> TrackedPackage:
        """
        Merge ``changes`` into the stored record.

        Fields not named in ``changes`` keep their stored values.

        Raises:
            PackageNotTrackedError: if ``key`` is not tracked
            ValidationError: if a change names an unknown field
        """
        kind = PackageKind.parse(kind)
        key = key.lower()
        known = set(TrackedPackage.__dataclass_fields__) - {'owner', 'repo', 'kind'}
        unknown = set(changes) - known
        if unknown:
            raise ValidationError(f"Unknown registry fields: {', '.join(sorted(unknown))}")

        with self.locked(key), self._document_lock:
            document = self._load()
            section = self._section(document, kind)
            if key not in section:
                raise PackageNotTrackedError(key)
            merged = dict(section[key])
            merged.update(changes)
            package = self._record(key, merged, kind)
            section[key] = package.to_dict()
            self.backend.save(document)
        return package

    def record_install(self, key: str, kind: PackageKind, installed_path: str, version: str = '',
                       name: str = '', author: str = '', directory: str = '',
                       download_url: str = '', private: Optional[bool] = None) -> TrackedPackage:
        """
        Record a confirmed install, creating the record if the package was
        installed without being tracked first.

        The stored ``private`` flag wins over ``private`` unless the record is new.
        """
        kind = PackageKind.parse(kind)
        key = key.lower()
        changes: Dict[str, Any] = {
            'installed_path': installed_path,
            'name': name,
            'author': author,
            'directory': directory,
            'last_updated': self._clock(),
        }
        if version:
            changes['version'] = version
        if download_url:
            changes['download_url'] = download_url
        changes = {k: v for k, v in changes.items() if v not in ('', None)}

        with self.locked(key):
            if not self.contains(key, kind):
                owner, repo = RepoRef.parse(key).key.split('/', 1)
                package = TrackedPackage(owner=owner, repo=repo, kind=kind, private=bool(private),
                                         added_at=self._clock())
                with self._document_lock:
                    document = self._load()
                    section = self._section(document, kind)
                    if key not in section:
                        section[key] = package.to_dict()
                        self.backend.save(document)
            package = self.update(key, kind, **changes)

        self.logger.info(f"Recorded install of {kind.value} {key} at {installed_path}")
        return package

    def record_check(self, key: str, kind: PackageKind, version: str, requires_host: str = '',
                     tested_host: str = '', requires_runtime: str = '',
                     download_url: str = '') -> TrackedPackage:
        """Store the result of an update check for ``key``."""
        return self.update(
            key, kind,
            version=version,
            requires_host=requires_host,
            tested_host=tested_host,
            requires_runtime=requires_runtime,
            download_url=download_url,
            last_checked=self._clock(),
        )
