"""
Package installer.

Downloads a GitHub zipball, verifies and extracts it, renames GitHub's
``{owner}-{repo}-{sha}`` folder to the package slug, hands the folder to the
host installer and records the result in the registry. Every attempt walks
the states ``resolved -> downloaded -> verified -> extracted -> renamed ->
registered`` and ends in ``succeeded`` or ``failed``; a failure carries the
stage it happened in.
"""

import logging
import os
import re
import shutil
import tempfile
import threading
import time
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import requests

from src.common.file_utils import safe_remove_directory, safe_remove_file
from src.package_sync.errors import InstallError, InstallStage, PackageSyncError
from src.package_sync.headers import (
    PLUGIN_FILE_HEADER_LABELS, THEME_FILE_HEADER_LABELS, parse_file_headers,
)
from src.package_sync.models import InstallResult, PackageKind, RepoRef
from src.package_sync.registry import RegistryStore
from src.package_sync.settings import SyncSettings

ZIPBALL_PATH_RE = re.compile(r'/repos/([^/]+)/([^/]+)/zipball')

DOWNLOAD_ACCEPT = 'application/vnd.github+json'
CHUNK_SIZE = 8192


def slugify(value: str) -> str:
    """Lowercase, dash-separated folder name: ``My.Plugin Name`` -> ``my-plugin-name``."""
    value = (value or '').strip().lower().replace('.', '-')
    value = re.sub(r'[^a-z0-9 _-]', '', value)
    value = re.sub(r'\s+', '-', value)
    value = re.sub(r'-+', '-', value)
    return value.strip('-')


def repo_ref_from_download_url(download_url: str) -> Optional[RepoRef]:
    """``owner/repo`` of a ``/repos/{owner}/{repo}/zipball[/{ref}]`` URL, or None."""
    path = urlparse(download_url or '').path
    match = ZIPBALL_PATH_RE.search(path or '')
    if not match:
        return None
    return RepoRef(match.group(1), match.group(2))


def slug_from_download_url(download_url: str) -> str:
    """Canonical folder name for the repository a zipball URL points at, or ''."""
    ref = repo_ref_from_download_url(download_url)
    return slugify(ref.repo) if ref else ''


def _read_head(path: Path, size: int = 8192) -> str:
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        return f.read(size)


def read_package_identity(path: Path, kind: PackageKind) -> Optional[InstallResult]:
    """
    Read name, author and version from a package folder's own files.

    Plugins are identified by the first top-level ``*.php`` file with a
    ``Plugin Name`` header; the installed path is ``folder/file.php``. Themes
    are identified by ``style.css``; the installed path is the folder name.

    Returns:
        The identity, or None if the folder holds no valid package
    """
    path = Path(path)
    if not path.is_dir():
        return None

    if kind is PackageKind.THEME:
        style = path / 'style.css'
        if not style.is_file():
            return None
        fields = parse_file_headers(_read_head(style), THEME_FILE_HEADER_LABELS)
        if not fields['name']:
            return None
        return InstallResult(
            kind=kind,
            name=fields['name'],
            author=fields['author'],
            version=fields['version'],
            directory=path.name,
            installed_path=path.name,
        )

    for candidate in sorted(path.glob('*.php')):
        if not candidate.is_file():
            continue
        fields = parse_file_headers(_read_head(candidate), PLUGIN_FILE_HEADER_LABELS)
        if fields['name']:
            return InstallResult(
                kind=kind,
                name=fields['name'],
                author=fields['author'],
                version=fields['version'],
                directory=path.name,
                installed_path=f"{path.name}/{candidate.name}",
            )
    return None


class HostInstaller(ABC):
    """Moves a prepared package folder into the host's install location."""

    @abstractmethod
    def install(self, source_dir: Path, kind: PackageKind, overwrite: bool = True) -> Path:
        """Install ``source_dir`` and return where it ended up."""

    def installed_versions(self, kind: PackageKind) -> Dict[str, str]:
        """
        Installed path -> version for every installed package of ``kind``.

        Hosts that cannot enumerate their installs report none.
        """
        return {}


class DirectoryHostInstaller(HostInstaller):
    """Host installer for plain ``plugins/`` and ``themes/`` directories."""

    def __init__(self, plugins_dir: str, themes_dir: str):
        self.plugins_dir = Path(plugins_dir)
        self.themes_dir = Path(themes_dir)
        self.logger = logging.getLogger(__name__)

    def root_for(self, kind: PackageKind) -> Path:
        return self.themes_dir if kind is PackageKind.THEME else self.plugins_dir

    def install(self, source_dir: Path, kind: PackageKind, overwrite: bool = True) -> Path:
        """
        Move ``source_dir`` into the kind's directory under the same name.

        An existing copy is replaced only when ``overwrite`` is set; it is
        moved aside first and restored if the move fails.

        Raises:
            FileExistsError: the folder exists and ``overwrite`` is False
            OSError: the move failed
        """
        root = self.root_for(kind)
        root.mkdir(parents=True, exist_ok=True)
        destination = root / source_dir.name

        backup = None
        if destination.exists():
            if not overwrite:
                raise FileExistsError(f"{destination} already exists")
            backup = root / f".{source_dir.name}.old"
            if backup.exists():
                safe_remove_directory(backup)
            os.rename(destination, backup)

        try:
            shutil.move(str(source_dir), str(destination))
        except OSError:
            if backup is not None:
                if destination.exists():
                    safe_remove_directory(destination)
                os.rename(backup, destination)
            raise

        if backup is not None and not safe_remove_directory(backup):
            self.logger.warning(f"Could not remove previous copy at {backup}")

        self.logger.info(f"Installed {kind.value} into {destination}")
        return destination

    def installed_versions(self, kind: PackageKind) -> Dict[str, str]:
        root = self.root_for(kind)
        versions: Dict[str, str] = {}
        if not root.is_dir():
            return versions
        for entry in sorted(root.iterdir()):
            if entry.name.startswith('.'):
                continue
            identity = read_package_identity(entry, kind)
            if identity is not None:
                versions[identity.installed_path] = identity.version
        return versions


class InstallState(Enum):
    RESOLVED = 'resolved'
    DOWNLOADED = 'downloaded'
    VERIFIED = 'verified'
    EXTRACTED = 'extracted'
    RENAMED = 'renamed'
    REGISTERED = 'registered'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


@dataclass
class InstallAttempt:
    """State of one install attempt, kept for logging and inspection."""

    download_url: str
    kind: PackageKind
    target_folder: str
    state: InstallState = InstallState.RESOLVED
    history: List[InstallState] = field(default_factory=lambda: [InstallState.RESOLVED])
    error: Optional[InstallError] = None
    result: Optional[InstallResult] = None

    def advance(self, state: InstallState) -> None:
        self.state = state
        self.history.append(state)

    def fail(self, error: InstallError) -> None:
        self.error = error
        self.advance(InstallState.FAILED)


class PackageInstaller:
    """
    Installs packages from GitHub zipballs.

    Attempts for the same folder name are serialized; attempts for
    different packages may run concurrently.
    """

    def __init__(self, settings: SyncSettings, host_installer: Optional[HostInstaller] = None,
                 registry: Optional[RegistryStore] = None, session: Optional[requests.Session] = None,
                 work_dir: Optional[str] = None):
        """
        Args:
            settings: Resolved configuration (user agent, download timeout, install dirs)
            host_installer: Final move into place; a DirectoryHostInstaller by default
            registry: Registry to record successful installs in
            session: HTTP session used for downloads
            work_dir: Scratch directory for archives and extraction
        """
        self.settings = settings
        self.logger = logging.getLogger(__name__)
        self.host_installer = host_installer or DirectoryHostInstaller(settings.plugins_dir, settings.themes_dir)
        self.registry = registry
        self.session = session if session is not None else requests.Session()
        self.work_dir = Path(work_dir) if work_dir else Path(tempfile.gettempdir()) / 'package-sync'
        self.last_attempt: Optional[InstallAttempt] = None
        self._locks_guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(name, threading.Lock())

    def _scratch_paths(self, name: str) -> Tuple[Path, Path]:
        return self.work_dir / f"{name}.zip.partial", self.work_dir / f"{name}.extract"

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _download(self, url: str, destination: Path, access_token: Optional[str]) -> None:
        headers = {
            'Accept': DOWNLOAD_ACCEPT,
            'User-Agent': self.settings.user_agent,
        }
        if access_token:
            headers['Authorization'] = f'token {access_token}'

        self.logger.info(f"Downloading {url}")
        try:
            response = self.session.get(url, headers=headers, stream=True, allow_redirects=True,
                                        timeout=self.settings.download_timeout)
        except requests.exceptions.RequestException as e:
            raise InstallError(InstallStage.DOWNLOAD, f"Download of {url} failed: {e}") from e

        try:
            if response.status_code != 200:
                code = response.status_code
                raise InstallError(
                    InstallStage.DOWNLOAD,
                    f"Download of {url} returned HTTP {code}",
                    f"Could not download the repository zip (HTTP {code}). Please verify your access token "
                    f"has the \"repo\" scope and that you can access this repository.",
                    status_code=code,
                )
            with open(destination, 'wb') as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
        except requests.exceptions.RequestException as e:
            raise InstallError(InstallStage.DOWNLOAD, f"Download of {url} was interrupted: {e}") from e
        except OSError as e:
            raise InstallError(
                InstallStage.DOWNLOAD, f"Could not write {destination}: {e}",
                "Could not save the downloaded archive. Check that there is enough free disk space.",
            ) from e
        finally:
            response.close()

    def _verify(self, archive: Path) -> None:
        try:
            with zipfile.ZipFile(archive, 'r') as zip_ref:
                if not zip_ref.namelist():
                    raise InstallError(InstallStage.VERIFY, f"Archive {archive} is empty")
                bad_member = zip_ref.testzip()
        except zipfile.BadZipFile as e:
            raise InstallError(InstallStage.VERIFY, f"Archive {archive} is not a valid zip file: {e}") from e
        if bad_member is not None:
            raise InstallError(InstallStage.VERIFY, f"Archive member {bad_member!r} is corrupt")

    def _extract(self, archive: Path, extract_dir: Path) -> Path:
        """Extract ``archive`` and return the package's root folder inside ``extract_dir``."""
        unpack_dir = extract_dir / '_archive'
        try:
            unpack_dir.mkdir(parents=True)
            with zipfile.ZipFile(archive, 'r') as zip_ref:
                unpack_resolved = unpack_dir.resolve()
                for member in zip_ref.namelist():
                    member_dest = (unpack_dir / member).resolve()
                    if not member_dest.is_relative_to(unpack_resolved):
                        raise InstallError(
                            InstallStage.EXTRACT,
                            f"Zip-slip detected: member {member!r} resolves outside the extraction directory",
                            "The archive contains unsafe paths and was not installed.",
                        )
                zip_ref.extractall(unpack_dir)
        except (OSError, zipfile.BadZipFile) as e:
            raise InstallError(InstallStage.EXTRACT, f"Could not extract {archive}: {e}") from e

        entries = [p for p in unpack_dir.iterdir() if p.name != '__MACOSX']
        if len(entries) == 1 and entries[0].is_dir():
            return entries[0]
        return unpack_dir

    def _rename(self, source: Path, target_folder: str) -> Path:
        if not target_folder or source.name == target_folder:
            return source
        destination = source.parent / target_folder
        try:
            if destination.exists():
                shutil.rmtree(destination)
            os.rename(source, destination)
        except OSError as e:
            raise InstallError(
                InstallStage.RENAME,
                f"Could not rename {source} to {destination}: {e}",
                f'Could not rename extracted folder from "{source.name}" to "{target_folder}".',
            ) from e
        self.logger.debug(f"Renamed extracted folder {source.name} -> {target_folder}")
        return destination

    def _host_install(self, source: Path, kind: PackageKind) -> InstallResult:
        if read_package_identity(source, kind) is None:
            raise InstallError(
                InstallStage.HOST_INSTALL,
                f"No {kind.value} header found in {source.name}",
                f"The archive does not contain a valid {kind.value}.",
            )
        try:
            final_dir = self.host_installer.install(source, kind, overwrite=True)
        except InstallError:
            raise
        except (OSError, PackageSyncError) as e:
            raise InstallError(InstallStage.HOST_INSTALL, f"Host install of {source.name} failed: {e}") from e

        identity = read_package_identity(Path(final_dir), kind)
        if identity is None:
            raise InstallError(
                InstallStage.HOST_INSTALL,
                f"Installed folder {final_dir} has no readable {kind.value} header",
            )
        return identity

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def install(self, download_url: str, kind: PackageKind = PackageKind.PLUGIN,
                access_token: Optional[str] = None, target_folder: Optional[str] = None,
                repo_key: Optional[str] = None, private: Optional[bool] = None) -> InstallResult:
        """
        Install a package from a zipball URL.

        Args:
            download_url: Resolved archive URL
            kind: Plugin or theme
            access_token: Sent as ``Authorization`` when given
            target_folder: Folder name to install into; defaults to the slug
                derived from the URL. Updates pass the existing folder name.
            repo_key: Registry key to record the install under; derived from
                the URL when omitted
            private: Private flag for a registry record created by this install

        Returns:
            Identity of the installed package, read from its own files

        Raises:
            InstallError: with ``stage`` set to where the attempt failed
        """
        kind = PackageKind.parse(kind)
        folder = target_folder or slug_from_download_url(download_url)
        attempt = InstallAttempt(download_url=download_url, kind=kind, target_folder=folder)
        self.last_attempt = attempt

        scratch_name = folder or f"package-{int(time.time())}"
        archive, extract_dir = self._scratch_paths(scratch_name)

        with self._lock_for(scratch_name):
            try:
                self.work_dir.mkdir(parents=True, exist_ok=True)
                # Leftovers from an attempt that was killed mid-way.
                safe_remove_file(archive)
                safe_remove_directory(extract_dir)

                self._download(download_url, archive, access_token)
                attempt.advance(InstallState.DOWNLOADED)

                self._verify(archive)
                attempt.advance(InstallState.VERIFIED)

                source = self._extract(archive, extract_dir)
                attempt.advance(InstallState.EXTRACTED)

                source = self._rename(source, folder)
                attempt.advance(InstallState.RENAMED)

                result = self._host_install(source, kind)

                key = repo_key
                if not key:
                    ref = repo_ref_from_download_url(download_url)
                    key = ref.key if ref else None
                if self.registry is not None and key:
                    try:
                        self.registry.record_install(
                            key, kind,
                            installed_path=result.installed_path,
                            version=result.version,
                            name=result.name,
                            author=result.author,
                            directory=result.directory,
                            download_url=download_url,
                            private=private,
                        )
                    except PackageSyncError as e:
                        raise InstallError(InstallStage.REGISTER, f"Could not record install of {key}: {e}") from e
                attempt.advance(InstallState.REGISTERED)

                attempt.result = result
                attempt.advance(InstallState.SUCCEEDED)
                self.logger.info(
                    f"Installed {kind.value} {result.name} {result.version} at {result.installed_path}"
                )
                return result
            except InstallError as e:
                attempt.fail(e)
                self.logger.error(f"Install of {download_url} failed at {e.stage.value}: {e}", exc_info=True)
                raise
            finally:
                safe_remove_file(archive)
                safe_remove_directory(extract_dir)
