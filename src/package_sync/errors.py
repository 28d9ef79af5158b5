"""
Exception hierarchy for the package sync core.

Every exception carries a ``user_message``: one actionable sentence the host
can show as-is. ``str(exc)`` stays technical and is meant for logs.
"""

from enum import Enum
from typing import Optional


class PackageSyncError(Exception):
    """Base class for all package sync failures."""

    default_user_message = "Something went wrong while talking to GitHub."

    def __init__(self, message: str, user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message


class NetworkError(PackageSyncError):
    """Transport failure or timeout; no HTTP response was received."""

    default_user_message = "Could not connect to GitHub. Check the server's network connection and try again."


class HTTPStatusError(PackageSyncError):
    """GitHub answered with a non-success status code."""

    def __init__(self, status_code: int, url: str = '', message: Optional[str] = None,
                 user_message: Optional[str] = None):
        self.status_code = status_code
        self.url = url
        super().__init__(
            message or f"GitHub API HTTP error: {status_code} for {url}",
            user_message or f"GitHub returned error code {status_code}. Please try again later.",
        )


class NotFoundError(HTTPStatusError):
    """404: the repository or resource does not exist or is not visible."""

    def __init__(self, url: str = '', message: Optional[str] = None, user_message: Optional[str] = None):
        super().__init__(
            404, url, message,
            user_message or "Repository not found, or your access token cannot see it. "
                            "Verify the repository name and that the token has the \"repo\" scope.",
        )


class UnauthorizedError(HTTPStatusError):
    """401: the credential was rejected."""

    def __init__(self, url: str = '', message: Optional[str] = None, user_message: Optional[str] = None):
        super().__init__(
            401, url, message,
            user_message or "Your access token is invalid or expired. Generate a new token and save it in the settings.",
        )


class ForbiddenError(HTTPStatusError):
    """403 without rate-limit exhaustion: the credential lacks scope."""

    def __init__(self, url: str = '', message: Optional[str] = None, user_message: Optional[str] = None):
        super().__init__(
            403, url, message,
            user_message or "Your access token is missing the required scope. Make sure it has the \"repo\" scope.",
        )


class RateLimitedError(HTTPStatusError):
    """403/429 because the API quota is exhausted."""

    def __init__(self, status_code: int = 403, url: str = '', message: Optional[str] = None,
                 user_message: Optional[str] = None):
        super().__init__(
            status_code, url, message,
            user_message or "GitHub API rate limit reached. Add a personal access token to raise the limit, "
                            "or wait an hour and try again.",
        )


class InvalidResponseError(PackageSyncError):
    """A 200 response whose body could not be decoded or had the wrong shape."""

    default_user_message = "GitHub sent a response that could not be read. Please try again later."


class MissingCredentialError(PackageSyncError):
    """An operation needs an access token but none is configured."""

    default_user_message = "An access token is required for private repositories. Add one in the settings."


class NoValidMetadataError(PackageSyncError):
    """The repository has no readme.txt / style.css headers that can be parsed."""

    default_user_message = "No valid readme file found."


class IncompatiblePackageError(PackageSyncError):
    """Install refused because the package's requirements are not met."""

    def __init__(self, key: str, reason: str):
        super().__init__(f"{key} is not compatible: {reason}", reason)
        self.key = key
        self.reason = reason


class ValidationError(PackageSyncError):
    """Malformed user input, e.g. a repository reference not in owner/repo form."""

    default_user_message = 'Invalid repository format. Please use "owner/repo" format (e.g., mycompany/private-plugin).'


class DuplicatePackageError(ValidationError):
    """The repository is already tracked."""

    def __init__(self, key: str):
        super().__init__(
            f"{key} is already tracked",
            f'Repository "{key}" is already in your monitored list.',
        )
        self.key = key


class PackageNotTrackedError(PackageSyncError):
    """Lookup of a repository key that is not in the registry."""

    def __init__(self, key: str):
        super().__init__(f"{key} is not tracked", f'Repository "{key}" not found.')
        self.key = key


class RegistryStorageError(PackageSyncError):
    """The registry document could not be read or written."""

    default_user_message = "Failed to save repository. Please try again."


class InstallStage(Enum):
    """Pipeline stage at which an install attempt failed."""

    DOWNLOAD = 'download'
    VERIFY = 'verify'
    EXTRACT = 'extract'
    RENAME = 'rename'
    HOST_INSTALL = 'host_install'
    REGISTER = 'register'


_INSTALL_USER_MESSAGES = {
    InstallStage.DOWNLOAD: "Could not download the repository zip. Check your network connection and, "
                           "for private repositories, that your access token has the \"repo\" scope.",
    InstallStage.VERIFY: "The downloaded archive is empty or corrupt. Try installing again.",
    InstallStage.EXTRACT: "Could not unpack the downloaded archive. Check that there is enough free disk space.",
    InstallStage.RENAME: "Could not rename the extracted folder. Check file permissions in the install directory.",
    InstallStage.HOST_INSTALL: "The package could not be moved into place. Check file permissions and free disk space.",
    InstallStage.REGISTER: "The package was installed but could not be recorded for update checks.",
}


class InstallError(PackageSyncError):
    """Failure of an install attempt at a named stage."""

    def __init__(self, stage: InstallStage, message: str, user_message: Optional[str] = None,
                 status_code: Optional[int] = None):
        self.stage = stage
        self.status_code = status_code
        super().__init__(message, user_message or _INSTALL_USER_MESSAGES[stage])


def http_error_for_status(status_code: int, url: str = '', body: str = '',
                          rate_limit_remaining: Optional[str] = None) -> HTTPStatusError:
    """
    Build the typed exception for an HTTP status code.

    Args:
        status_code: Response status code
        url: Requested URL (for log messages)
        body: Response body text, inspected for GitHub's rate-limit message
        rate_limit_remaining: Value of the ``x-ratelimit-remaining`` header

    Returns:
        An HTTPStatusError subclass instance
    """
    if status_code == 404:
        return NotFoundError(url)
    if status_code == 401:
        return UnauthorizedError(url)
    if status_code in (403, 429):
        exhausted = rate_limit_remaining is not None and str(rate_limit_remaining).strip() == '0'
        if status_code == 429 or exhausted or 'rate limit' in (body or '').lower():
            return RateLimitedError(status_code, url)
        return ForbiddenError(url)
    return HTTPStatusError(status_code, url)
