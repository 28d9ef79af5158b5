"""
Pytest fixtures for the package sync tests.

HTTP is faked at the ``requests.Session`` boundary: ``FakeGitHub`` routes
``session.get(url, ...)`` calls to canned responses and counts them.
"""

import base64
import io
import json
import sys
import zipfile
from pathlib import Path
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from src.package_sync.cache import TTLCache  # noqa: E402
from src.package_sync.models import HostEnvironment  # noqa: E402
from src.package_sync.settings import SyncSettings  # noqa: E402

API = 'https://api.github.com'


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_response(status_code: int = 200, json_data: Any = None, text: Optional[str] = None,
                  headers: Optional[Dict[str, str]] = None, content: bytes = b'') -> MagicMock:
    """A MagicMock shaped like ``requests.Response``."""
    response = MagicMock()
    response.status_code = status_code
    response.headers = headers if headers is not None else {'x-ratelimit-remaining': '59'}
    if json_data is not None:
        response.json.return_value = json_data
        response.text = json.dumps(json_data)
    else:
        response.json.side_effect = ValueError('No JSON object could be decoded')
        response.text = text if text is not None else ''
    response.iter_content.return_value = [content] if content else []
    return response


def contents_payload(text: str) -> Dict[str, str]:
    """Body of ``GET /repos/{o}/{r}/contents/{path}`` for a file containing ``text``."""
    encoded = base64.b64encode(text.encode('utf-8')).decode('ascii')
    # The API wraps base64 at 60 columns.
    wrapped = '\n'.join(encoded[i:i + 60] for i in range(0, len(encoded), 60))
    return {'type': 'file', 'encoding': 'base64', 'content': wrapped}


def repo_payload(owner: str = 'acme', name: str = 'widget', **overrides: Any) -> Dict[str, Any]:
    data = {
        'name': name,
        'full_name': f'{owner}/{name}',
        'owner': {
            'login': owner,
            'avatar_url': f'https://avatars.example.com/{owner}.png',
            'html_url': f'https://github.com/{owner}',
        },
        'description': 'A widget plugin',
        'private': False,
        'archived': False,
        'html_url': f'https://github.com/{owner}/{name}',
        'homepage': '',
        'default_branch': 'main',
        'stargazers_count': 42,
        'forks_count': 7,
        'open_issues_count': 3,
        'watchers_count': 42,
        'subscribers_count': 5,
        'language': 'PHP',
        'topics': ['wordpress-plugin', 'forms', 'wp'],
        'license': {'name': 'GPL-2.0'},
        'has_wiki': True,
        'created_at': '2023-01-01T00:00:00Z',
        'updated_at': '2024-02-01T00:00:00Z',
        'pushed_at': '2024-02-02T00:00:00Z',
    }
    data.update(overrides)
    return data


def build_zip(files: Dict[str, str]) -> bytes:
    """Zip archive bytes holding ``files`` (archive path -> text)."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as zf:
        for name, text in files.items():
            zf.writestr(name, text)
    return buffer.getvalue()


def plugin_main_file(name: str = 'Widget', version: str = '1.0.0', author: str = 'Acme') -> str:
    return (
        "<?php\n"
        "/**\n"
        f" * Plugin Name: {name}\n"
        " * Description: Adds widgets.\n"
        f" * Version: {version}\n"
        f" * Author: {author}\n"
        " * Author URI: https://acme.example.com\n"
        " */\n"
    )


class FakeGitHub:
    """Routes ``session.get`` by exact URL; unknown URLs answer 404."""

    def __init__(self):
        self.routes: Dict[str, Any] = {}
        self.session = MagicMock()
        self.session.get.side_effect = self._get

    def add(self, url: str, response: Any) -> None:
        """Register a response, an exception to raise, or a list served in order."""
        self.routes[url] = response

    def add_json(self, path: str, data: Any, status_code: int = 200,
                 headers: Optional[Dict[str, str]] = None) -> None:
        self.add(f"{API}/{path}", make_response(status_code, data, headers=headers))

    def _get(self, url, **kwargs):
        route = self.routes.get(url)
        if route is None:
            return make_response(404, {'message': 'Not Found'})
        if isinstance(route, Exception):
            raise route
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        return route

    def calls_to(self, url: str) -> int:
        return sum(1 for c in self.session.get.call_args_list if c.args and c.args[0] == url)

    def kwargs_for(self, url: str) -> Dict[str, Any]:
        for c in self.session.get.call_args_list:
            if c.args and c.args[0] == url:
                return c.kwargs
        raise AssertionError(f"No request made to {url}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> SyncSettings:
    return SyncSettings(
        access_token=None,
        plugins_dir=str(tmp_path / 'plugins'),
        themes_dir=str(tmp_path / 'themes'),
    )


@pytest.fixture
def cache(clock, settings) -> TTLCache:
    return TTLCache(default_ttl=settings.cache_ttl, clock=clock)


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def environment() -> HostEnvironment:
    return HostEnvironment(host_version='6.4.2', runtime_version='8.1.0')
