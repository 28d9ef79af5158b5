"""
Header extraction for readme.txt, style.css and plugin main files.

Headers are ``Key: value`` lines. Matching is anchored at the start of a
line (leading whitespace and a ``*`` or ``#`` comment marker are tolerated),
case-insensitive, and requires the colon. Missing headers come back as
empty strings.
"""

import re
from typing import Dict, Iterable, List

from src.package_sync.models import PackageHeaders

# Lowercase field key -> header label as written in the file.
PACKAGE_HEADER_LABELS = {
    'stable tag': 'Stable tag',
    'requires at least': 'Requires at least',
    'tested up to': 'Tested up to',
    'requires php': 'Requires PHP',
    'version': 'Version',
}

PLUGIN_FILE_HEADER_LABELS = {
    'name': 'Plugin Name',
    'author': 'Author',
    'version': 'Version',
}

THEME_FILE_HEADER_LABELS = {
    'name': 'Theme Name',
    'author': 'Author',
    'version': 'Version',
    'template': 'Template',
}

# Readme lines that duplicate data the host already shows next to the readme.
DISPLAY_HEADER_NAMES = (
    'contributors',
    'donate link',
    'tags',
    'requires at least',
    'tested up to',
    'stable tag',
    'requires php',
    'license',
    'license uri',
)

HEADER_REGION_LINES = 40

# Plugin/theme file headers must appear near the top of the file.
FILE_HEADER_SCAN_BYTES = 8192

_pattern_cache: Dict[str, 're.Pattern[str]'] = {}


def _header_pattern(label: str) -> 're.Pattern[str]':
    pattern = _pattern_cache.get(label)
    if pattern is None:
        pattern = re.compile(
            r'^[ \t]*(?:[*#]+[ \t]*)?' + re.escape(label) + r'[ \t]*:[ \t]*(\S.*?)[ \t]*$',
            re.IGNORECASE | re.MULTILINE,
        )
        _pattern_cache[label] = pattern
    return pattern


def _normalize_newlines(text: str) -> str:
    return text.replace('\r\n', '\n').replace('\r', '\n')


def parse_header_fields(text: str, labels: Dict[str, str]) -> Dict[str, str]:
    """
    Extract ``labels`` from ``text``.

    Args:
        text: File content
        labels: Mapping of result key to header label

    Returns:
        Mapping of result key to value, '' where the header is absent
    """
    text = _normalize_newlines(text or '')
    result = {}
    for key, label in labels.items():
        match = _header_pattern(label).search(text)
        result[key] = match.group(1).strip() if match else ''
    return result


def extract_headers(text: str) -> PackageHeaders:
    """Extract the version-constraint headers from readme or style.css text."""
    values = parse_header_fields(text, PACKAGE_HEADER_LABELS)
    return PackageHeaders(
        requires_host=values['requires at least'],
        tested_host=values['tested up to'],
        requires_runtime=values['requires php'],
        stable_tag=values['stable tag'],
        version=values['version'],
    )


def parse_file_headers(text: str, labels: Dict[str, str]) -> Dict[str, str]:
    """Like ``parse_header_fields`` but only looks at the top of the file."""
    return parse_header_fields((text or '')[:FILE_HEADER_SCAN_BYTES], labels)


def strip_header_lines(readme: str, names: Iterable[str] = DISPLAY_HEADER_NAMES,
                       max_lines: int = HEADER_REGION_LINES) -> str:
    """
    Drop metadata lines such as ``Tags: seo`` from the top of a readme.

    Only the first ``max_lines`` lines are treated as the header region;
    matching lines further down are content and are kept.
    """
    prefixes = tuple(f"{name.lower()}:" for name in names)
    kept: List[str] = []
    for index, line in enumerate(readme.split('\n')):
        if index < max_lines and line.lstrip().lower().startswith(prefixes):
            continue
        kept.append(line)
    return '\n'.join(kept)
