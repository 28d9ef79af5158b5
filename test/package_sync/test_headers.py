"""
Tests for header extraction from readme.txt, style.css and plugin files.
"""

from src.package_sync.headers import (
    PLUGIN_FILE_HEADER_LABELS, extract_headers, parse_file_headers, strip_header_lines,
)

README = """=== Widget ===
Contributors: acme
Tags: forms, widgets
Requires at least: 6.0
Tested up to: 6.5
Requires PHP: 7.4
Stable tag: 1.2.3
License: GPLv2 or later

A widget plugin.

== Changelog ==
"""


class TestExtractHeaders:

    def test_readme_fields(self):
        headers = extract_headers(README)
        assert headers.requires_host == '6.0'
        assert headers.tested_host == '6.5'
        assert headers.requires_runtime == '7.4'
        assert headers.stable_tag == '1.2.3'
        assert headers.declared_version == '1.2.3'

    def test_case_and_whitespace_insensitive(self):
        headers = extract_headers("Stable Tag:   1.2.3  \n")
        assert headers.stable_tag == '1.2.3'

    def test_colon_is_required(self):
        headers = extract_headers("Stable Tag 1.2.3\n")
        assert headers.stable_tag == ''

    def test_missing_fields_are_empty_strings(self):
        headers = extract_headers("Just some text\n")
        assert headers.as_dict() == {
            'requires at least': '',
            'tested up to': '',
            'requires php': '',
            'stable tag': '',
            'version': '',
        }

    def test_match_is_line_anchored(self):
        headers = extract_headers("See the Stable tag: 9.9 note below\n")
        assert headers.stable_tag == ''

    def test_style_css_comment_block(self):
        style = (
            "/*\n"
            "Theme Name: Acme Theme\n"
            " * Version: 2.1\n"
            "Requires at least: 5.9\n"
            "Requires PHP: 7.0\n"
            "*/\n"
        )
        headers = extract_headers(style)
        assert headers.version == '2.1'
        assert headers.declared_version == '2.1'
        assert headers.requires_host == '5.9'

    def test_whole_text_is_scanned(self):
        text = "\n" * 200 + "Stable tag: 3.0\n"
        assert extract_headers(text).stable_tag == '3.0'

    def test_crlf_line_endings(self):
        assert extract_headers("Stable tag: 1.0\r\nTested up to: 6.1\r\n").tested_host == '6.1'


class TestFileHeaders:

    def test_plugin_header_block(self):
        source = (
            "<?php\n/**\n * Plugin Name: Widget\n * Author: Acme\n"
            " * Author URI: https://acme.example.com\n * Version: 1.0.0\n */\n"
        )
        fields = parse_file_headers(source, PLUGIN_FILE_HEADER_LABELS)
        assert fields == {'name': 'Widget', 'author': 'Acme', 'version': '1.0.0'}

    def test_only_top_of_file_is_read(self):
        source = "<?php\n" + ("// filler\n" * 2000) + "/* Plugin Name: Late */\n"
        assert parse_file_headers(source, PLUGIN_FILE_HEADER_LABELS)['name'] == ''


class TestStripHeaderLines:

    def test_removes_metadata_lines(self):
        stripped = strip_header_lines(README)
        assert 'Contributors:' not in stripped
        assert 'Stable tag:' not in stripped
        assert 'License:' not in stripped
        assert '=== Widget ===' in stripped
        assert 'A widget plugin.' in stripped

    def test_lines_after_header_region_are_kept(self):
        text = "\n".join(['line'] * 45 + ['Tags: keep me'])
        assert 'Tags: keep me' in strip_header_lines(text)

    def test_prefix_match_is_case_insensitive(self):
        assert strip_header_lines("TAGS: a, b\nbody") == "body"
