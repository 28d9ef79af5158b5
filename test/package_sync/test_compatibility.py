"""
Tests for compatibility verdicts.
"""

import pytest

from src.package_sync.compatibility import evaluate_compatibility, require_metadata
from src.package_sync.errors import NoValidMetadataError
from src.package_sync.models import HostEnvironment, PackageHeaders, PackageKind

HEADERS = PackageHeaders(requires_host='6.0', tested_host='6.5', requires_runtime='7.4', stable_tag='1.0')


class TestEvaluateCompatibility:

    def test_host_too_old(self):
        verdict = evaluate_compatibility(HEADERS, HostEnvironment('5.9', '8.0'))
        assert verdict.is_compatible is False
        assert '6.0' in verdict.reason
        assert 'WordPress' in verdict.reason

    def test_within_range(self):
        verdict = evaluate_compatibility(HEADERS, HostEnvironment('6.2', '8.0'))
        assert verdict.is_compatible is True
        assert verdict.reason == ''

    def test_newer_than_tested_is_a_warning_only(self):
        verdict = evaluate_compatibility(HEADERS, HostEnvironment('6.9', '8.0'))
        assert verdict.is_compatible is True
        assert 'not been tested' in verdict.reason

    def test_runtime_too_old(self):
        verdict = evaluate_compatibility(HEADERS, HostEnvironment('6.2', '7.3'))
        assert verdict.is_compatible is False
        assert 'PHP version 7.4' in verdict.reason

    def test_host_rule_wins_over_runtime_rule(self):
        verdict = evaluate_compatibility(HEADERS, HostEnvironment('5.0', '5.6'))
        assert 'WordPress version 6.0' in verdict.reason

    def test_versions_compare_numerically(self):
        headers = PackageHeaders(requires_host='6.10')
        assert evaluate_compatibility(headers, HostEnvironment('6.9', '8.0')).is_compatible is False
        assert evaluate_compatibility(headers, HostEnvironment('6.10.1', '8.0')).is_compatible is True

    def test_empty_headers_are_compatible(self):
        verdict = evaluate_compatibility(PackageHeaders(), HostEnvironment('6.0', '8.0'))
        assert verdict.is_compatible is True
        assert verdict.reason == ''

    def test_reason_names_the_kind(self):
        verdict = evaluate_compatibility(HEADERS, HostEnvironment('5.9', '8.0'), PackageKind.THEME)
        assert verdict.reason.startswith('This theme requires')

    def test_headers_are_attached(self):
        verdict = evaluate_compatibility(HEADERS, HostEnvironment('6.2', '8.0'))
        assert verdict.headers['stable tag'] == '1.0'
        assert verdict.headers['tested up to'] == '6.5'

    def test_is_pure(self):
        env = HostEnvironment('6.9', '8.0')
        assert evaluate_compatibility(HEADERS, env) == evaluate_compatibility(HEADERS, env)


class TestRequireMetadata:

    def test_plugin_needs_stable_tag(self):
        with pytest.raises(NoValidMetadataError) as exc_info:
            require_metadata(PackageHeaders(version='1.0'), PackageKind.PLUGIN)
        assert exc_info.value.user_message == 'No valid readme file found.'

    def test_theme_needs_version(self):
        require_metadata(PackageHeaders(version='1.0'), PackageKind.THEME)
        with pytest.raises(NoValidMetadataError):
            require_metadata(PackageHeaders(stable_tag='1.0'), PackageKind.THEME)
