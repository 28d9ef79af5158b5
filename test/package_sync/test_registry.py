"""
Tests for the tracked-repository registry.
"""

import json
import threading
import time

import pytest

from src.package_sync.errors import (
    DuplicatePackageError, NotFoundError, PackageNotTrackedError, RegistryStorageError, ValidationError,
)
from src.package_sync.models import PackageKind, RepoDetails, validate_repo_format
from src.package_sync.registry import (
    JsonFileRegistryBackend, MemoryRegistryBackend, RegistryBackend, RegistryStore, validate_document,
)

from conftest import repo_payload


@pytest.fixture
def registry(clock):
    return RegistryStore(MemoryRegistryBackend(), clock=clock)


def verified(private=False):
    def verify(owner, repo):
        return RepoDetails.from_api(repo_payload(owner=owner, name=repo, private=private))
    return verify


class TestRepoFormat:

    @pytest.mark.parametrize('value,expected', [
        ('foo/bar', True),
        ('my-org/my.plugin_2', True),
        ('foo', False),
        ('foo/', False),
        ('/bar', False),
        ('foo/bar/baz', False),
        ('', False),
        (None, False),
        ('foo/bar\n', False),
        (' foo/bar', False),
    ])
    def test_validate_repo_format(self, value, expected):
        assert validate_repo_format(value) is expected


class TestAdd:

    def test_add_stores_lowercase_key(self, registry, clock):
        package = registry.add('Acme/Widget', verify=verified())
        assert package.key == 'acme/widget'
        assert package.added_at == clock()
        assert registry.contains('ACME/widget')
        assert registry.get('acme/widget').name == 'widget'

    def test_add_takes_private_flag_from_probe(self, registry):
        registry.add('acme/secret', verify=verified(private=True))
        assert registry.get('acme/secret').private is True

    def test_invalid_reference(self, registry):
        with pytest.raises(ValidationError):
            registry.add('not-a-repo')

    def test_duplicate(self, registry):
        registry.add('acme/widget')
        with pytest.raises(DuplicatePackageError) as exc_info:
            registry.add('ACME/WIDGET')
        assert 'already in your monitored list' in exc_info.value.user_message

    def test_same_repo_can_be_tracked_per_kind(self, registry):
        registry.add('acme/widget', PackageKind.PLUGIN)
        registry.add('acme/widget', PackageKind.THEME)
        assert len(registry.list()) == 2
        assert len(registry.list(PackageKind.THEME)) == 1

    def test_failed_probe_stores_nothing(self, registry):
        def verify(owner, repo):
            raise NotFoundError('https://api.github.com/repos/acme/ghost')

        with pytest.raises(NotFoundError):
            registry.add('acme/ghost', verify=verify)
        assert registry.list() == []


class TestRemoveAndUpdate:

    def test_remove(self, registry):
        registry.add('acme/widget')
        registry.remove('Acme/Widget')
        assert not registry.contains('acme/widget')

    def test_remove_untracked(self, registry):
        with pytest.raises(PackageNotTrackedError):
            registry.remove('acme/widget')

    def test_update_merges_fields(self, registry):
        registry.add('acme/widget', verify=verified(private=True), installed_path='widget/widget.php')
        registry.update('acme/widget', version='1.1')
        package = registry.get('acme/widget')
        assert package.version == '1.1'
        assert package.private is True
        assert package.installed_path == 'widget/widget.php'

    def test_update_rejects_unknown_fields(self, registry):
        registry.add('acme/widget')
        with pytest.raises(ValidationError):
            registry.update('acme/widget', colour='blue')

    def test_record_check_keeps_install_fields(self, registry, clock):
        registry.record_install('acme/widget', PackageKind.PLUGIN, 'widget/widget.php', version='1.0',
                                name='Widget', directory='widget')
        clock.advance(60)
        registry.record_check('acme/widget', PackageKind.PLUGIN, '1.1', requires_host='6.0',
                              download_url='https://api.github.com/repos/acme/widget/zipball')
        package = registry.get('acme/widget')
        assert package.version == '1.1'
        assert package.installed_path == 'widget/widget.php'
        assert package.directory == 'widget'
        assert package.last_checked == clock()

    def test_record_install_keeps_stored_private_flag(self, registry):
        registry.add('acme/secret', verify=verified(private=True))
        registry.record_install('acme/secret', PackageKind.PLUGIN, 'secret/secret.php', private=False)
        assert registry.get('acme/secret').private is True

    def test_record_install_creates_missing_record(self, registry):
        package = registry.record_install('acme/widget', PackageKind.THEME, 'widget', version='2.0')
        assert package.kind is PackageKind.THEME
        assert registry.get('acme/widget', PackageKind.THEME).version == '2.0'

    def test_find_by_installed_path(self, registry):
        registry.add('acme/widget', installed_path='widget/widget.php')
        assert registry.find_by_installed_path('widget/widget.php').key == 'acme/widget'
        assert registry.find_by_installed_path('other/other.php') is None
        assert registry.find_by_installed_path('') is None

    def test_concurrent_writers_keep_each_others_fields(self, registry):
        registry.add('acme/widget')

        def write_version():
            for i in range(20):
                registry.update('acme/widget', version=f'1.{i}')

        def write_path():
            for i in range(20):
                registry.update('acme/widget', installed_path=f'widget{i}/widget.php')

        threads = [threading.Thread(target=write_version), threading.Thread(target=write_path)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        package = registry.get('acme/widget')
        assert package.version == '1.19'
        assert package.installed_path == 'widget19/widget.php'


class TestJsonFileBackend:

    def test_round_trip_through_file(self, tmp_path, clock):
        path = tmp_path / 'registry.json'
        RegistryStore(JsonFileRegistryBackend(str(path)), clock=clock).add('acme/widget', private=True)

        reloaded = RegistryStore(JsonFileRegistryBackend(str(path)), clock=clock)
        assert reloaded.get('acme/widget').private is True
        assert not list(tmp_path.glob('*.tmp'))

    def test_missing_file_is_empty(self, tmp_path):
        store = RegistryStore(JsonFileRegistryBackend(str(tmp_path / 'none.json')))
        assert store.list() == []

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / 'registry.json'
        path.write_text('{oops')
        with pytest.raises(RegistryStorageError):
            RegistryStore(JsonFileRegistryBackend(str(path))).list()

    def test_schema_violation(self, tmp_path):
        path = tmp_path / 'registry.json'
        path.write_text(json.dumps({'plugins': {'acme/widget': {'owner': 'acme', 'repo': 'widget', 'private': 'yes'}}}))
        with pytest.raises(RegistryStorageError) as exc_info:
            RegistryStore(JsonFileRegistryBackend(str(path))).list()
        assert 'private' in str(exc_info.value)


class TestValidateDocument:

    def test_valid(self):
        assert validate_document({'plugins': {}, 'themes': {}}) == []

    def test_errors_carry_path(self):
        errors = validate_document({'plugins': {'acme/widget': {'owner': 'acme'}}})
        assert len(errors) == 1
        assert errors[0].startswith('plugins.acme/widget:')
        assert "'repo' is a required property" in errors[0]


class SlowFileBackend(JsonFileRegistryBackend):
    """Widens the gap between load and save so unserialized writers collide."""

    def load(self):
        document = super().load()
        time.sleep(0.01)
        return document


class TestSharedFile:

    def test_two_stores_over_one_file_keep_each_others_fields(self, tmp_path, clock):
        path = tmp_path / 'registry.json'
        checker_store = RegistryStore(SlowFileBackend(str(path)), clock=clock)
        installer_store = RegistryStore(SlowFileBackend(str(path)), clock=clock)
        checker_store.add('acme/widget')

        def check():
            for _ in range(5):
                checker_store.record_check('acme/widget', PackageKind.PLUGIN, '2.0.0')

        def install():
            for _ in range(5):
                installer_store.update('acme/widget', installed_path='widget/widget.php')

        threads = [threading.Thread(target=check), threading.Thread(target=install)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        package = RegistryStore(JsonFileRegistryBackend(str(path))).get('acme/widget')
        assert package.version == '2.0.0'
        assert package.installed_path == 'widget/widget.php'

    def test_backends_for_one_path_share_locks(self, tmp_path):
        path = tmp_path / 'registry.json'
        first = JsonFileRegistryBackend(str(path))
        second = JsonFileRegistryBackend(str(tmp_path / '.' / 'registry.json'))
        assert first.locks is second.locks
        assert JsonFileRegistryBackend(str(tmp_path / 'other.json')).locks is not first.locks

    def test_memory_backends_do_not_share_locks(self):
        assert MemoryRegistryBackend().locks is not MemoryRegistryBackend().locks

    def test_backend_interface_is_abstract(self):
        with pytest.raises(TypeError):
            RegistryBackend()
