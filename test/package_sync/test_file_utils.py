"""
Tests for the filesystem helpers.
"""

import stat

from src.common.file_utils import atomic_write_text, safe_remove_directory


class TestSafeRemoveDirectory:

    def test_missing_directory(self, tmp_path):
        assert safe_remove_directory(tmp_path / 'none') is True

    def test_read_only_tree(self, tmp_path):
        tree = tmp_path / 'widget'
        locked = tree / 'assets'
        locked.mkdir(parents=True)
        (locked / 'logo.png').write_bytes(b'png')
        locked.chmod(stat.S_IRUSR | stat.S_IXUSR)

        assert safe_remove_directory(tree) is True
        assert not tree.exists()


class TestAtomicWriteText:

    def test_creates_parents_and_leaves_no_temp_files(self, tmp_path):
        path = tmp_path / 'nested' / 'registry.json'
        atomic_write_text(path, '{}')
        atomic_write_text(path, '{"plugins": {}}')
        assert path.read_text() == '{"plugins": {}}'
        assert [p.name for p in path.parent.iterdir()] == ['registry.json']
