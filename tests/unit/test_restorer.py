"""
Unit tests for the restorer (tarkeep/backup/restorer.py).

Tests round-trips through the archiver, permission reapplication and
handling of missing, corrupt and unsafe archives.
"""

import io
import os
import stat
import tarfile

import pytest

from tarkeep.backup.archiver import Archiver
from tarkeep.backup.checksum import sha256_file
from tarkeep.backup.errors import RestoreReadFailure
from tarkeep.backup.restorer import Restorer
from tarkeep.backup.types import DirectoryEntry, DirectoryRecord


def _archive(source, tmp_path, compression):
    run_dir = tmp_path / 'run'
    run_dir.mkdir()
    entry = DirectoryEntry(path=str(source), name='data', compression=compression)
    record = Archiver().archive(entry, str(run_dir))
    suffix = '.tar.gz' if compression else '.tar'
    return record, str(run_dir / f'data{suffix}')


def _tree_snapshot(root):
    """Map relative path to (kind, content or link target, mode)."""
    snapshot = {}
    for current, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            full_path = os.path.join(current, name)
            rel_path = os.path.relpath(full_path, root)
            st = os.lstat(full_path)
            if stat.S_ISLNK(st.st_mode):
                snapshot[rel_path] = ('link', os.readlink(full_path), None)
            elif stat.S_ISDIR(st.st_mode):
                snapshot[rel_path] = ('dir', None, stat.S_IMODE(st.st_mode))
            else:
                with open(full_path, 'rb') as f:
                    snapshot[rel_path] = ('file', f.read(), stat.S_IMODE(st.st_mode))
    return snapshot


def _write_tar(path, members):
    """Write an uncompressed tar with (name, bytes) members."""
    with tarfile.open(path, 'w') as tar:
        for name, content in members:
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(content))


def _plain_record(name='data'):
    return DirectoryRecord(
        path='/unused', name=name, size=0, file_count=0, checksum='', compressed=False
    )


class TestRoundTrip:
    """Test that restore reproduces the archived tree."""

    @pytest.mark.parametrize("compression", [True, False])
    def test_restore_reproduces_tree(self, source_tree, tmp_path, compression):
        record, archive_path = _archive(source_tree, tmp_path, compression)
        target = tmp_path / 'restored'

        count = Restorer().restore(record, archive_path, str(target))

        assert count == 4
        assert _tree_snapshot(target) == _tree_snapshot(source_tree)

    def test_restore_applies_ownership_and_mtime(self, source_tree, tmp_path):
        record, archive_path = _archive(source_tree, tmp_path, True)
        target = tmp_path / 'restored'

        Restorer().restore(record, archive_path, str(target))

        for rel_path in ('script.sh', 'nested/file2.log'):
            original = os.stat(source_tree / rel_path)
            restored = os.stat(target / rel_path)
            assert restored.st_uid == original.st_uid
            assert restored.st_gid == original.st_gid
            assert int(restored.st_mtime) == int(original.st_mtime)

    def test_restore_uses_recorded_mode(self, source_tree, tmp_path):
        record, archive_path = _archive(source_tree, tmp_path, False)
        record.permissions['file1.txt'].mode = 0o600
        target = tmp_path / 'restored'

        Restorer().restore(record, archive_path, str(target))

        assert stat.S_IMODE(os.stat(target / 'file1.txt').st_mode) == 0o600

    def test_restore_overwrites_existing_files(self, source_tree, tmp_path):
        record, archive_path = _archive(source_tree, tmp_path, True)
        target = tmp_path / 'restored'
        target.mkdir()
        (target / 'file1.txt').write_text('stale content that is longer than the original')

        Restorer().restore(record, archive_path, str(target))

        assert (target / 'file1.txt').read_text() == 'Test content 1'

    def test_restore_creates_missing_target(self, source_tree, tmp_path):
        record, archive_path = _archive(source_tree, tmp_path, True)
        target = tmp_path / 'a' / 'b' / 'restored'

        Restorer().restore(record, archive_path, str(target))

        assert (target / 'nested' / 'deeper' / 'empty.bin').exists()


class TestExistingTarget:
    """Test restoring over content already present in the target."""

    def test_symlinked_directory_is_replaced_not_followed(self, source_tree, tmp_path):
        record, archive_path = _archive(source_tree, tmp_path, False)
        outside = tmp_path / 'outside'
        outside.mkdir()
        target = tmp_path / 'restored'
        target.mkdir()
        os.symlink(str(outside), target / 'nested')

        Restorer().restore(record, archive_path, str(target))

        assert os.listdir(outside) == []
        assert not os.path.islink(target / 'nested')
        assert (target / 'nested' / 'file2.log').read_text() == 'Nested log content\n' * 100

    def test_file_in_place_of_directory_is_replaced(self, source_tree, tmp_path):
        record, archive_path = _archive(source_tree, tmp_path, False)
        target = tmp_path / 'restored'
        target.mkdir()
        (target / 'nested').write_text('not a directory')

        Restorer().restore(record, archive_path, str(target))

        assert (target / 'nested' / 'deeper' / 'empty.bin').exists()

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores permission bits")
    def test_restore_twice_over_read_only_entries(self, tmp_path):
        source = tmp_path / 'source'
        locked = source / 'locked'
        locked.mkdir(parents=True)
        (locked / 'ro.txt').write_text('read only')
        os.chmod(locked / 'ro.txt', 0o444)
        os.chmod(locked, 0o555)
        record, archive_path = _archive(source, tmp_path, True)
        target = tmp_path / 'restored'

        try:
            Restorer().restore(record, archive_path, str(target))
            count = Restorer().restore(record, archive_path, str(target))

            assert count == 1
            assert (target / 'locked' / 'ro.txt').read_text() == 'read only'
            assert stat.S_IMODE(os.stat(target / 'locked' / 'ro.txt').st_mode) == 0o444
            assert stat.S_IMODE(os.stat(target / 'locked').st_mode) == 0o555
        finally:
            os.chmod(locked, 0o755)
            if (target / 'locked').is_dir():
                os.chmod(target / 'locked', 0o755)


class TestRestoreFailures:
    """Test missing, corrupt and unsafe archives."""

    def test_missing_archive(self, tmp_path):
        with pytest.raises(RestoreReadFailure, match="not found"):
            Restorer().restore(_plain_record(), str(tmp_path / 'data.tar'), str(tmp_path / 'out'))

    def test_checksum_mismatch(self, source_tree, tmp_path):
        record, archive_path = _archive(source_tree, tmp_path, True)
        with open(archive_path, 'ab') as f:
            f.write(b'tampered')

        with pytest.raises(RestoreReadFailure, match="Checksum mismatch"):
            Restorer().restore(record, archive_path, str(tmp_path / 'out'))

        assert not (tmp_path / 'out').exists()

    def test_checksum_not_verified_when_disabled(self, source_tree, tmp_path):
        record, archive_path = _archive(source_tree, tmp_path, False)
        record.checksum = '0' * 64

        count = Restorer(verify_checksum=False).restore(record, archive_path, str(tmp_path / 'out'))

        assert count == 4

    @pytest.mark.parametrize("compressed", [True, False])
    def test_corrupt_archive(self, tmp_path, compressed):
        archive_path = tmp_path / 'data.tar'
        archive_path.write_bytes(b'this is not a tar stream' * 40)
        record = _plain_record()
        record.compressed = compressed
        record.checksum = sha256_file(str(archive_path))

        with pytest.raises(RestoreReadFailure):
            Restorer().restore(record, str(archive_path), str(tmp_path / 'out'))

    @pytest.mark.parametrize("member_name", [
        'data/../../evil.txt',
        '../evil.txt',
        '/etc/evil.txt',
    ])
    def test_unsafe_member_path(self, tmp_path, member_name):
        archive_path = tmp_path / 'data.tar'
        _write_tar(archive_path, [(member_name, b'evil')])

        with pytest.raises(RestoreReadFailure, match="Unsafe path"):
            Restorer(verify_checksum=False).restore(
                _plain_record(), str(archive_path), str(tmp_path / 'out')
            )

        assert not (tmp_path / 'evil.txt').exists()


class TestMemberPath:
    """Test mapping of tar member names to target paths."""

    @pytest.mark.parametrize("member_name,expected", [
        ('data/file.txt', 'file.txt'),
        ('data/nested/file.txt', 'nested/file.txt'),
        ('data', None),
        ('data/', None),
        ('./data/file.txt', 'file.txt'),
        ('other/file.txt', 'other/file.txt'),
    ])
    def test_member_path(self, member_name, expected):
        assert Restorer._member_path(member_name, 'data') == expected

    def test_files_without_prefix_land_under_target(self, tmp_path):
        archive_path = tmp_path / 'data.tar'
        _write_tar(archive_path, [('data/a.txt', b'a'), ('b.txt', b'b')])
        target = tmp_path / 'out'

        Restorer(verify_checksum=False).restore(_plain_record(), str(archive_path), str(target))

        assert (target / 'a.txt').read_bytes() == b'a'
        assert (target / 'b.txt').read_bytes() == b'b'
