"""
Restoration of archived directories.

Inverse of the archiver: reads <name>.tar[.gz], strips the <name>/ member
prefix and recreates every entry directly under the target directory,
reapplying the recorded mode, ownership and modification time.
"""

import logging
import os
import posixpath
import shutil
import stat
import tarfile
import zlib
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from .checksum import sha256_file
from .errors import OperationCancelled, RestoreReadFailure
from .types import DirectoryRecord, FilePermissionRecord

logger = logging.getLogger(__name__)


class Restorer:
    """
    Extracts one directory archive into a target directory.
    """

    def __init__(self, verify_checksum: bool = True,
                 cancellation_check: Optional[Callable[[], None]] = None):
        """
        Initialize restorer.

        Args:
            verify_checksum: Compare the archive checksum with the record before extracting
            cancellation_check: Optional function called between entries;
                raises OperationCancelled to abort
        """
        self.verify_checksum = verify_checksum
        self.cancellation_check = cancellation_check
        self.warnings: List[str] = []
        self._relaxed_dirs: Dict[str, int] = {}

    def restore(self, directory: DirectoryRecord, archive_path: str, target_dir: str) -> int:
        """
        Restore a directory archive.

        Args:
            directory: Record of the archived directory
            archive_path: Path to the archive file
            target_dir: Directory to extract into (created if absent)

        Returns:
            Number of regular files restored

        Raises:
            RestoreReadFailure: If the archive is missing, corrupt or fails verification
            OperationCancelled: If the cancellation check fires
        """
        if not os.path.isfile(archive_path):
            raise RestoreReadFailure(f"Backup file not found: {archive_path}")

        if self.verify_checksum and directory.checksum:
            actual = sha256_file(archive_path)
            if actual != directory.checksum:
                raise RestoreReadFailure(
                    f"Checksum mismatch for {archive_path}: "
                    f"expected {directory.checksum}, got {actual}"
                )

        try:
            os.makedirs(target_dir, exist_ok=True)
        except OSError as e:
            raise RestoreReadFailure(f"Failed to create target directory {target_dir}: {e}") from e

        mode = 'r:gz' if directory.compressed else 'r:'
        restored_files = 0
        pending_dirs: List[Tuple[str, FilePermissionRecord]] = []
        self._relaxed_dirs = {}

        try:
            with tarfile.open(archive_path, mode) as tar:
                for member in tar:
                    if self.cancellation_check:
                        self.cancellation_check()

                    rel_path = self._member_path(member.name, directory.name)
                    if rel_path is None:
                        continue

                    target_path = os.path.join(target_dir, *rel_path.split('/'))
                    perm = directory.permissions.get(rel_path) or _permission_from_member(member)

                    if member.isdir():
                        self._ensure_directory(target_dir, rel_path)
                        pending_dirs.append((target_path, perm))
                    elif member.isreg():
                        self._ensure_directory(target_dir, posixpath.dirname(rel_path))
                        self._restore_file(tar, member, target_path)
                        self._apply_permissions(target_path, perm)
                        restored_files += 1
                    elif member.issym():
                        self._ensure_directory(target_dir, posixpath.dirname(rel_path))
                        self._restore_symlink(member, target_path, perm)
                    else:
                        logger.warning(f"Skipping unsupported archive member: {member.name}")

            # Deepest directories first, so restrictive parent modes cannot block children
            for path, perm in sorted(pending_dirs, key=lambda item: item[0].count(os.sep), reverse=True):
                self._apply_permissions(path, perm)

            restored_dirs = {path for path, _ in pending_dirs}
            for path, original_mode in self._relaxed_dirs.items():
                if path not in restored_dirs:
                    os.chmod(path, original_mode)

        except (OperationCancelled, RestoreReadFailure):
            raise
        except (tarfile.TarError, EOFError, zlib.error) as e:
            raise RestoreReadFailure(f"Corrupt archive {archive_path}: {e}") from e
        except OSError as e:
            raise RestoreReadFailure(f"Failed to restore {archive_path}: {e}") from e

        logger.info(f"Restored {directory.name} into {target_dir}: {restored_files} files")
        return restored_files

    @staticmethod
    def _member_path(member_name: str, archive_name: str) -> Optional[str]:
        """
        Map a tar member name to a path relative to the target directory.

        Returns None for the archive root entry.
        """
        normalized = posixpath.normpath(member_name)
        if normalized.startswith('/') or normalized == '..' or normalized.startswith('../'):
            raise RestoreReadFailure(f"Unsafe path in archive: {member_name}")

        parts = normalized.split('/')
        if parts[0] == archive_name:
            parts = parts[1:]
        if not parts or parts == ['.']:
            return None
        if '..' in parts:
            raise RestoreReadFailure(f"Unsafe path in archive: {member_name}")

        return '/'.join(parts)

    def _ensure_directory(self, root: str, rel_dir: str) -> str:
        """
        Create rel_dir under root one component at a time.

        Symlinks and files in the way are replaced with real directories, so
        nothing is ever written outside root. Existing directories the owner
        cannot write are made writable until their recorded mode is reapplied.
        """
        current = root
        self._make_writable(current)
        for part in rel_dir.split('/') if rel_dir else []:
            current = os.path.join(current, part)
            if os.path.islink(current) or (os.path.lexists(current) and not os.path.isdir(current)):
                os.unlink(current)
            if not os.path.isdir(current):
                os.mkdir(current, 0o755)
            self._make_writable(current)
        return current

    def _make_writable(self, path: str):
        if path in self._relaxed_dirs or os.access(path, os.W_OK | os.X_OK):
            return
        mode = stat.S_IMODE(os.stat(path).st_mode)
        os.chmod(path, mode | stat.S_IRWXU)
        self._relaxed_dirs[path] = mode

    @staticmethod
    def _restore_file(tar: tarfile.TarFile, member: tarfile.TarInfo, target_path: str):
        # Never write through an existing symlink or into an existing file,
        # which may be read-only
        if os.path.isdir(target_path) and not os.path.islink(target_path):
            shutil.rmtree(target_path)
        elif os.path.lexists(target_path):
            os.unlink(target_path)

        source = tar.extractfile(member)
        if source is None:
            raise RestoreReadFailure(f"Cannot read archive member: {member.name}")

        with source, open(target_path, 'wb') as out:
            shutil.copyfileobj(source, out)

    def _restore_symlink(self, member: tarfile.TarInfo, target_path: str, perm: FilePermissionRecord):
        if os.path.lexists(target_path):
            if os.path.isdir(target_path) and not os.path.islink(target_path):
                shutil.rmtree(target_path)
            else:
                os.unlink(target_path)

        os.symlink(member.linkname, target_path)
        self._apply_ownership(target_path, perm, follow_symlinks=False)

    def _apply_permissions(self, path: str, perm: FilePermissionRecord):
        """Reapply ownership, mode and modification time."""
        # chown first: it can clear setuid/setgid bits
        self._apply_ownership(path, perm)
        os.chmod(path, perm.mode)

        mtime = perm.mod_time.timestamp()
        os.utime(path, (mtime, mtime))

    def _apply_ownership(self, path: str, perm: FilePermissionRecord, follow_symlinks: bool = True):
        try:
            os.chown(path, perm.uid, perm.gid, follow_symlinks=follow_symlinks)
        except PermissionError as e:
            message = f"Cannot restore ownership of {path} to {perm.uid}:{perm.gid}: {e.strerror}"
            self.warnings.append(message)
            logger.warning(message)
        except NotImplementedError:
            # lchown is unavailable on some platforms
            pass


def _permission_from_member(member: tarfile.TarInfo) -> FilePermissionRecord:
    """Fallback when an entry is missing from the recorded permissions."""
    return FilePermissionRecord(
        mode=member.mode,
        uid=member.uid,
        gid=member.gid,
        size=member.size,
        mod_time=datetime.fromtimestamp(member.mtime, tz=timezone.utc)
    )
