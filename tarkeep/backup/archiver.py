"""
Archive creation for backup directories.

Each configured directory becomes one tar stream, optionally wrapped in a
gzip layer, written to <run-dir>/<logical-name>.tar[.gz]. Tar members are
named <logical-name>/<relative-path>; the source root itself is not stored.
"""

import gzip
import logging
import os
import stat
import tarfile
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from .checksum import HashingWriter, sha256_file
from .errors import ArchiveWriteFailure, OperationCancelled, SourceUnavailable
from .types import DirectoryEntry, DirectoryRecord, FilePermissionRecord

logger = logging.getLogger(__name__)

PARTIAL_SUFFIX = '.partial'


def archive_filename(name: str, compressed: bool) -> str:
    """
    Build the archive filename for a directory.

    Args:
        name: Logical name of the directory
        compressed: Whether the archive is gzip-compressed

    Returns:
        Filename (without path)
    """
    return f"{name}.tar.gz" if compressed else f"{name}.tar"


def sanitize_name(name: str) -> str:
    """Replace everything except alphanumerics, hyphens and underscores."""
    return "".join(
        c if c.isalnum() or c in ('-', '_') else '_'
        for c in name
    )


def generate_backup_id(job_name: str, timestamp: datetime) -> str:
    """
    Generate a backup identifier.

    Format: {job_name}-{YYYYMMDD_HHMMSS}

    Args:
        job_name: Name of the backup job
        timestamp: Creation time of the backup

    Returns:
        Backup identifier
    """
    return f"{sanitize_name(job_name)}-{timestamp.strftime('%Y%m%d_%H%M%S')}"


def _raise_walk_error(error: OSError):
    raise error


class Archiver:
    """
    Writes one directory tree into a tar archive and describes the result.

    The archive is written to a temporary .partial file and renamed into
    place only after it is complete and its checksum verified.
    """

    def __init__(self, cancellation_check: Optional[Callable[[], None]] = None):
        """
        Initialize archiver.

        Args:
            cancellation_check: Optional function called between file operations;
                raises OperationCancelled to abort the walk
        """
        self.cancellation_check = cancellation_check

    def archive(self, entry: DirectoryEntry, run_dir: str) -> DirectoryRecord:
        """
        Archive a source directory.

        Args:
            entry: Directory to archive
            run_dir: Backup directory the archive is written into

        Returns:
            DirectoryRecord describing the archive

        Raises:
            SourceUnavailable: If the source directory does not exist
            ArchiveWriteFailure: If a source file cannot be read or the archive cannot be written
            OperationCancelled: If the cancellation check fires
        """
        if not os.path.isdir(entry.path):
            raise SourceUnavailable(f"Source directory does not exist: {entry.path}")

        final_path = os.path.join(run_dir, archive_filename(entry.name, entry.compression))
        partial_path = final_path + PARTIAL_SUFFIX

        permissions: Dict[str, FilePermissionRecord] = {}
        totals = {'size': 0, 'files': 0}

        try:
            with open(partial_path, 'wb') as raw:
                writer = HashingWriter(raw)
                self._write_archive(writer, entry, permissions, totals)
                raw.flush()
                os.fsync(raw.fileno())

            streamed_checksum = writer.hexdigest()
            disk_checksum = sha256_file(partial_path)
            if streamed_checksum != disk_checksum:
                raise ArchiveWriteFailure(
                    f"Checksum mismatch after writing {final_path}: "
                    f"streamed {streamed_checksum}, on disk {disk_checksum}"
                )

            os.replace(partial_path, final_path)

        except (ArchiveWriteFailure, OperationCancelled):
            self._remove_partial(partial_path)
            raise
        except (OSError, tarfile.TarError) as e:
            self._remove_partial(partial_path)
            raise ArchiveWriteFailure(f"Failed to write archive {final_path}: {e}") from e

        logger.info(
            f"Archived {entry.path} -> {os.path.basename(final_path)} "
            f"({totals['files']} files, {totals['size']} bytes)"
        )

        return DirectoryRecord(
            path=entry.path,
            name=entry.name,
            size=totals['size'],
            file_count=totals['files'],
            checksum=disk_checksum,
            compressed=entry.compression,
            permissions=permissions
        )

    def _write_archive(self, writer: HashingWriter, entry: DirectoryEntry, permissions, totals):
        """Encode the tar stream, then compress it if requested."""
        if entry.compression:
            # Fixed mtime and empty filename keep the gzip header reproducible
            stream = gzip.GzipFile(filename='', mode='wb', fileobj=writer, mtime=0)
        else:
            stream = writer

        try:
            with tarfile.open(fileobj=stream, mode='w|', format=tarfile.PAX_FORMAT) as tar:
                self._write_tree(tar, entry, permissions, totals)
        finally:
            if stream is not writer:
                stream.close()

    def _write_tree(self, tar: tarfile.TarFile, entry: DirectoryEntry, permissions, totals):
        """Walk the source tree in sorted order and add every entry."""
        source = entry.path

        for current, dirnames, filenames in os.walk(source, onerror=_raise_walk_error):
            dirnames.sort()
            filenames.sort()

            for name in sorted(dirnames + filenames):
                self._check_cancelled()

                full_path = os.path.join(current, name)
                rel_path = os.path.relpath(full_path, source).replace(os.sep, '/')
                self._add_entry(tar, full_path, rel_path, entry.name, permissions, totals)

    def _add_entry(self, tar: tarfile.TarFile, full_path: str, rel_path: str,
                   archive_name: str, permissions, totals):
        """Write one tar member and record its permissions."""
        st = os.lstat(full_path)

        info = tarfile.TarInfo(f"{archive_name}/{rel_path}")
        info.mode = stat.S_IMODE(st.st_mode)
        info.uid = st.st_uid
        info.gid = st.st_gid
        info.mtime = int(st.st_mtime)

        if stat.S_ISDIR(st.st_mode):
            info.type = tarfile.DIRTYPE
        elif stat.S_ISREG(st.st_mode):
            info.type = tarfile.REGTYPE
            info.size = st.st_size
        elif stat.S_ISLNK(st.st_mode):
            info.type = tarfile.SYMTYPE
            info.linkname = os.readlink(full_path)
        else:
            logger.warning(f"Skipping special file: {full_path}")
            return

        permissions[rel_path] = FilePermissionRecord(
            mode=info.mode,
            uid=st.st_uid,
            gid=st.st_gid,
            size=st.st_size if info.isreg() else 0,
            mod_time=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
        )

        if not info.isreg():
            tar.addfile(info)
            return

        try:
            source_file = open(full_path, 'rb')
        except OSError as e:
            raise ArchiveWriteFailure(f"Cannot read source file {full_path}: {e}") from e

        with source_file:
            try:
                tar.addfile(info, source_file)
            except OSError as e:
                # Raised for read errors and for files that shrink mid-read
                raise ArchiveWriteFailure(f"Failed to archive {full_path}: {e}") from e

        totals['size'] += st.st_size
        totals['files'] += 1

    def _check_cancelled(self):
        if self.cancellation_check:
            self.cancellation_check()

    @staticmethod
    def _remove_partial(partial_path: str):
        try:
            if os.path.exists(partial_path):
                os.remove(partial_path)
        except OSError as e:
            logger.warning(f"Failed to remove partial archive {partial_path}: {e}")
