"""
Persistence of backup records.

Layout under a job's storage path:
{storage_path}/{backup_id}/{name}.tar[.gz]
{storage_path}/{backup_id}/metadata.json
"""

import json
import logging
import os
import re
import shutil
import stat
from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from .errors import MetadataError, RetentionDeletionFailure
from .types import BackupRecord, DirectoryRecord, FilePermissionRecord

logger = logging.getLogger(__name__)

METADATA_FILENAME = 'metadata.json'

# Type letters that may precede the nine permission characters in a
# symbolic mode, both ls style (-rw-r--r--) and Go style (dtrwxrwxrwx)
_MODE_TYPE_CHARS = set('-dalTLDpScbs?')
_OCTAL_MODE_RE = re.compile(r'^(0o)?[0-7]{1,6}$')
_FRACTION_RE = re.compile(r'\.(\d{6})\d+')


def format_mode(mode: int) -> str:
    """Format permission bits as a 4-digit octal string, e.g. '0644'."""
    return f"{stat.S_IMODE(mode):04o}"


def parse_mode(value) -> int:
    """
    Parse a stored file mode.

    Accepts integers, octal strings ('0644', '0o644', '644') and symbolic
    strings ('-rw-r--r--', 'drwxr-sr-x', 'dtrwxrwxrwx').

    Raises:
        MetadataError: If the value is not a recognised mode
    """
    if isinstance(value, int):
        return stat.S_IMODE(value)

    if not isinstance(value, str):
        raise MetadataError(f"Invalid file mode: {value!r}")

    text = value.strip()
    if _OCTAL_MODE_RE.match(text):
        digits = text[2:] if text.startswith('0o') else text
        return stat.S_IMODE(int(digits, 8))

    return _parse_symbolic_mode(text)


def _parse_symbolic_mode(text: str) -> int:
    if len(text) < 9:
        raise MetadataError(f"Invalid file mode: {text!r}")

    prefix, perms = text[:-9], text[-9:]
    mode = 0
    specials = (stat.S_ISUID, stat.S_ISGID, stat.S_ISVTX)
    special_chars = ('sS', 'sS', 'tT')
    expected = 'rwx'

    for i, ch in enumerate(perms):
        bit = 1 << (8 - i)
        position = i % 3
        triplet = i // 3

        if ch == '-':
            continue
        if ch == expected[position]:
            mode |= bit
        elif position == 2 and ch in special_chars[triplet]:
            mode |= specials[triplet]
            if ch.islower():
                mode |= bit
        else:
            raise MetadataError(f"Invalid file mode: {text!r}")

    for ch in prefix:
        if ch == 'u':
            mode |= stat.S_ISUID
        elif ch == 'g':
            mode |= stat.S_ISGID
        elif ch == 't':
            mode |= stat.S_ISVTX
        elif ch not in _MODE_TYPE_CHARS:
            raise MetadataError(f"Invalid file mode: {text!r}")

    return mode


def format_timestamp(value: datetime) -> str:
    """Format a datetime as RFC 3339 in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """
    Parse an RFC 3339 timestamp into an aware datetime.

    Naive timestamps are treated as UTC. Fractional seconds beyond
    microsecond precision are truncated.
    """
    if not isinstance(value, str):
        raise MetadataError(f"Invalid timestamp: {value!r}")

    text = value.strip()
    if text.endswith(('Z', 'z')):
        text = text[:-1] + '+00:00'
    text = _FRACTION_RE.sub(r'.\1', text)

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise MetadataError(f"Invalid timestamp: {value!r}") from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def record_to_dict(record: BackupRecord) -> Dict[str, Any]:
    """Serialize a BackupRecord to plain JSON-compatible types."""
    return {
        'id': record.id,
        'timestamp': format_timestamp(record.timestamp),
        'directories': [
            {
                'path': directory.path,
                'name': directory.name,
                'size': directory.size,
                'file_count': directory.file_count,
                'permissions': {
                    rel_path: {
                        'mode': format_mode(perm.mode),
                        'uid': perm.uid,
                        'gid': perm.gid,
                        'size': perm.size,
                        'mod_time': format_timestamp(perm.mod_time)
                    }
                    for rel_path, perm in directory.permissions.items()
                },
                'checksum': directory.checksum,
                'compressed': directory.compressed
            }
            for directory in record.directories
        ],
        'total_size': record.total_size,
        'checksum': record.checksum,
        'compressed': record.compressed
    }


def record_from_dict(data: Dict[str, Any]) -> BackupRecord:
    """
    Deserialize a BackupRecord.

    Raises:
        MetadataError: If required fields are missing or malformed
    """
    try:
        directories = []
        for item in data.get('directories') or []:
            permissions = {
                rel_path: FilePermissionRecord(
                    mode=parse_mode(perm['mode']),
                    uid=int(perm.get('uid', 0)),
                    gid=int(perm.get('gid', 0)),
                    size=int(perm.get('size', 0)),
                    mod_time=parse_timestamp(perm['mod_time'])
                )
                for rel_path, perm in (item.get('permissions') or {}).items()
            }
            directories.append(DirectoryRecord(
                path=item['path'],
                name=item['name'],
                size=int(item.get('size', 0)),
                file_count=int(item.get('file_count', 0)),
                checksum=item['checksum'],
                compressed=bool(item.get('compressed', False)),
                permissions=permissions
            ))

        return BackupRecord(
            id=data['id'],
            timestamp=parse_timestamp(data['timestamp']),
            directories=directories,
            total_size=int(data.get('total_size', 0)),
            checksum=data.get('checksum', ''),
            compressed=bool(data.get('compressed', False))
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MetadataError(f"Malformed backup metadata: {e}") from e


class MetadataStore:
    """
    Reads and writes backup records under one storage path.

    Each backup lives in its own directory named after the backup id.
    """

    def __init__(self, storage_path: str):
        """
        Initialize metadata store.

        Args:
            storage_path: Resolved storage path of a job
        """
        self.storage_path = storage_path

    def backup_dir(self, backup_id: str) -> str:
        if not backup_id or os.sep in backup_id or backup_id in ('.', '..'):
            raise MetadataError(f"Invalid backup id: {backup_id!r}")
        return os.path.join(self.storage_path, backup_id)

    def create_backup_dir(self, base_id: str) -> Tuple[str, str]:
        """
        Create a new, empty backup directory.

        A numeric suffix is appended when base_id is already taken, so
        concurrent runs never share a directory.

        Returns:
            Tuple of (backup_id, directory path)
        """
        os.makedirs(self.storage_path, exist_ok=True)

        backup_id = base_id
        suffix = 1
        while True:
            path = self.backup_dir(backup_id)
            try:
                os.mkdir(path, 0o755)
                return backup_id, path
            except FileExistsError:
                backup_id = f"{base_id}-{suffix}"
                suffix += 1

    def save(self, record: BackupRecord) -> str:
        """
        Write a record's metadata file atomically.

        Returns:
            Path to the metadata file
        """
        directory = self.backup_dir(record.id)
        os.makedirs(directory, exist_ok=True)

        metadata_path = os.path.join(directory, METADATA_FILENAME)
        temp_path = metadata_path + '.tmp'

        with open(temp_path, 'w', encoding='utf-8') as f:
            json.dump(record_to_dict(record), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, metadata_path)

        return metadata_path

    def load(self, backup_id: str) -> BackupRecord:
        """
        Load the record of one backup.

        Raises:
            MetadataError: If the metadata file is missing or unreadable
        """
        return self.load_from_dir(self.backup_dir(backup_id))

    @staticmethod
    def load_from_dir(backup_dir: str) -> BackupRecord:
        metadata_path = os.path.join(backup_dir, METADATA_FILENAME)

        try:
            with open(metadata_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise MetadataError(f"Metadata file not found: {metadata_path}") from e
        except (OSError, ValueError) as e:
            raise MetadataError(f"Failed to read metadata {metadata_path}: {e}") from e

        return record_from_dict(data)

    def exists(self, backup_id: str) -> bool:
        return os.path.isfile(os.path.join(self.backup_dir(backup_id), METADATA_FILENAME))

    def list_records(self) -> List[BackupRecord]:
        """
        List all readable backup records, oldest first.

        Directories without a metadata file are ignored; unreadable metadata
        is skipped with a warning.
        """
        if not os.path.isdir(self.storage_path):
            return []

        records = []
        for entry in sorted(os.listdir(self.storage_path)):
            backup_dir = os.path.join(self.storage_path, entry)
            if not os.path.isfile(os.path.join(backup_dir, METADATA_FILENAME)):
                continue

            try:
                records.append(self.load_from_dir(backup_dir))
            except MetadataError as e:
                logger.warning(f"Failed to load metadata for {entry}: {e}")

        records.sort(key=lambda r: (r.timestamp, r.id))
        return records

    def delete(self, backup_id: str):
        """
        Delete a backup directory with all archives and metadata.

        Raises:
            RetentionDeletionFailure: If the directory cannot be removed
        """
        directory = self.backup_dir(backup_id)

        try:
            if os.path.isdir(directory):
                shutil.rmtree(directory)
        except OSError as e:
            raise RetentionDeletionFailure(f"Failed to delete backup {backup_id}: {e}") from e
