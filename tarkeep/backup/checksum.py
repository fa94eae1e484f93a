"""
SHA-256 helpers shared by the archiver, restorer and metadata store.
"""

import hashlib
from typing import Iterable

# 1MB read chunks
CHUNK_SIZE = 1024 * 1024


def sha256_file(path: str, chunk_size: int = CHUNK_SIZE) -> str:
    """
    Calculate the SHA-256 checksum of a file by streaming it.

    Args:
        path: Path to the file
        chunk_size: Number of bytes read per iteration

    Returns:
        Hex digest of the file contents
    """
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def combined_checksum(directories: Iterable) -> str:
    """
    Calculate the checksum of a whole backup from its directory records.

    The result depends only on each directory's archive checksum and
    logical name, in order. Fields are NUL-terminated so different
    splits of the same characters hash differently.

    Args:
        directories: Iterable of DirectoryRecord

    Returns:
        Hex digest
    """
    digest = hashlib.sha256()
    for directory in directories:
        digest.update(directory.checksum.encode('utf-8') + b'\0')
        digest.update(directory.name.encode('utf-8') + b'\0')
    return digest.hexdigest()


class HashingWriter:
    """
    Write-only file wrapper that hashes every byte passed through it.

    Sits directly above the on-disk file, so its digest covers exactly the
    bytes that land in the archive file.
    """

    def __init__(self, fileobj):
        self._fileobj = fileobj
        self._digest = hashlib.sha256()
        self.bytes_written = 0

    def write(self, data) -> int:
        self._fileobj.write(data)
        self._digest.update(data)
        size = memoryview(data).nbytes
        self.bytes_written += size
        return size

    def tell(self) -> int:
        return self.bytes_written

    def flush(self):
        self._fileobj.flush()

    def hexdigest(self) -> str:
        return self._digest.hexdigest()
