"""
Storage path resolution for backup jobs.

A job stores its backups either in a local directory or under the mount
point of an externally mounted remote bucket. Once resolved, both are
plain filesystem paths:
{local_base}/{job_name}        local storage
{mount_point}/{job_name}       remote storage
"""

import logging
import os
from typing import Optional

from .archiver import sanitize_name
from .errors import ArchiveWriteFailure, ConfigurationError
from .types import JobConfig

logger = logging.getLogger(__name__)


class StorageResolver:
    """
    Resolves and prepares the storage path of a job.

    Instances are callable, so they can be passed wherever a
    resolve_storage_path(job) callback is expected.
    """

    def __init__(self, local_base: str, remote_base: Optional[str] = None):
        """
        Initialize storage resolver.

        Args:
            local_base: Base directory for local backups
            remote_base: Default mount point for remote storage
        """
        self.local_base = local_base
        self.remote_base = remote_base

    def __call__(self, job: JobConfig) -> str:
        return self.resolve(job)

    def mount_point(self, job: JobConfig) -> str:
        """
        Mount point a remote job writes under.

        Raises:
            ConfigurationError: If no mount point is configured
        """
        mount_point = job.mount_point or self.remote_base
        if not mount_point:
            raise ConfigurationError(f"Mount point not configured for remote job {job.name}")
        return mount_point

    def resolve(self, job: JobConfig) -> str:
        """
        Resolve a job's storage path without touching the filesystem.

        Raises:
            ConfigurationError: If remote storage has no mount point
        """
        if job.uses_remote_storage:
            return os.path.join(self.mount_point(job), sanitize_name(job.name))

        if job.storage_path:
            return job.storage_path

        return os.path.join(self.local_base, sanitize_name(job.name))

    def prepare(self, job: JobConfig) -> str:
        """
        Resolve a job's storage path and make sure it is usable.

        Remote mount points are never created here; mounting is done
        outside the engine, so a missing mount point is a configuration error.

        Returns:
            Resolved storage path

        Raises:
            ConfigurationError: If the remote mount point is not available
            ArchiveWriteFailure: If the storage directory cannot be created or written
        """
        path = self.resolve(job)

        if job.uses_remote_storage:
            mount_point = self.mount_point(job)
            if not os.path.isdir(mount_point):
                raise ConfigurationError(
                    f"Remote storage is not mounted at {mount_point} for job {job.name}"
                )
            logger.info(f"Using remote mount point for backup: {mount_point}")

        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise ArchiveWriteFailure(f"Failed to create storage directory {path}: {e}") from e

        if not os.access(path, os.W_OK):
            raise ArchiveWriteFailure(f"Storage directory is not writable: {path}")

        return path
