"""
Backup engine for tarkeep.

This module handles the core backup functionality including:
- Directory archiving with checksums and permission capture
- Backup metadata storage
- Restore
- Retention policy evaluation
- Run orchestration

Database-bound entry points live in tarkeep.backup.jobs.
"""

from .archiver import Archiver
from .executor import BackupOrchestrator, RunStep
from .metadata import MetadataStore
from .restorer import Restorer
from .retention import RetentionManager, evaluate
from .storage import StorageResolver

__all__ = [
    'Archiver',
    'BackupOrchestrator',
    'RunStep',
    'MetadataStore',
    'Restorer',
    'RetentionManager',
    'evaluate',
    'StorageResolver'
]
