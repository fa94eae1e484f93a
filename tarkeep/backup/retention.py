"""
Retention policy enforcement for backups.

evaluate() decides which records to delete; RetentionManager applies the
decision to a job's storage path.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set

from .errors import RetentionDeletionFailure
from .metadata import MetadataStore
from .types import BackupRecord, RetentionPolicy

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _recency_key(record: BackupRecord):
    # Equal timestamps are ordered by id so results never depend on input order
    return (_as_utc(record.timestamp), record.id)


def evaluate(records: Iterable[BackupRecord], policy: RetentionPolicy,
             now: Optional[datetime] = None) -> Set[str]:
    """
    Determine which backups should be deleted under a retention policy.

    Rules are evaluated independently and their results unioned:
    - keep_days: records older than keep_days * 24h are marked
    - keep_count: records beyond the keep_count most recent are marked
    - keep_monthly: within each calendar month only the most recent record
      survives (the numeric value only switches the rule on)

    Args:
        records: All backup records of a job
        policy: Retention policy
        now: Reference time for the age rule (default: current UTC time)

    Returns:
        Set of backup ids to delete
    """
    records = list(records)
    now = _as_utc(now) if now else datetime.now(timezone.utc)
    to_delete: Set[str] = set()

    # Age rule
    if policy.keep_days > 0:
        max_age = timedelta(hours=24 * policy.keep_days)
        for record in records:
            if now - _as_utc(record.timestamp) > max_age:
                to_delete.add(record.id)

    # Count rule
    if policy.keep_count > 0 and len(records) > policy.keep_count:
        newest_first = sorted(records, key=_recency_key, reverse=True)
        for record in newest_first[policy.keep_count:]:
            to_delete.add(record.id)

    # Monthly rule
    if policy.keep_monthly > 0:
        by_month: Dict[str, List[BackupRecord]] = defaultdict(list)
        for record in records:
            by_month[_as_utc(record.timestamp).strftime('%Y-%m')].append(record)

        for month_records in by_month.values():
            if len(month_records) > 1:
                latest = max(month_records, key=_recency_key)
                for record in month_records:
                    if record.id != latest.id:
                        to_delete.add(record.id)

    return to_delete


@dataclass
class RetentionResult:
    """Outcome of one retention pass."""
    selected: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class RetentionManager:
    """
    Applies a retention policy to the backups stored under one storage path.

    Deletion failures are logged and reported in the result; they never
    abort the pass.
    """

    def __init__(self, store: MetadataStore, log: Optional[Callable[[str], None]] = None):
        """
        Initialize retention manager.

        Args:
            store: Metadata store of the job's storage path
            log: Optional callback receiving progress messages
        """
        self.store = store
        self._log_callback = log

    def enforce(self, policy: RetentionPolicy, now: Optional[datetime] = None,
                dry_run: bool = False) -> RetentionResult:
        """
        Delete every backup the policy no longer keeps.

        Args:
            policy: Retention policy
            now: Reference time for the age rule
            dry_run: If True, only report what would be deleted

        Returns:
            RetentionResult with selected, deleted and failed backup ids
        """
        self._log(
            f"Applying retention: {policy.keep_days} days, "
            f"{policy.keep_count} recent, {policy.keep_monthly} monthly"
        )

        records = self.store.list_records()
        selected = evaluate(records, policy, now=now)

        result = RetentionResult(
            selected=[r.id for r in records if r.id in selected]
        )

        if dry_run:
            for backup_id in result.selected:
                self._log(f"Would delete backup: {backup_id}")
            return result

        for backup_id in result.selected:
            try:
                self.store.delete(backup_id)
                result.deleted.append(backup_id)
                self._log(f"Deleted old backup: {backup_id}")
            except RetentionDeletionFailure as e:
                result.failed[backup_id] = str(e)
                logger.warning(str(e))
                self._log(f"Warning: {e}")

        self._log(
            f"Retention complete: {len(result.deleted)} deleted, {len(result.failed)} failed"
        )
        return result

    def _log(self, message: str):
        if self._log_callback:
            self._log_callback(message)
        else:
            logger.info(message)
