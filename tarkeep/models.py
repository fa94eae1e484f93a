from datetime import datetime, timezone

from tarkeep import db
from tarkeep.backup.types import (
    DirectoryEntry, JobConfig, RetentionPolicy, ScheduleConfig, STORAGE_LOCAL
)


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BackupJob(db.Model):
    """Backup job configuration"""
    __tablename__ = 'backup_jobs'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    storage_kind = db.Column(db.String(20), default=STORAGE_LOCAL, nullable=False)  # 'local' or 'remote'
    storage_path = db.Column(db.String(500))  # Overrides the default local path
    mount_point = db.Column(db.String(500))  # Remote storage mount point
    schedule_interval = db.Column(db.String(100))  # Duration, alias or cron expression
    schedule_enabled = db.Column(db.Boolean, default=False, nullable=False)
    skip_quiesce = db.Column(db.Boolean, default=False, nullable=False)
    skip_remote = db.Column(db.Boolean, default=False, nullable=False)
    retention_keep_days = db.Column(db.Integer, default=0, nullable=False)
    retention_keep_count = db.Column(db.Integer, default=0, nullable=False)
    retention_keep_monthly = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    # Relationships
    directories = db.relationship(
        'BackupDirectory',
        back_populates='job',
        cascade='all, delete-orphan',
        order_by='BackupDirectory.position'
    )
    history = db.relationship('BackupHistory', back_populates='job', cascade='all, delete-orphan', lazy='dynamic')

    def to_config(self) -> JobConfig:
        """Snapshot this row as an immutable JobConfig."""
        return JobConfig(
            id=self.id,
            name=self.name,
            description=self.description or '',
            enabled=bool(self.enabled),
            directories=tuple(
                DirectoryEntry(path=d.path, name=d.name, compression=bool(d.compression))
                for d in self.directories
            ),
            retention=RetentionPolicy(
                keep_days=self.retention_keep_days or 0,
                keep_count=self.retention_keep_count or 0,
                keep_monthly=self.retention_keep_monthly or 0
            ),
            storage_kind=self.storage_kind or STORAGE_LOCAL,
            storage_path=self.storage_path,
            mount_point=self.mount_point,
            schedule=ScheduleConfig(
                interval=self.schedule_interval or '',
                enabled=bool(self.schedule_enabled)
            ),
            skip_quiesce=bool(self.skip_quiesce),
            skip_remote=bool(self.skip_remote)
        )

    def __repr__(self):
        return f'<BackupJob {self.name} storage={self.storage_kind} enabled={self.enabled}>'


class BackupDirectory(db.Model):
    """Source directory of a backup job"""
    __tablename__ = 'backup_directories'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('backup_jobs.id'), nullable=False)
    position = db.Column(db.Integer, default=0, nullable=False)
    path = db.Column(db.String(1000), nullable=False)
    name = db.Column(db.String(255), nullable=False)  # Archive member and file name stem
    compression = db.Column(db.Boolean, default=True, nullable=False)

    # Relationship
    job = db.relationship('BackupJob', back_populates='directories')

    def __repr__(self):
        return f'<BackupDirectory {self.path} -> {self.name}>'


class BackupHistory(db.Model):
    """Backup execution history and logs"""
    __tablename__ = 'backup_history'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('backup_jobs.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, success, failed
    trigger = db.Column(db.String(20), default='manual', nullable=False)  # manual, scheduled
    started_at = db.Column(db.DateTime, default=_utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    backup_id = db.Column(db.String(255))
    total_size = db.Column(db.BigInteger)
    failed_step = db.Column(db.String(20))
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    # Relationship
    job = db.relationship('BackupJob', back_populates='history')

    def __repr__(self):
        return f'<BackupHistory job_id={self.job_id} status={self.status}>'
