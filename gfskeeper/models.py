import enum
import json
from datetime import datetime
from gfskeeper import db


class Tier(str, enum.Enum):
    """Retention bucket an artifact counts against"""
    DAILY = 'DAILY'
    WEEKLY = 'WEEKLY'
    MONTHLY = 'MONTHLY'


class Kind(str, enum.Enum):
    """How an artifact's bytes were produced"""
    FULL = 'FULL'
    INCREMENTAL = 'INCREMENTAL'


class ArtifactStatus(str, enum.Enum):
    PENDING = 'PENDING'
    VERIFIED = 'VERIFIED'
    FAILED = 'FAILED'
    DELETED = 'DELETED'


class BackupJob(db.Model):
    """Backup job configuration"""
    __tablename__ = 'backup_jobs'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)  # Job identity, lock key
    description = db.Column(db.Text)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    source_path = db.Column(db.String(1024), unique=True, nullable=False)  # One catalog per source
    exclude_patterns = db.Column(db.Text)  # JSON list of glob patterns
    compression_format = db.Column(db.String(20), default='tar.gz', nullable=False)  # tar.gz, tar.bz2, tar.xz, none
    schedule_cron = db.Column(db.String(100))  # Cron expression
    incremental = db.Column(db.Boolean, default=True, nullable=False)  # False = always FULL
    retention_daily = db.Column(db.Integer)  # null = app default
    retention_weekly = db.Column(db.Integer)
    retention_monthly = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    artifacts = db.relationship('Artifact', back_populates='job', cascade='all, delete-orphan', lazy='dynamic')
    runs = db.relationship('BackupRun', back_populates='job', cascade='all, delete-orphan', lazy='dynamic')

    def get_exclude_patterns(self):
        if not self.exclude_patterns:
            return []
        return json.loads(self.exclude_patterns)

    def __repr__(self):
        return f'<BackupJob {self.name} source={self.source_path} enabled={self.enabled}>'


class Artifact(db.Model):
    """One produced backup unit. Rows are the catalog; files on disk are subordinate."""
    __tablename__ = 'artifacts'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('backup_jobs.id'), nullable=False)
    source_path = db.Column(db.String(1024), nullable=False, index=True)
    tier = db.Column(db.String(20), nullable=False)
    kind = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ArtifactStatus.PENDING.value)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    location = db.Column(db.String(1024))  # null when production failed
    size_bytes = db.Column(db.BigInteger)
    digest = db.Column(db.String(128), default='', nullable=False)
    based_on_id = db.Column(db.Integer, db.ForeignKey('artifacts.id'), nullable=True)
    error_message = db.Column(db.Text)
    remote_key = db.Column(db.String(1024))
    verified_at = db.Column(db.DateTime)
    deleted_at = db.Column(db.DateTime)

    # Relationships
    job = db.relationship('BackupJob', back_populates='artifacts')
    based_on = db.relationship('Artifact', remote_side=[id])

    def to_dict(self):
        return {
            'id': self.id,
            'job_id': self.job_id,
            'source_path': self.source_path,
            'tier': self.tier,
            'kind': self.kind,
            'status': self.status,
            'created_at': self.created_at.isoformat(),
            'location': self.location,
            'size_bytes': self.size_bytes,
            'digest': self.digest,
            'based_on_id': self.based_on_id,
            'error_message': self.error_message,
            'remote_key': self.remote_key,
            'verified_at': self.verified_at.isoformat() if self.verified_at else None,
            'deleted_at': self.deleted_at.isoformat() if self.deleted_at else None,
        }

    def __repr__(self):
        return f'<Artifact {self.id} {self.tier}/{self.kind} status={self.status}>'


class BackupRun(db.Model):
    """Backup execution record and logs"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('backup_jobs.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, done, skipped, failed
    state = db.Column(db.String(20))  # Final orchestrator state
    failure_stage = db.Column(db.String(20))  # config, production, verification, cancelled
    tier = db.Column(db.String(20))
    kind = db.Column(db.String(20))
    artifact_id = db.Column(db.Integer, db.ForeignKey('artifacts.id'))
    verification = db.Column(db.String(20))
    deleted_count = db.Column(db.Integer, default=0, nullable=False)
    deferred_count = db.Column(db.Integer, default=0, nullable=False)
    sync_result = db.Column(db.String(20))
    exit_code = db.Column(db.Integer)
    summary = db.Column(db.Text)  # Terminal status line
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)

    # Relationships
    job = db.relationship('BackupJob', back_populates='runs')
    artifact = db.relationship('Artifact')

    def __repr__(self):
        return f'<BackupRun job_id={self.job_id} status={self.status}>'


class JobLock(db.Model):
    """Lease marker; at most one row per job name"""
    __tablename__ = 'job_locks'

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(255), unique=True, nullable=False)
    token = db.Column(db.String(64), nullable=False)
    acquired_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    hostname = db.Column(db.String(255))
    pid = db.Column(db.Integer)

    def __repr__(self):
        return f'<JobLock {self.job_name} expires_at={self.expires_at}>'
