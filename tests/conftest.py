"""
Shared pytest fixtures for GFSKeeper tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Backup job fixtures and catalog entries
- Mock fixtures for external services (S3, SSH)
- Temporary file fixtures
"""

import json
import os
import shutil
import tempfile
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from gfskeeper import create_app, db as _db
from gfskeeper.models import Artifact, BackupJob, BackupRun


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    temp_dir = tempfile.mkdtemp()

    app = create_app('testing')
    app.config.update({
        'SECRET_KEY': 'test-secret-key',
        'LOCAL_BACKUP_DIR': os.path.join(temp_dir, 'backups'),
    })
    os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)

    yield app

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app, db):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app, db):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates (under tmp_path/source):
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - test_file.pyc (should be excluded in tests)
    """
    source = tmp_path / 'source'
    source.mkdir()

    (source / 'test_file1.txt').write_text('Test content 1')
    (source / 'test_file2.log').write_text('Test log content')

    nested_dir = source / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    # File that should be excluded
    (source / 'test_file.pyc').write_bytes(b'compiled python')

    return source


@pytest.fixture(scope='function')
def backup_job(db, temp_files):
    """
    Create a backup job over the temp_files source directory.
    """
    job = BackupJob(
        name='test_backup',
        description='Test backup job',
        enabled=True,
        source_path=str(temp_files),
        exclude_patterns=json.dumps(['*.pyc', '__pycache__']),
        compression_format='tar.gz',
        schedule_cron='0 2 * * *',  # Daily at 2 AM
        incremental=True
    )
    db.session.add(job)
    db.session.commit()
    return job


@pytest.fixture(scope='function')
def other_job(db, tmp_path):
    """
    Create a second job with its own source path (independent catalog).
    """
    source = tmp_path / 'other_source'
    source.mkdir()
    (source / 'data.txt').write_text('other data')

    job = BackupJob(
        name='other_backup',
        enabled=True,
        source_path=str(source),
        compression_format='none',
        incremental=False
    )
    db.session.add(job)
    db.session.commit()
    return job


@pytest.fixture
def make_artifact(db, tmp_path):
    """
    Factory inserting catalog entries directly, with a real file for
    non-failed artifacts.

    Usage: make_artifact(job, 'DAILY', datetime(2024, 1, 2), kind='FULL',
                         status='VERIFIED', based_on=None)
    """
    counter = {'n': 0}

    def _make(job, tier, created_at, kind='FULL', status='VERIFIED', based_on=None):
        counter['n'] += 1
        location = None
        digest = ''
        size_bytes = None

        if status != 'FAILED':
            path = tmp_path / 'artifacts' / f"artifact_{counter['n']}.tar.gz"
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(f"artifact {counter['n']}".encode())
            location = str(path)
            size_bytes = path.stat().st_size
            if status in ('VERIFIED', 'DELETED'):
                digest = f"sha256:{counter['n']:064x}"

        artifact = Artifact(
            job_id=job.id,
            source_path=job.source_path,
            tier=tier,
            kind=kind,
            status=status,
            created_at=created_at,
            location=location,
            size_bytes=size_bytes,
            digest=digest,
            based_on_id=based_on.id if based_on else None
        )
        db.session.add(artifact)
        db.session.commit()
        return artifact

    return _make


@pytest.fixture(scope='function')
def backup_run(db, backup_job):
    """
    Create a finished backup run record for testing.
    """
    run = BackupRun(
        job_id=backup_job.id,
        status='done',
        state='DONE',
        tier='DAILY',
        kind='FULL',
        verification='VERIFIED',
        deleted_count=0,
        deferred_count=0,
        sync_result='skipped',
        exit_code=0,
        summary='job=test_backup result=DONE tier=DAILY kind=FULL verification=VERIFIED '
                'deleted=0 deferred=0 sync=skipped exit=0',
        started_at=datetime(2024, 1, 15, 12, 0, 0),
        completed_at=datetime(2024, 1, 15, 12, 0, 5),
        logs='[2024-01-15 12:00:00 UTC] Starting backup job: test_backup\n'
             '[2024-01-15 12:00:05 UTC] job=test_backup result=DONE'
    )
    db.session.add(run)
    db.session.commit()
    return run


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('gfskeeper.backup.sync.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('gfskeeper.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
