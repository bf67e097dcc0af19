"""
Unit tests for the command line (gfskeeper/cli.py).
"""

import json
import os
from datetime import datetime
from unittest.mock import patch

from freezegun import freeze_time

from gfskeeper.backup.executor import execute_backup_job
from gfskeeper.models import Artifact, BackupJob, BackupRun


class TestAddJob:
    """Test flask backup add-job."""

    def test_add_job(self, runner, tmp_path):
        result = runner.invoke(args=[
            'backup', 'add-job', 'photos', str(tmp_path),
            '--cron', '0 3 * * *', '--format', 'tar.xz', '--full-only',
            '--daily', '5', '--exclude', '*.tmp', '--exclude', 'cache'
        ])

        assert result.exit_code == 0
        assert 'Created backup job photos' in result.output

        job = BackupJob.query.filter_by(name='photos').one()
        assert job.source_path == str(tmp_path)
        assert job.compression_format == 'tar.xz'
        assert job.incremental is False
        assert job.retention_daily == 5
        assert job.retention_weekly is None
        assert json.loads(job.exclude_patterns) == ['*.tmp', 'cache']

    @patch('gfskeeper.cli.resync_if_running', return_value=True)
    def test_add_job_resyncs_running_scheduler(self, mock_resync, runner, tmp_path):
        result = runner.invoke(args=['backup', 'add-job', 'photos', str(tmp_path), '--cron', '0 3 * * *'])

        assert result.exit_code == 0
        mock_resync.assert_called_once()
        assert 'Scheduled photos: 0 3 * * *' in result.output

    @patch('gfskeeper.cli.resync_if_running')
    def test_add_job_without_cron_skips_resync(self, mock_resync, runner, tmp_path):
        result = runner.invoke(args=['backup', 'add-job', 'photos', str(tmp_path)])

        assert result.exit_code == 0
        mock_resync.assert_not_called()

    def test_add_job_help_mentions_resync(self, runner):
        result = runner.invoke(args=['backup', 'add-job', '--help'])

        assert 'SCHEDULER_RESYNC_SECONDS' in result.output

    def test_duplicate_name(self, runner, backup_job, tmp_path):
        result = runner.invoke(args=['backup', 'add-job', 'test_backup', str(tmp_path / 'new')])

        assert result.exit_code == 2
        assert 'Job name already exists' in result.output

    def test_duplicate_source(self, runner, backup_job):
        result = runner.invoke(args=['backup', 'add-job', 'another', backup_job.source_path])

        assert result.exit_code == 2
        assert 'Source path already has a job' in result.output

    def test_invalid_cron(self, runner, tmp_path):
        result = runner.invoke(args=['backup', 'add-job', 'bad', str(tmp_path), '--cron', 'daily'])

        assert result.exit_code == 2
        assert BackupJob.query.count() == 0

    def test_keep_count_must_be_positive(self, runner, tmp_path):
        result = runner.invoke(args=['backup', 'add-job', 'bad', str(tmp_path), '--daily', '0'])

        assert result.exit_code != 0
        assert BackupJob.query.count() == 0


class TestRun:
    """Test flask backup run."""

    @freeze_time('2024-01-02 02:00:00')
    def test_run_prints_summary_and_exits_with_code(self, runner, backup_job):
        result = runner.invoke(args=['backup', 'run', 'test_backup'])

        assert result.exit_code == 0
        assert 'job=test_backup result=DONE tier=DAILY kind=FULL' in result.output
        assert Artifact.query.filter_by(job_id=backup_job.id, status='VERIFIED').count() == 1

    @freeze_time('2024-01-02 02:00:00')
    def test_run_disabled_job_manually(self, runner, backup_job, db):
        backup_job.enabled = False
        db.session.commit()

        result = runner.invoke(args=['backup', 'run', 'test_backup'])

        assert result.exit_code == 0

    @freeze_time('2024-01-02 02:00:00')
    def test_run_config_error_exit_code(self, runner, backup_job, app):
        app.config['RETENTION_WEEKLY'] = '0'

        result = runner.invoke(args=['backup', 'run', 'test_backup'])

        assert result.exit_code == 2
        assert 'result=FAILED' in result.output

    def test_run_unknown_job(self, runner):
        result = runner.invoke(args=['backup', 'run', 'missing'])

        assert result.exit_code == 2
        assert 'Backup job not found: missing' in result.output

    def test_run_rejects_zero_timeout(self, runner, backup_job):
        result = runner.invoke(args=['backup', 'run', 'test_backup', '--timeout', '0'])

        assert result.exit_code != 0
        assert Artifact.query.count() == 0

    def test_run_timeout_must_be_shorter_than_lease(self, runner, backup_job):
        result = runner.invoke(args=['backup', 'run', 'test_backup', '--timeout', '999999'])

        assert result.exit_code == 2
        assert 'result=FAILED' in result.output
        assert 'LOCK_LEASE_SECONDS' in BackupRun.query.one().error_message
        assert Artifact.query.count() == 0


class TestVerify:
    """Test flask backup verify."""

    @freeze_time('2024-01-02 02:00:00')
    def test_verify_clean_catalog(self, runner, backup_job):
        execute_backup_job(backup_job.id)

        result = runner.invoke(args=['backup', 'verify', 'test_backup'])

        assert result.exit_code == 0
        assert 'checked=1 ok=1 missing=0 mismatched=0' in result.output

    @freeze_time('2024-01-02 02:00:00')
    def test_verify_reports_tampered_artifact(self, runner, backup_job):
        execute_backup_job(backup_job.id)
        artifact = Artifact.query.filter_by(job_id=backup_job.id).one()
        with open(artifact.location, 'ab') as f:
            f.write(b'corruption')

        result = runner.invoke(args=['backup', 'verify', 'test_backup'])

        assert result.exit_code == 4
        assert f'MISMATCHED  artifact {artifact.id}' in result.output

    @freeze_time('2024-01-02 02:00:00')
    def test_verify_reports_missing_file(self, runner, backup_job, make_artifact):
        artifact = make_artifact(backup_job, 'DAILY', datetime(2024, 1, 1))
        os.remove(artifact.location)

        result = runner.invoke(args=['backup', 'verify', 'test_backup'])

        assert result.exit_code == 4
        assert f'MISSING     artifact {artifact.id}' in result.output


class TestListing:
    """Test flask backup jobs and flask backup catalog."""

    def test_jobs_empty(self, runner):
        result = runner.invoke(args=['backup', 'jobs'])

        assert result.exit_code == 0
        assert 'No backup jobs configured' in result.output

    def test_jobs_with_last_run(self, runner, backup_run):
        result = runner.invoke(args=['backup', 'jobs'])

        assert 'test_backup  [enabled]' in result.output
        assert 'cron=0 2 * * *' in result.output
        assert f'    last: {backup_run.summary}' in result.output

    def test_catalog(self, runner, backup_job, make_artifact):
        base = make_artifact(backup_job, 'WEEKLY', datetime(2024, 1, 7, 2, 0, 0))
        make_artifact(backup_job, 'DAILY', datetime(2024, 1, 8, 2, 0, 0), kind='INCREMENTAL', based_on=base)
        make_artifact(backup_job, 'DAILY', datetime(2024, 1, 9, 2, 0, 0), status='FAILED')

        result = runner.invoke(args=['backup', 'catalog', 'test_backup'])

        assert result.exit_code == 0
        assert '2024-01-07 02:00:00  WEEKLY' in result.output
        assert f'base={base.id}' in result.output
        assert '3 artifact(s)' in result.output

    def test_catalog_status_filter(self, runner, backup_job, make_artifact):
        make_artifact(backup_job, 'DAILY', datetime(2024, 1, 8))
        make_artifact(backup_job, 'DAILY', datetime(2024, 1, 9), status='FAILED')

        result = runner.invoke(args=['backup', 'catalog', 'test_backup', '--status', 'FAILED'])

        assert 'FAILED' in result.output
        assert '1 artifact(s)' in result.output
