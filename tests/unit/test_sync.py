"""
Unit tests for remote sync dispatchers (gfskeeper/backup/sync.py).
"""

from datetime import datetime
from unittest.mock import MagicMock

import boto3
import paramiko
import pytest
from freezegun import freeze_time

from gfskeeper.backup.sync import (
    build_remote_key, create_sync_dispatcher, dispatch_detached,
    NullSync, S3Sync, SFTPSync, SyncError
)


@pytest.fixture
def artifact_file(tmp_path):
    path = tmp_path / 'test_backup-20240115_020000-full.tar.gz'
    path.write_bytes(b'archive-bytes' * 10)
    return path


class TestBuildRemoteKey:
    """Test remote key layout."""

    def test_key_layout(self):
        key = build_remote_key('/backups/x/a.tar.gz', 'My Job', now=datetime(2024, 3, 9))
        assert key == 'My_Job/2024/03/a.tar.gz'

    @freeze_time('2024-11-02 10:00:00')
    def test_defaults_to_utc_now(self):
        assert build_remote_key('/b/a.tar.gz', 'job') == 'job/2024/11/a.tar.gz'


class TestNullSync:
    """Test disabled sync."""

    def test_disabled(self):
        sync = NullSync()
        assert sync.enabled is False
        assert sync.push('/b/a.tar.gz', 'job') is None
        sync.delete('key')


class TestS3Sync:
    """Test S3 dispatcher against moto."""

    def test_push_simple(self, mock_s3, artifact_file):
        sync = S3Sync('test-bucket', 'us-east-1')

        key = sync.push(str(artifact_file), 'test_backup')

        assert key.startswith('test_backup/')
        assert key.endswith(artifact_file.name)
        body = mock_s3.Object('test-bucket', key).get()['Body'].read()
        assert body == artifact_file.read_bytes()

    def test_push_multipart(self, mock_s3, artifact_file):
        sync = S3Sync('test-bucket', 'us-east-1')
        sync.MULTIPART_THRESHOLD = 10

        key = sync.push(str(artifact_file), 'test_backup')

        body = mock_s3.Object('test-bucket', key).get()['Body'].read()
        assert body == artifact_file.read_bytes()

    def test_multipart_cancellation_aborts_upload(self, mock_s3, artifact_file):
        class Stop(Exception):
            pass

        def cancel():
            raise Stop()

        sync = S3Sync('test-bucket', 'us-east-1')
        sync.MULTIPART_THRESHOLD = 10

        with pytest.raises(Stop):
            sync.push(str(artifact_file), 'test_backup', cancellation_check=cancel)

        client = boto3.client('s3', region_name='us-east-1')
        assert client.list_multipart_uploads(Bucket='test-bucket').get('Uploads', []) == []

    def test_push_missing_bucket(self, mock_s3, artifact_file):
        sync = S3Sync('no-such-bucket', 'us-east-1')
        with pytest.raises(SyncError, match='NoSuchBucket'):
            sync.push(str(artifact_file), 'test_backup')

    def test_push_missing_file(self, mock_s3, tmp_path):
        sync = S3Sync('test-bucket', 'us-east-1')
        with pytest.raises(SyncError, match='Local file not found'):
            sync.push(str(tmp_path / 'missing.tar.gz'), 'test_backup')

    def test_delete(self, mock_s3, artifact_file):
        sync = S3Sync('test-bucket', 'us-east-1')
        key = sync.push(str(artifact_file), 'test_backup')

        sync.delete(key)

        client = boto3.client('s3', region_name='us-east-1')
        assert client.list_objects_v2(Bucket='test-bucket').get('KeyCount') == 0


class TestSFTPSync:
    """Test SFTP dispatcher with a mocked paramiko client."""

    def test_push_creates_directories_and_uploads(self, mock_ssh_client, artifact_file):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.stat.side_effect = FileNotFoundError()
        sync = SFTPSync('backup.example.com', 'backup', password='secret', remote_dir='/srv/backups')

        key = sync.push(str(artifact_file), 'test_backup')

        mock_ssh_client.return_value.connect.assert_called_once_with(
            hostname='backup.example.com', port=22, username='backup', timeout=30, password='secret'
        )
        sftp.put.assert_called_once_with(str(artifact_file), f"/srv/backups/{key}")
        created = [c.args[0] for c in sftp.mkdir.call_args_list]
        assert created[0] == '/srv'
        assert created[-1] == f"/srv/backups/{key.rsplit('/', 1)[0]}"
        sftp.close.assert_called_once()
        mock_ssh_client.return_value.close.assert_called_once()

    def test_push_with_private_key(self, mock_ssh_client, artifact_file, tmp_path):
        key_file = tmp_path / 'id_ed25519'
        key_file.write_text('key')
        sync = SFTPSync('host', 'backup', private_key=str(key_file))

        sync.push(str(artifact_file), 'test_backup')

        kwargs = mock_ssh_client.return_value.connect.call_args.kwargs
        assert kwargs['key_filename'] == str(key_file)

    def test_missing_credentials(self, mock_ssh_client, artifact_file):
        sync = SFTPSync('host', 'backup')
        with pytest.raises(SyncError, match='password or private_key'):
            sync.push(str(artifact_file), 'test_backup')

    def test_authentication_failure(self, mock_ssh_client, artifact_file):
        mock_ssh_client.return_value.connect.side_effect = paramiko.AuthenticationException('denied')
        sync = SFTPSync('host', 'backup', password='wrong')

        with pytest.raises(SyncError, match='authentication failed'):
            sync.push(str(artifact_file), 'test_backup')

    def test_upload_failure(self, mock_ssh_client, artifact_file):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.put.side_effect = OSError('disk full')
        sync = SFTPSync('host', 'backup', password='secret')

        with pytest.raises(SyncError, match='disk full'):
            sync.push(str(artifact_file), 'test_backup')

    def test_delete_missing_is_ok(self, mock_ssh_client):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.remove.side_effect = FileNotFoundError()
        sync = SFTPSync('host', 'backup', password='secret')

        sync.delete('test_backup/2024/01/a.tar.gz')

        sftp.remove.assert_called_once_with('backups/test_backup/2024/01/a.tar.gz')


class TestFactory:
    """Test create_sync_dispatcher."""

    def test_none(self):
        assert isinstance(create_sync_dispatcher('none', {}), NullSync)

    def test_s3(self, mock_s3):
        sync = create_sync_dispatcher('s3', {'S3_BUCKET': 'test-bucket', 'S3_REGION': 'us-east-1'})
        assert isinstance(sync, S3Sync)
        assert sync.bucket_name == 'test-bucket'

    def test_sftp(self):
        sync = create_sync_dispatcher('sftp', {
            'SFTP_HOST': 'host', 'SFTP_PORT': '2222', 'SFTP_USERNAME': 'u', 'SFTP_PASSWORD': 'p'
        })
        assert isinstance(sync, SFTPSync)
        assert sync.port == 2222
        assert sync.remote_dir == 'backups'

    def test_invalid(self):
        with pytest.raises(ValueError, match='Invalid sync backend'):
            create_sync_dispatcher('ftp', {})


class TestDispatchDetached:
    """Test background sync dispatch."""

    def test_success_callback(self):
        dispatcher = MagicMock()
        dispatcher.push.return_value = 'job/2024/01/a.tar.gz'
        results = []

        thread = dispatch_detached(dispatcher, '/b/a.tar.gz', 'job', lambda key, err: results.append((key, err)))
        thread.join(timeout=5)

        assert results == [('job/2024/01/a.tar.gz', None)]

    def test_failure_callback(self):
        dispatcher = MagicMock()
        error = SyncError('unreachable')
        dispatcher.push.side_effect = error
        results = []

        thread = dispatch_detached(dispatcher, '/b/a.tar.gz', 'job', lambda key, err: results.append((key, err)))
        thread.join(timeout=5)

        assert results == [(None, error)]
