"""
Remote sync dispatchers for verified backup artifacts.

Supports:
- NullSync: Remote sync disabled
- S3Sync: Upload to AWS S3
- SFTPSync: Upload to a remote host over SSH/SFTP

Every dispatcher pushes to a structured key: {job_name}/{YYYY}/{MM}/{filename}.
Sync failures raise SyncError; the orchestrator logs them and never fails a
run because of them.
"""

import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import boto3
import paramiko
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from .compression import sanitize_name

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Raised when a remote sync operation fails."""
    pass


def build_remote_key(local_path: str, job_name: str, now: Optional[datetime] = None) -> str:
    """Generate the remote key: {job_name}/{YYYY}/{MM}/{filename}"""
    now = now or datetime.utcnow()
    filename = os.path.basename(local_path)
    return f"{sanitize_name(job_name)}/{now.year}/{now.month:02d}/{filename}"


class NullSync:
    """Dispatcher used when no remote backend is configured."""

    enabled = False

    def push(self, local_path: str, job_name: str, cancellation_check: Optional[Callable] = None) -> Optional[str]:
        return None

    def delete(self, remote_key: str):
        pass


class S3Sync:
    """
    Dispatcher uploading artifacts to AWS S3.

    Files larger than 100MB are sent with a multipart upload that can be
    cancelled between parts.
    """

    enabled = True
    MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
    CHUNK_SIZE = 10 * 1024 * 1024  # 10MB

    def __init__(self, bucket_name: str, region: str = 'us-east-1',
                 access_key: Optional[str] = None, secret_key: Optional[str] = None):
        """
        Initialize S3 dispatcher.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default: boto3 credential chain)
            secret_key: AWS secret access key (default: boto3 credential chain)
        """
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            raise SyncError(f"Failed to initialize S3 client: {e}")

    def push(self, local_path: str, job_name: str, cancellation_check: Optional[Callable] = None) -> str:
        """
        Upload an artifact to S3.

        Returns:
            S3 key of uploaded file

        Raises:
            SyncError: If upload fails
        """
        if not os.path.exists(local_path):
            raise SyncError(f"Local file not found: {local_path}")

        s3_key = build_remote_key(local_path, job_name)

        try:
            file_size = os.path.getsize(local_path)

            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key, cancellation_check)
            else:
                if cancellation_check:
                    cancellation_check()
                self._simple_upload(local_path, s3_key)

            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise SyncError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise SyncError(f"S3 upload failed: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str, cancellation_check: Optional[Callable] = None):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    # Check for cancellation before each chunk
                    if cancellation_check:
                        cancellation_check()

                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            # Abort multipart upload on error or cancellation
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def delete(self, remote_key: str):
        """
        Delete an object from S3.

        Raises:
            SyncError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=remote_key
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise SyncError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise SyncError(f"Failed to delete from S3: {e}")


class SFTPSync:
    """Dispatcher uploading artifacts to a remote directory over SFTP."""

    enabled = True

    def __init__(self, host: str, username: str, port: int = 22, password: Optional[str] = None,
                 private_key: Optional[str] = None, remote_dir: str = 'backups'):
        """
        Initialize SFTP dispatcher.

        Args:
            host: SSH hostname or IP
            username: SSH username
            port: SSH port (default 22)
            password: SSH password (optional if using key)
            private_key: Path to private key file (optional)
            remote_dir: Remote directory that receives {job_name}/{YYYY}/{MM}/...
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key
        self.remote_dir = remote_dir.rstrip('/') or '.'

    def _connect(self):
        """
        Establish SSH and SFTP connections.

        Raises:
            SyncError: If connection fails
        """
        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        # Use password or private key
        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise SyncError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise SyncError("Either password or private_key must be provided")

        try:
            ssh_client.connect(**connect_kwargs)
            return ssh_client, ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise SyncError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            ssh_client.close()
            raise SyncError(f"Failed to connect to {self.host}: {e}")

    def _makedirs(self, sftp_client, remote_path: str):
        """Create remote directories one level at a time (mkdir -p)."""
        current = ''
        for part in remote_path.split('/'):
            if not part:
                current = '/'
                continue
            current = f"{current.rstrip('/')}/{part}" if current else part
            try:
                sftp_client.stat(current)
            except FileNotFoundError:
                sftp_client.mkdir(current)

    def push(self, local_path: str, job_name: str, cancellation_check: Optional[Callable] = None) -> str:
        """
        Upload an artifact over SFTP.

        Returns:
            Remote key (relative to remote_dir)

        Raises:
            SyncError: If upload fails
        """
        if not os.path.exists(local_path):
            raise SyncError(f"Local file not found: {local_path}")

        remote_key = build_remote_key(local_path, job_name)
        remote_path = f"{self.remote_dir}/{remote_key}"

        if cancellation_check:
            cancellation_check()

        ssh_client, sftp_client = self._connect()
        try:
            self._makedirs(sftp_client, os.path.dirname(remote_path))
            sftp_client.put(local_path, remote_path)
            return remote_key
        except PermissionError:
            raise SyncError(f"Permission denied writing remote file: {remote_path}")
        except (paramiko.SSHException, OSError) as e:
            raise SyncError(f"Failed to upload {local_path}: {e}")
        finally:
            sftp_client.close()
            ssh_client.close()

    def delete(self, remote_key: str):
        """
        Delete a remote copy. Missing files are treated as already deleted.

        Raises:
            SyncError: If deletion fails
        """
        remote_path = f"{self.remote_dir}/{remote_key}"
        ssh_client, sftp_client = self._connect()
        try:
            sftp_client.remove(remote_path)
        except FileNotFoundError:
            logger.debug(f"Remote file {remote_path} already deleted")
        except (paramiko.SSHException, OSError) as e:
            raise SyncError(f"Failed to delete remote file {remote_path}: {e}")
        finally:
            sftp_client.close()
            ssh_client.close()


def create_sync_dispatcher(backend: str, config):
    """
    Factory function to create the configured sync dispatcher.

    Args:
        backend: 'none', 's3' or 'sftp'
        config: Mapping with the backend's settings (usually app.config)

    Returns:
        NullSync, S3Sync or SFTPSync instance

    Raises:
        ValueError: If backend is invalid
    """
    if backend == 'none':
        return NullSync()
    elif backend == 's3':
        return S3Sync(
            bucket_name=config.get('S3_BUCKET'),
            region=config.get('S3_REGION') or 'us-east-1',
            access_key=config.get('AWS_ACCESS_KEY_ID'),
            secret_key=config.get('AWS_SECRET_ACCESS_KEY')
        )
    elif backend == 'sftp':
        return SFTPSync(
            host=config.get('SFTP_HOST'),
            username=config.get('SFTP_USERNAME'),
            port=int(config.get('SFTP_PORT') or 22),
            password=config.get('SFTP_PASSWORD'),
            private_key=config.get('SFTP_PRIVATE_KEY'),
            remote_dir=config.get('SFTP_REMOTE_DIR') or 'backups'
        )
    else:
        raise ValueError(f"Invalid sync backend: {backend}")


def dispatch_detached(dispatcher, local_path: str, job_name: str,
                      on_complete: Callable[[Optional[str], Optional[Exception]], None]) -> threading.Thread:
    """
    Push an artifact in a background thread.

    on_complete(remote_key, error) is called from the background thread when
    the push finishes; exactly one of the arguments is set.
    """
    def _run():
        try:
            remote_key = dispatcher.push(local_path, job_name)
        except SyncError as e:
            on_complete(None, e)
            return
        on_complete(remote_key, None)

    thread = threading.Thread(target=_run, name=f"sync-{job_name}", daemon=True)
    thread.start()
    return thread
