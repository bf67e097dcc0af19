"""
Backup module for GFSKeeper.

This module handles the core backup functionality including:
- Tier and kind decisions (grandfather-father-son calendar)
- Archive production and integrity verification
- The artifact catalog and job leases
- Retention policy enforcement
- Remote sync (S3 and SFTP)
- Execution orchestration
"""

from .executor import BackupOrchestrator, execute_backup_job, verify_catalog
from .catalog import Catalog
from .locking import LockManager
from .producer import TarArchiveProducer
from .verifier import IntegrityVerifier
from .retention import RetentionManager, evaluate
from .sync import S3Sync, SFTPSync, NullSync

__all__ = [
    'BackupOrchestrator',
    'execute_backup_job',
    'verify_catalog',
    'Catalog',
    'LockManager',
    'TarArchiveProducer',
    'IntegrityVerifier',
    'RetentionManager',
    'evaluate',
    'S3Sync',
    'SFTPSync',
    'NullSync'
]
