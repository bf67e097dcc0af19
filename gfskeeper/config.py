import os
import tempfile


class Config:
    """Base configuration"""

    SECRET_KEY = os.environ.get('SECRET_KEY') or 'gfskeeper-api'

    # Database (catalog, run history, job leases)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/gfskeeper.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Archive output
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'

    # Retention defaults (per-job overrides live on BackupJob).
    # Raw strings; parsed and validated per run by backup.policy.load_run_config
    RETENTION_DAILY = os.environ.get('RETENTION_DAILY', '7')
    RETENTION_WEEKLY = os.environ.get('RETENTION_WEEKLY', '4')
    RETENTION_MONTHLY = os.environ.get('RETENTION_MONTHLY', '12')

    # Tier schedule
    WEEKLY_ANCHOR_DAY = os.environ.get('WEEKLY_ANCHOR_DAY', 'sunday')
    MONTHLY_WINS_TIE = os.environ.get('MONTHLY_WINS_TIE', 'true')
    FULL_BACKUP_TIERS = os.environ.get('FULL_BACKUP_TIERS', '')

    # Locking / run limits
    LOCK_LEASE_SECONDS = os.environ.get('LOCK_LEASE_SECONDS', '21600')  # 6 hours
    RUN_TIMEOUT_SECONDS = os.environ.get('RUN_TIMEOUT_SECONDS')

    # Remote sync
    SYNC_BACKEND = os.environ.get('SYNC_BACKEND', 'none')  # none, s3, sftp
    SYNC_DETACHED = os.environ.get('SYNC_DETACHED', 'false')
    SYNC_PRUNE_REMOTE = os.environ.get('SYNC_PRUNE_REMOTE', 'false')

    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION', 'us-east-1')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')

    SFTP_HOST = os.environ.get('SFTP_HOST')
    SFTP_PORT = os.environ.get('SFTP_PORT', '22')
    SFTP_USERNAME = os.environ.get('SFTP_USERNAME')
    SFTP_PASSWORD = os.environ.get('SFTP_PASSWORD')
    SFTP_PRIVATE_KEY = os.environ.get('SFTP_PRIVATE_KEY')
    SFTP_REMOTE_DIR = os.environ.get('SFTP_REMOTE_DIR', 'backups')

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_MAX_WORKERS = 3
    # Picks up jobs created from other processes (e.g. flask backup add-job)
    SCHEDULER_RESYNC_SECONDS = int(os.environ.get('SCHEDULER_RESYNC_SECONDS', '60'))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "gfskeeper.db")}'
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory catalog"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOCAL_BACKUP_DIR = os.path.join(tempfile.gettempdir(), 'gfskeeper_test_backups')

    # Pinned so tests do not depend on the caller's environment
    RETENTION_DAILY = '7'
    RETENTION_WEEKLY = '4'
    RETENTION_MONTHLY = '12'
    WEEKLY_ANCHOR_DAY = 'sunday'
    MONTHLY_WINS_TIE = 'true'
    FULL_BACKUP_TIERS = ''
    LOCK_LEASE_SECONDS = '21600'
    RUN_TIMEOUT_SECONDS = None
    SYNC_BACKEND = 'none'
    SYNC_DETACHED = 'false'
    SYNC_PRUNE_REMOTE = 'false'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
