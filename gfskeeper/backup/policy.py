"""
Run configuration loading and validation.

Everything a run consumes from configuration (retention counts, weekly anchor,
tie-break, lease duration, timeout, sync settings) is parsed here once per run.
Malformed values raise ConfigError before any lock is taken.
"""

from typing import Dict, Optional

from gfskeeper.models import BackupJob, Tier
from .tiers import Schedule, parse_weekday


class ConfigError(ValueError):
    """Raised when run configuration is missing or malformed."""
    pass


TRUE_VALUES = ('true', '1', 'yes', 'on')
FALSE_VALUES = ('false', '0', 'no', 'off', '')

SYNC_BACKENDS = ('none', 's3', 'sftp')


class RetentionPolicy:
    """
    Per-tier keep counts, immutable for the duration of a run.

    A tier with no configured count keeps every artifact.
    """

    def __init__(self, keep_counts: Dict[Tier, int]):
        self._keep_counts = dict(keep_counts)

    def keep_count(self, tier: Tier) -> Optional[int]:
        return self._keep_counts.get(tier)

    def __contains__(self, tier):
        return tier in self._keep_counts

    def as_dict(self) -> Dict[str, int]:
        return {tier.value: count for tier, count in self._keep_counts.items()}

    def __repr__(self):
        return f'<RetentionPolicy {self.as_dict()}>'


class RunConfig:
    """Validated configuration for one orchestrator run."""

    def __init__(self, policy: RetentionPolicy, schedule: Schedule, lease_seconds: int,
                 timeout_seconds: Optional[float] = None, sync_backend: str = 'none',
                 sync_detached: bool = False, sync_prune_remote: bool = False):
        self.policy = policy
        self.schedule = schedule
        self.lease_seconds = lease_seconds
        self.timeout_seconds = timeout_seconds
        self.sync_backend = sync_backend
        self.sync_detached = sync_detached
        self.sync_prune_remote = sync_prune_remote


def parse_bool(name: str, value) -> bool:
    if isinstance(value, bool):
        return value
    raw = str(value if value is not None else '').strip().lower()
    if raw in TRUE_VALUES:
        return True
    if raw in FALSE_VALUES:
        return False
    raise ConfigError(f"{name} must be a boolean, got {value!r}")


def parse_positive_int(name: str, value) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer >= 1, got {value!r}")
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be an integer >= 1, got {value!r}")
    if number < 1:
        raise ConfigError(f"{name} must be an integer >= 1, got {value!r}")
    return number


def parse_tiers(name: str, value) -> frozenset:
    tiers = set()
    for part in str(value or '').split(','):
        part = part.strip().upper()
        if not part:
            continue
        try:
            tiers.add(Tier(part))
        except ValueError:
            raise ConfigError(f"{name} contains unknown tier {part!r}")
    return frozenset(tiers)


def load_retention_policy(job: BackupJob, config) -> RetentionPolicy:
    """
    Build the retention policy for a job.

    Job overrides win over the application defaults.

    Raises:
        ConfigError: If any keep count is not an integer >= 1
    """
    sources = {
        Tier.DAILY: (job.retention_daily, 'RETENTION_DAILY'),
        Tier.WEEKLY: (job.retention_weekly, 'RETENTION_WEEKLY'),
        Tier.MONTHLY: (job.retention_monthly, 'RETENTION_MONTHLY'),
    }

    keep_counts = {}
    for tier, (override, key) in sources.items():
        value = override if override is not None else config.get(key)
        if value is None or str(value).strip() == '':
            continue
        keep_counts[tier] = parse_positive_int(key, value)

    return RetentionPolicy(keep_counts)


def load_run_config(job: BackupJob, config) -> RunConfig:
    """
    Validate and assemble the configuration for one run.

    Args:
        job: BackupJob being run
        config: Mapping of configuration values (usually app.config)

    Returns:
        RunConfig

    Raises:
        ConfigError: If any value is malformed
    """
    if not job.source_path:
        raise ConfigError(f"Job {job.name} has no source path")

    if job.compression_format not in ('tar.gz', 'tar.bz2', 'tar.xz', 'none'):
        raise ConfigError(f"Job {job.name} has invalid compression format {job.compression_format!r}")

    try:
        job.get_exclude_patterns()
    except ValueError as e:
        raise ConfigError(f"Job {job.name} has malformed exclude patterns: {e}")

    policy = load_retention_policy(job, config)

    try:
        weekly_anchor = parse_weekday(config.get('WEEKLY_ANCHOR_DAY', 'sunday'))
    except ValueError as e:
        raise ConfigError(f"WEEKLY_ANCHOR_DAY: {e}")

    schedule = Schedule(
        weekly_anchor=weekly_anchor,
        monthly_wins=parse_bool('MONTHLY_WINS_TIE', config.get('MONTHLY_WINS_TIE', 'true')),
        full_tiers=parse_tiers('FULL_BACKUP_TIERS', config.get('FULL_BACKUP_TIERS'))
    )

    lease_seconds = parse_positive_int('LOCK_LEASE_SECONDS', config.get('LOCK_LEASE_SECONDS', '21600'))

    timeout_seconds = None
    raw_timeout = config.get('RUN_TIMEOUT_SECONDS')
    if raw_timeout is not None and str(raw_timeout).strip() != '':
        timeout_seconds = parse_positive_int('RUN_TIMEOUT_SECONDS', raw_timeout)
        if timeout_seconds >= lease_seconds:
            raise ConfigError("RUN_TIMEOUT_SECONDS must be shorter than LOCK_LEASE_SECONDS")

    sync_backend = str(config.get('SYNC_BACKEND') or 'none').strip().lower()
    if sync_backend not in SYNC_BACKENDS:
        raise ConfigError(f"SYNC_BACKEND must be one of {list(SYNC_BACKENDS)}, got {sync_backend!r}")

    if sync_backend == 's3' and not config.get('S3_BUCKET'):
        raise ConfigError("SYNC_BACKEND=s3 requires S3_BUCKET")
    if sync_backend == 'sftp' and not config.get('SFTP_HOST'):
        raise ConfigError("SYNC_BACKEND=sftp requires SFTP_HOST")
    if sync_backend == 'sftp':
        parse_positive_int('SFTP_PORT', config.get('SFTP_PORT') or 22)

    return RunConfig(
        policy=policy,
        schedule=schedule,
        lease_seconds=lease_seconds,
        timeout_seconds=timeout_seconds,
        sync_backend=sync_backend,
        sync_detached=parse_bool('SYNC_DETACHED', config.get('SYNC_DETACHED', 'false')),
        sync_prune_remote=parse_bool('SYNC_PRUNE_REMOTE', config.get('SYNC_PRUNE_REMOTE', 'false'))
    )
