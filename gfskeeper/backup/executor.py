"""
Backup orchestrator - sequences one run of a backup job.

State machine:
    IDLE -> LOCKED -> PRODUCING -> VERIFYING -> CATALOGING -> RETAINING -> SYNCING -> DONE
                         |            |
                         +-> FAILED <-+

Workflow:
1. Create BackupRun record (status: running)
2. Validate run configuration (ConfigError: fail before locking)
3. Acquire the job lease (LockBusy: run skipped, not a failure)
4. Decide tier and kind, produce the archive
5. Verify the digest and record the artifact VERIFIED
6. Enforce retention (delete files, then mark DELETED)
7. Push the artifact to the remote store (failures are reported, not fatal)
8. Release the lease and write the terminal status line
"""

import enum
import logging
import threading
import time
from typing import Callable, Optional

from flask import current_app

from gfskeeper import db
from gfskeeper.models import Artifact, BackupJob, BackupRun, Kind
from .catalog import Catalog
from .clock import utc_now
from .locking import LockManager, LockBusy
from .policy import load_run_config, ConfigError
from .producer import ArchiveProducer, TarArchiveProducer, ProductionError
from .retention import RetentionManager
from .sync import create_sync_dispatcher, dispatch_detached, SyncError
from .tiers import decide_tier, decide_kind
from .verifier import IntegrityVerifier, VerificationError

logger = logging.getLogger(__name__)


# Process exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_PRODUCTION_FAILED = 3
EXIT_VERIFICATION_FAILED = 4
EXIT_CANCELLED = 5


class RunCancelled(Exception):
    """Raised inside a run when the operator cancels it or its deadline passes."""
    pass


class RunState(str, enum.Enum):
    IDLE = 'IDLE'
    LOCKED = 'LOCKED'
    PRODUCING = 'PRODUCING'
    VERIFYING = 'VERIFYING'
    CATALOGING = 'CATALOGING'
    RETAINING = 'RETAINING'
    SYNCING = 'SYNCING'
    DONE = 'DONE'
    FAILED = 'FAILED'


TRANSITIONS = {
    # IDLE -> FAILED only for configuration errors, before the lease is taken
    RunState.IDLE: {RunState.LOCKED, RunState.DONE, RunState.FAILED},
    RunState.LOCKED: {RunState.PRODUCING},
    RunState.PRODUCING: {RunState.VERIFYING, RunState.FAILED},
    RunState.VERIFYING: {RunState.CATALOGING, RunState.FAILED},
    RunState.CATALOGING: {RunState.RETAINING},
    RunState.RETAINING: {RunState.SYNCING},
    RunState.SYNCING: {RunState.DONE},
    RunState.DONE: set(),
    RunState.FAILED: set(),
}


class BackupOrchestrator:
    """
    Runs one invocation of a backup job.

    Collaborators are injectable; defaults are built from the app config:
    TarArchiveProducer, IntegrityVerifier, the configured sync dispatcher and
    a database-backed LockManager.
    """

    def __init__(
        self,
        job: BackupJob,
        producer: Optional[ArchiveProducer] = None,
        verifier: Optional[IntegrityVerifier] = None,
        sync=None,
        lock_manager: Optional[LockManager] = None,
        clock: Optional[Callable] = None,
        config=None,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None
    ):
        """
        Initialize backup orchestrator.

        Args:
            job: BackupJob to run
            producer: Archive producer (default: TarArchiveProducer)
            verifier: Integrity verifier (default: SHA-256)
            sync: Remote sync dispatcher (default: from SYNC_BACKEND)
            lock_manager: Lease manager (default: LockManager with LOCK_LEASE_SECONDS)
            clock: Callable returning the current naive UTC datetime
            config: Configuration mapping (default: current_app.config)
            cancel_event: Set by an operator to abort the run
            timeout: Seconds before the run is cancelled (default: RUN_TIMEOUT_SECONDS)
        """
        self.job = job
        self.producer = producer
        self.verifier = verifier or IntegrityVerifier()
        self.sync = sync
        self.lock_manager = lock_manager
        self.clock = clock or utc_now
        self.config = config if config is not None else current_app.config
        self.cancel_event = cancel_event
        self.timeout = timeout

        self.state = RunState.IDLE
        self.run = None
        self.run_config = None
        self.catalog = None
        self.artifact = None
        self.logs = []
        self._log_flush_counter = 0
        self._deadline = None
        self.sync_thread = None

        # Outcome, reported in the terminal status line
        self.tier = None
        self.kind = None
        self.verification = None
        self.deleted = []
        self.deferred = []
        self.sync_result = None

    def execute(self) -> BackupRun:
        """
        Execute the backup job.

        Returns:
            BackupRun record with execution results and exit code

        Raises:
            Exception: Unexpected errors are recorded on the run, the lease is
                released, and the error is re-raised
        """
        self.run = BackupRun(
            job_id=self.job.id,
            status='running',
            state=self.state.value,
            started_at=self.clock()
        )
        db.session.add(self.run)
        db.session.commit()

        self._log(f"Starting backup job: {self.job.name}")

        # Configuration is validated before anything is locked or cataloged
        try:
            self.run_config = load_run_config(self.job, self.config)
            if self.timeout is not None and self.timeout >= self.run_config.lease_seconds:
                raise ConfigError(
                    f"Run timeout ({self.timeout}s) must be shorter than "
                    f"LOCK_LEASE_SECONDS ({self.run_config.lease_seconds}s)"
                )
        except ConfigError as e:
            self._transition(RunState.FAILED)
            return self._finish('failed', EXIT_CONFIG_ERROR, 'config', f"Configuration error: {e}")

        self._prepare()

        try:
            lease = self.lock_manager.acquire(self.job.name)
        except LockBusy as e:
            self._transition(RunState.DONE)
            self._log(f"Skipped: {e}")
            return self._finish('skipped', EXIT_OK)

        self._transition(RunState.LOCKED)
        if lease.reclaimed:
            self._log(f"Stale lock reclaimed for job {self.job.name}")

        try:
            self._execute_workflow()
            return self._finish('done', EXIT_OK)

        except ProductionError as e:
            self._transition(RunState.FAILED)
            return self._finish('failed', EXIT_PRODUCTION_FAILED, 'production', f"Production failed: {e}")

        except VerificationError as e:
            self._transition(RunState.FAILED)
            return self._finish('failed', EXIT_VERIFICATION_FAILED, 'verification', f"Verification failed: {e}")

        except RunCancelled as e:
            self._transition(RunState.FAILED)
            return self._finish('failed', EXIT_CANCELLED, 'cancelled', f"Run cancelled: {e}")

        except Exception as e:
            logger.exception(f"Unexpected error in backup job {self.job.name}")
            db.session.rollback()
            self.state = RunState.FAILED
            self._finish('failed', EXIT_ERROR, 'error', f"Unexpected error: {e}")
            raise

        finally:
            self.lock_manager.release(lease)

    def _prepare(self):
        """Build default collaborators from the validated run config."""
        if self.producer is None:
            self.producer = TarArchiveProducer(
                base_dir=self.config.get('LOCAL_BACKUP_DIR'),
                job_name=self.job.name,
                compression_format=self.job.compression_format,
                exclude_patterns=self.job.get_exclude_patterns(),
                clock=self.clock
            )

        if self.lock_manager is None:
            self.lock_manager = LockManager(self.run_config.lease_seconds, clock=self.clock)

        timeout = self.timeout if self.timeout is not None else self.run_config.timeout_seconds
        if timeout is not None:
            self._deadline = time.monotonic() + timeout

        self.catalog = Catalog(self.job, clock=self.clock)

    def _execute_workflow(self):
        """Execute the main backup workflow steps (lease held)."""
        schedule = self.run_config.schedule

        recovered = self.catalog.recover_pending()
        if recovered:
            self._log(f"Marked {len(recovered)} interrupted artifact(s) FAILED")

        # Step 1: Decide tier and kind
        self.tier = decide_tier(self.clock(), schedule)
        base = self.catalog.latest_verified()
        self.kind = decide_kind(base is not None, self.tier, schedule, self.job.incremental)
        if self.kind == Kind.FULL:
            base = None
        self._log(
            f"Tier {self.tier.value}, kind {self.kind.value}"
            + (f" (based on artifact {base.id})" if base else "")
        )

        # Step 2: Produce archive
        self._transition(RunState.PRODUCING)
        try:
            self._check_cancelled()
            produced = self.producer.produce(
                self.job.source_path,
                self.kind,
                base.location if base else None,
                self._check_cancelled
            )
        except ProductionError as e:
            failed = self.catalog.add_failed(self.tier, self.kind, str(e), based_on=base)
            self.run.artifact_id = failed.id
            raise
        except RunCancelled as e:
            failed = self.catalog.add_failed(self.tier, self.kind, f"Cancelled during production: {e}", based_on=base)
            self.run.artifact_id = failed.id
            raise

        self._log(f"Archive created: {produced.location} ({produced.size_bytes / 1024 / 1024:.2f} MB)")
        self._flush_logs_to_db()

        # Step 3: Verify
        self._transition(RunState.VERIFYING)
        self.artifact = self.catalog.add_pending(
            self.tier, self.kind, produced.location, produced.size_bytes, based_on=base
        )
        self.run.artifact_id = self.artifact.id

        try:
            digest = self.verifier.verify(
                produced.location,
                size_bytes=produced.size_bytes,
                expected_digest=produced.digest,
                cancellation_check=self._check_cancelled
            )
            self._check_cancelled()
        except VerificationError as e:
            self.catalog.mark_failed(self.artifact, str(e))
            self.verification = 'FAILED'
            raise
        except RunCancelled as e:
            self.catalog.mark_failed(self.artifact, f"Cancelled during verification: {e}")
            self.verification = 'FAILED'
            raise

        # Step 4: Record verified artifact
        self._transition(RunState.CATALOGING)
        self.catalog.mark_verified(self.artifact, digest)
        self.verification = 'VERIFIED'
        self._log(f"Artifact {self.artifact.id} verified ({digest})")
        self._flush_logs_to_db()

        # Step 5: Retention
        self._transition(RunState.RETAINING)
        self._enforce_retention()

        # Step 6: Remote sync
        self._transition(RunState.SYNCING)
        self._sync_artifact()

        self._transition(RunState.DONE)

    def _enforce_retention(self):
        sync = None
        if self.run_config.sync_prune_remote:
            try:
                sync = self._get_sync()
            except SyncError as e:
                self._log(f"Remote pruning disabled for this run: {e}", logging.WARNING)

        manager = RetentionManager(
            self.catalog,
            self.producer,
            sync=sync,
            prune_remote=self.run_config.sync_prune_remote
        )
        result = manager.enforce(self.run_config.policy)

        self.deleted = result['deleted']
        self.deferred = result['deferred']
        for message in manager.logs:
            self.logs.append(self._stamp(message))
        self._log(
            f"Retention: {len(self.deleted)} deleted, {len(self.deferred)} deferred, "
            f"{len(result['errors'])} errors"
        )

    def _get_sync(self):
        if self.sync is None:
            try:
                self.sync = create_sync_dispatcher(self.run_config.sync_backend, self.config)
            except ValueError as e:
                raise SyncError(str(e))
        return self.sync

    def _sync_artifact(self):
        try:
            dispatcher = self._get_sync()
        except SyncError as e:
            self.sync_result = 'failed'
            self._log(f"Remote sync unavailable: {e}", logging.WARNING)
            return

        if not getattr(dispatcher, 'enabled', True):
            self.sync_result = 'skipped'
            self._log("Remote sync not configured, skipping")
            return

        if self.run_config.sync_detached:
            self.sync_thread = dispatch_detached(
                dispatcher,
                self.artifact.location,
                self.job.name,
                self._detached_sync_callback()
            )
            self.sync_result = 'dispatched'
            self._log("Remote sync dispatched in background")
            return

        try:
            remote_key = dispatcher.push(self.artifact.location, self.job.name)
        except SyncError as e:
            self.sync_result = 'failed'
            self._log(f"Remote sync failed: {e}", logging.WARNING)
            return

        self.catalog.record_sync(self.artifact, remote_key)
        self.sync_result = 'ok'
        self._log(f"Synced to remote: {remote_key}")

    def _detached_sync_callback(self):
        app = current_app._get_current_object()
        artifact_id = self.artifact.id
        job_name = self.job.name

        def on_complete(remote_key, error):
            with app.app_context():
                if error is not None:
                    logger.warning(f"Background sync failed for job {job_name}, artifact {artifact_id}: {error}")
                    return
                artifact = db.session.get(Artifact, artifact_id)
                Catalog(artifact.job).record_sync(artifact, remote_key)
                logger.info(f"Background sync finished for job {job_name}: {remote_key}")

        return on_complete

    def _check_cancelled(self):
        """Raise RunCancelled if the operator cancelled the run or it timed out."""
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise RunCancelled("cancellation requested")
        if self._deadline is not None and time.monotonic() >= self._deadline:
            raise RunCancelled("run exceeded its timeout")

    def _transition(self, new_state: RunState):
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal run transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Job {self.job.name}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def status_line(self, result: str, exit_code: int) -> str:
        """One-line run summary for humans and monitoring scrapers."""
        return (
            f"job={self.job.name} result={result} "
            f"tier={self.tier.value if self.tier else '-'} "
            f"kind={self.kind.value if self.kind else '-'} "
            f"verification={self.verification or '-'} "
            f"deleted={len(self.deleted)} deferred={len(self.deferred)} "
            f"sync={self.sync_result or '-'} exit={exit_code}"
        )

    def _finish(self, status: str, exit_code: int, failure_stage: Optional[str] = None,
                error_message: Optional[str] = None) -> BackupRun:
        result = {'done': 'DONE', 'skipped': 'SKIPPED'}.get(status, 'FAILED')
        summary = self.status_line(result, exit_code)

        if error_message:
            self._log(error_message, logging.ERROR)

        level = logging.INFO if exit_code == EXIT_OK else logging.ERROR
        self._log(summary, level)

        self.run.status = status
        self.run.state = self.state.value
        self.run.failure_stage = failure_stage
        self.run.tier = self.tier.value if self.tier else None
        self.run.kind = self.kind.value if self.kind else None
        self.run.verification = self.verification
        self.run.deleted_count = len(self.deleted)
        self.run.deferred_count = len(self.deferred)
        self.run.sync_result = self.sync_result
        self.run.exit_code = exit_code
        self.run.summary = summary
        self.run.error_message = error_message
        self.run.completed_at = self.clock()
        self.run.logs = '\n'.join(self.logs)
        db.session.commit()

        return self.run

    def _stamp(self, message: str) -> str:
        timestamp = self.clock().strftime('%Y-%m-%d %H:%M:%S UTC')
        return f"[{timestamp}] {message}"

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        self.logs.append(self._stamp(message))
        logger.log(level, f"[{self.job.name}] {message}")

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.run is not None and self.run.id is not None:
            self.run.logs = '\n'.join(self.logs)
            db.session.commit()
            self._log_flush_counter = 0


def execute_backup_job(job_id: int, allow_disabled: bool = False, **kwargs) -> BackupRun:
    """
    Execute a backup job by ID.

    Args:
        job_id: ID of BackupJob to execute
        allow_disabled: If True, allow execution of disabled jobs (for manual triggers)
        **kwargs: Passed to BackupOrchestrator (collaborators, cancel_event, timeout)

    Returns:
        BackupRun record with execution results

    Raises:
        ValueError: If job not found, or if disabled and not allowed
    """
    job = db.session.get(BackupJob, job_id)

    if not job:
        raise ValueError(f"Backup job not found: {job_id}")

    if not job.enabled and not allow_disabled:
        raise ValueError(f"Backup job is disabled: {job.name}")

    return BackupOrchestrator(job, **kwargs).execute()


def execute_backup_job_by_name(job_name: str, allow_disabled: bool = False, **kwargs) -> BackupRun:
    """
    Execute a backup job by name.

    Raises:
        ValueError: If job not found, or if disabled and not allowed
    """
    job = BackupJob.query.filter_by(name=job_name).first()

    if not job:
        raise ValueError(f"Backup job not found: {job_name}")

    if not job.enabled and not allow_disabled:
        raise ValueError(f"Backup job is disabled: {job_name}")

    return BackupOrchestrator(job, **kwargs).execute()


def verify_catalog(job: BackupJob, verifier: Optional[IntegrityVerifier] = None) -> dict:
    """
    Recompute the digest of every VERIFIED artifact of a job.

    Read-only: mismatches are reported and logged, no status changes.

    Returns:
        Dict: {'checked': int, 'ok': [ids], 'missing': [ids], 'mismatched': [ids]}
    """
    verifier = verifier or IntegrityVerifier()
    catalog = Catalog(job)
    report = {'checked': 0, 'ok': [], 'missing': [], 'mismatched': []}

    for artifact in catalog.entries():
        if artifact.status != 'VERIFIED':
            continue
        report['checked'] += 1

        try:
            digest = verifier.digest(artifact.location)
        except VerificationError as e:
            logger.error(f"Catalog audit: artifact {artifact.id} unreadable: {e}")
            report['missing'].append(artifact.id)
            continue

        if digest != artifact.digest:
            logger.error(
                f"Catalog audit: artifact {artifact.id} digest mismatch "
                f"(stored {artifact.digest}, found {digest})"
            )
            report['mismatched'].append(artifact.id)
        else:
            report['ok'].append(artifact.id)

    logger.info(
        f"Catalog audit for {job.name}: {report['checked']} checked, {len(report['ok'])} ok, "
        f"{len(report['missing'])} missing, {len(report['mismatched'])} mismatched"
    )
    return report
