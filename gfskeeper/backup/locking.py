"""
Single-instance execution for backup jobs.

A lease is a row in the job_locks table keyed by job name. Inserting the row
is the atomic test-and-set; an expired row (holder crashed without releasing)
is reclaimed with a conditional update.
"""

import logging
import os
import socket
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import IntegrityError

from gfskeeper import db
from gfskeeper.models import JobLock
from .clock import utc_now

logger = logging.getLogger(__name__)


class LockBusy(Exception):
    """Raised when another run already holds the lease for a job."""

    def __init__(self, job_name: str, expires_at: Optional[datetime] = None):
        self.job_name = job_name
        self.expires_at = expires_at
        message = f"Job {job_name} is already running"
        if expires_at:
            message += f" (lease expires {expires_at.isoformat()})"
        super().__init__(message)


class Lease:
    """Time-bounded exclusive right to run a job."""

    def __init__(self, job_name: str, token: str, acquired_at: datetime, expires_at: datetime,
                 reclaimed: bool = False):
        self.job_name = job_name
        self.token = token
        self.acquired_at = acquired_at
        self.expires_at = expires_at
        self.reclaimed = reclaimed

    def __repr__(self):
        return f'<Lease {self.job_name} expires_at={self.expires_at.isoformat()}>'


class LockManager:
    """
    Acquires and releases job leases.

    acquire() never waits: a held, unexpired lease raises LockBusy immediately.
    """

    def __init__(self, lease_seconds: int = 21600, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize lock manager.

        Args:
            lease_seconds: Lease duration; keep well above worst-case job duration
            clock: Callable returning the current naive UTC datetime
        """
        self.lease_seconds = lease_seconds
        self.clock = clock or utc_now

    def acquire(self, job_name: str) -> Lease:
        """
        Acquire the lease for a job.

        Returns:
            Lease for the caller

        Raises:
            LockBusy: If an unexpired lease is held by someone else
        """
        now = self.clock()
        expires_at = now + timedelta(seconds=self.lease_seconds)
        token = uuid.uuid4().hex

        lock = JobLock(
            job_name=job_name,
            token=token,
            acquired_at=now,
            expires_at=expires_at,
            hostname=socket.gethostname(),
            pid=os.getpid()
        )
        db.session.add(lock)
        try:
            db.session.commit()
            logger.debug(f"Lease acquired for job {job_name} (expires {expires_at.isoformat()})")
            return Lease(job_name, token, now, expires_at)
        except IntegrityError:
            db.session.rollback()

        # A lease row exists: reclaim it only if it has expired
        reclaimed = JobLock.query.filter(
            JobLock.job_name == job_name,
            JobLock.expires_at <= now
        ).update({
            'token': token,
            'acquired_at': now,
            'expires_at': expires_at,
            'hostname': socket.gethostname(),
            'pid': os.getpid()
        }, synchronize_session=False)
        db.session.commit()

        if reclaimed == 1:
            logger.warning(f"Stale lock reclaimed for job {job_name}")
            return Lease(job_name, token, now, expires_at, reclaimed=True)

        current = JobLock.query.filter_by(job_name=job_name).first()
        raise LockBusy(job_name, current.expires_at if current else None)

    def release(self, lease: Lease) -> bool:
        """
        Release a lease.

        Only the holder's own token is removed, so a run whose lease was
        reclaimed cannot release the new holder's lease.

        Returns:
            True if the lease row was removed
        """
        removed = JobLock.query.filter_by(
            job_name=lease.job_name,
            token=lease.token
        ).delete(synchronize_session=False)
        db.session.commit()

        if removed:
            logger.debug(f"Lease released for job {lease.job_name}")
        else:
            logger.warning(f"Lease for job {lease.job_name} was no longer held at release")
        return bool(removed)

    def is_locked(self, job_name: str) -> bool:
        lock = JobLock.query.filter_by(job_name=job_name).first()
        return lock is not None and lock.expires_at > self.clock()

    def list_locks(self) -> List[dict]:
        now = self.clock()
        return [
            {
                'job_name': lock.job_name,
                'acquired_at': lock.acquired_at.isoformat(),
                'expires_at': lock.expires_at.isoformat(),
                'hostname': lock.hostname,
                'pid': lock.pid,
                'stale': lock.expires_at <= now
            }
            for lock in JobLock.query.order_by(JobLock.acquired_at).all()
        ]
