"""
Catalog of backup artifacts for one source path.

The catalog is the source of truth: an artifact file without a catalog entry
is an orphan. Every mutation is committed immediately, so a crash between
orchestrator steps leaves a consistent record behind. Nothing else in the
engine writes Artifact rows.

Status transitions:
    PENDING  -> VERIFIED | FAILED
    VERIFIED -> DELETED
"""

import logging
from typing import Callable, List, Optional

from gfskeeper import db
from gfskeeper.models import Artifact, ArtifactStatus, BackupJob, Kind, Tier
from .clock import utc_now

logger = logging.getLogger(__name__)


class CatalogError(Exception):
    """Raised on an illegal status transition or a broken incremental chain."""
    pass


ALLOWED_TRANSITIONS = {
    ArtifactStatus.PENDING: {ArtifactStatus.VERIFIED, ArtifactStatus.FAILED},
    ArtifactStatus.VERIFIED: {ArtifactStatus.DELETED},
    ArtifactStatus.FAILED: set(),
    ArtifactStatus.DELETED: set(),
}


class Catalog:
    """Accessor for the artifacts of one job's source path."""

    def __init__(self, job: BackupJob, clock: Optional[Callable] = None):
        self.job = job
        self.source_path = job.source_path
        self.clock = clock or utc_now

    def _query(self):
        return Artifact.query.filter_by(source_path=self.source_path)

    def entries(self) -> List[Artifact]:
        """All artifacts in insertion order."""
        return self._query().order_by(Artifact.id).all()

    def get(self, artifact_id: int) -> Artifact:
        artifact = self._query().filter_by(id=artifact_id).first()
        if artifact is None:
            raise CatalogError(f"Artifact {artifact_id} not in catalog for {self.source_path}")
        return artifact

    def by_status(self, status: ArtifactStatus) -> List[Artifact]:
        return self._query().filter_by(status=status.value).order_by(Artifact.id).all()

    def latest_verified(self) -> Optional[Artifact]:
        """Most recent VERIFIED artifact (newest created_at, then highest id)."""
        return self._query().filter_by(
            status=ArtifactStatus.VERIFIED.value
        ).order_by(Artifact.created_at.desc(), Artifact.id.desc()).first()

    def dependents_of(self, artifact_id: int) -> List[Artifact]:
        """VERIFIED artifacts built on top of artifact_id."""
        return self._query().filter_by(
            based_on_id=artifact_id,
            status=ArtifactStatus.VERIFIED.value
        ).order_by(Artifact.id).all()

    def add_pending(self, tier: Tier, kind: Kind, location: str, size_bytes: int,
                    based_on: Optional[Artifact] = None) -> Artifact:
        """
        Record a freshly produced artifact as PENDING.

        Raises:
            CatalogError: If based_on is missing, deleted or from another catalog
        """
        self._check_base(kind, based_on)

        artifact = Artifact(
            job_id=self.job.id,
            source_path=self.source_path,
            tier=Tier(tier).value,
            kind=Kind(kind).value,
            status=ArtifactStatus.PENDING.value,
            created_at=self.clock(),
            location=location,
            size_bytes=size_bytes,
            digest='',
            based_on_id=based_on.id if based_on else None
        )
        db.session.add(artifact)
        db.session.commit()
        logger.debug(f"Catalog: artifact {artifact.id} recorded PENDING at {location}")
        return artifact

    def add_failed(self, tier: Tier, kind: Kind, error_message: str,
                   based_on: Optional[Artifact] = None) -> Artifact:
        """Record a production failure: FAILED entry with no location or digest."""
        artifact = Artifact(
            job_id=self.job.id,
            source_path=self.source_path,
            tier=Tier(tier).value,
            kind=Kind(kind).value,
            status=ArtifactStatus.FAILED.value,
            created_at=self.clock(),
            digest='',
            based_on_id=based_on.id if based_on else None,
            error_message=error_message
        )
        db.session.add(artifact)
        db.session.commit()
        logger.debug(f"Catalog: artifact {artifact.id} recorded FAILED ({error_message})")
        return artifact

    def mark_verified(self, artifact: Artifact, digest: str) -> Artifact:
        if not digest:
            raise CatalogError(f"Artifact {artifact.id} cannot be VERIFIED without a digest")
        self._transition(artifact, ArtifactStatus.VERIFIED)
        artifact.digest = digest
        artifact.verified_at = self.clock()
        db.session.commit()
        return artifact

    def mark_failed(self, artifact: Artifact, error_message: str) -> Artifact:
        self._transition(artifact, ArtifactStatus.FAILED)
        artifact.error_message = error_message
        db.session.commit()
        return artifact

    def mark_deleted(self, artifact: Artifact) -> Artifact:
        self._transition(artifact, ArtifactStatus.DELETED)
        artifact.deleted_at = self.clock()
        db.session.commit()
        return artifact

    def record_sync(self, artifact: Artifact, remote_key: Optional[str]) -> Artifact:
        artifact.remote_key = remote_key
        db.session.commit()
        return artifact

    def recover_pending(self) -> List[Artifact]:
        """
        Fail artifacts left PENDING by a crashed run.

        Only call while holding the job lease: no other run can own them then.
        """
        recovered = []
        for artifact in self.by_status(ArtifactStatus.PENDING):
            self.mark_failed(artifact, "Run terminated before verification completed")
            logger.warning(f"Catalog: artifact {artifact.id} left PENDING by an earlier run, marked FAILED")
            recovered.append(artifact)
        return recovered

    def to_dict(self) -> dict:
        entries = self.entries()
        counts = {status.value: 0 for status in ArtifactStatus}
        for artifact in entries:
            counts[artifact.status] = counts.get(artifact.status, 0) + 1
        return {
            'job_id': self.job.id,
            'job_name': self.job.name,
            'source_path': self.source_path,
            'counts': counts,
            'artifacts': [artifact.to_dict() for artifact in entries]
        }

    def _transition(self, artifact: Artifact, new_status: ArtifactStatus):
        if artifact.source_path != self.source_path:
            raise CatalogError(f"Artifact {artifact.id} belongs to another catalog")

        current = ArtifactStatus(artifact.status)
        if new_status not in ALLOWED_TRANSITIONS[current]:
            raise CatalogError(
                f"Illegal status transition for artifact {artifact.id}: "
                f"{current.value} -> {new_status.value}"
            )
        artifact.status = new_status.value

    def _check_base(self, kind: Kind, based_on: Optional[Artifact]):
        if Kind(kind) == Kind.FULL:
            if based_on is not None:
                raise CatalogError("A FULL artifact cannot have a base")
            return

        if based_on is None:
            raise CatalogError("An INCREMENTAL artifact requires a base")
        if based_on.source_path != self.source_path:
            raise CatalogError(f"Base artifact {based_on.id} belongs to another catalog")
        if based_on.status == ArtifactStatus.DELETED.value:
            raise CatalogError(f"Base artifact {based_on.id} has been deleted")
