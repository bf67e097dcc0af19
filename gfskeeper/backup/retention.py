"""
Retention policy enforcement for backups.

evaluate() is a pure function over catalog entries: it partitions VERIFIED
artifacts by tier, keeps the newest `keep_count` of each tier and marks the
rest for deletion. Tiers are evaluated independently; an artifact belongs to
exactly one tier.

A delete candidate that a live incremental is built on is deferred instead
of deleted and becomes a candidate again on a later run. FAILED artifacts are
never selected; they are left for operator review.

RetentionManager applies a plan: the archive file is removed first and the
catalog entry is marked DELETED only after that succeeded.
"""

import logging
from typing import Dict, Iterable, List, Set

from gfskeeper.models import Artifact, ArtifactStatus, Tier
from .catalog import Catalog
from .policy import RetentionPolicy
from .producer import ArchiveProducer, ProductionError
from .sync import SyncError

logger = logging.getLogger(__name__)


class RetentionDeferral:
    """A delete candidate skipped this cycle because live artifacts depend on it."""

    def __init__(self, artifact_id: int, dependent_ids: List[int]):
        self.artifact_id = artifact_id
        self.dependent_ids = list(dependent_ids)

    def __eq__(self, other):
        return (
            isinstance(other, RetentionDeferral)
            and self.artifact_id == other.artifact_id
            and self.dependent_ids == other.dependent_ids
        )

    def __repr__(self):
        return f'<RetentionDeferral {self.artifact_id} needed by {self.dependent_ids}>'


class RetentionPlan:
    """Advisory output of evaluate()."""

    def __init__(self, keep: Set[int], delete: Set[int], deferred: List[RetentionDeferral]):
        self.keep = keep
        self.delete = delete
        self.deferred = deferred

    @property
    def deferred_ids(self) -> Set[int]:
        return {d.artifact_id for d in self.deferred}

    def __repr__(self):
        return (
            f'<RetentionPlan keep={sorted(self.keep)} delete={sorted(self.delete)} '
            f'deferred={sorted(self.deferred_ids)}>'
        )


def evaluate(entries: Iterable[Artifact], policy: RetentionPolicy) -> RetentionPlan:
    """
    Decide which artifacts to keep and which to delete.

    Args:
        entries: Catalog entries (any status)
        policy: Per-tier keep counts

    Returns:
        RetentionPlan with keep / delete id sets and deferrals
    """
    entries = list(entries)
    verified = [a for a in entries if a.status == ArtifactStatus.VERIFIED.value]

    # Live dependents: VERIFIED artifacts pointing at a base
    dependents: Dict[int, List[int]] = {}
    for artifact in verified:
        if artifact.based_on_id is not None:
            dependents.setdefault(artifact.based_on_id, []).append(artifact.id)

    by_tier: Dict[str, List[Artifact]] = {}
    for artifact in verified:
        by_tier.setdefault(artifact.tier, []).append(artifact)

    keep: Set[int] = set()
    delete: Set[int] = set()
    deferred: List[RetentionDeferral] = []

    for tier_value, tier_entries in by_tier.items():
        tier_entries.sort(key=lambda a: (a.created_at, a.id), reverse=True)

        keep_count = policy.keep_count(Tier(tier_value))
        if keep_count is None:
            keep.update(a.id for a in tier_entries)
            continue

        keep.update(a.id for a in tier_entries[:keep_count])

        for artifact in tier_entries[keep_count:]:
            if artifact.id in dependents:
                deferred.append(RetentionDeferral(artifact.id, sorted(dependents[artifact.id])))
            else:
                delete.add(artifact.id)

    deferred.sort(key=lambda d: d.artifact_id)
    return RetentionPlan(keep, delete, deferred)


class RetentionManager:
    """
    Applies a retention plan to a catalog.

    Deletion order per artifact: remove the file, then mark DELETED. A failed
    file removal leaves the artifact VERIFIED so it is retried next run.
    """

    def __init__(self, catalog: Catalog, producer: ArchiveProducer, sync=None,
                 prune_remote: bool = False):
        """
        Initialize retention manager.

        Args:
            catalog: Catalog of the job being run
            producer: Producer whose delete() removes archive files
            sync: Optional remote sync dispatcher for pruning remote copies
            prune_remote: Also delete remote copies of deleted artifacts
        """
        self.catalog = catalog
        self.producer = producer
        self.sync = sync
        self.prune_remote = prune_remote
        self.logs = []

    def enforce(self, policy: RetentionPolicy) -> dict:
        """Evaluate the policy against the catalog and apply the result."""
        plan = evaluate(self.catalog.entries(), policy)
        return self.apply(plan)

    def apply(self, plan: RetentionPlan) -> dict:
        """
        Apply a retention plan.

        Returns:
            Dict with summary: {'deleted': [ids], 'deferred': [ids], 'errors': [str]}
        """
        result = {
            'deleted': [],
            'deferred': [d.artifact_id for d in plan.deferred],
            'errors': []
        }

        for deferral in plan.deferred:
            self._log(
                logging.INFO,
                f"Retention deferred for artifact {deferral.artifact_id}: "
                f"incremental artifacts {deferral.dependent_ids} depend on it"
            )

        for artifact_id in sorted(plan.delete):
            artifact = self.catalog.get(artifact_id)

            # Re-check the chain against the live catalog before touching files
            dependents = self.catalog.dependents_of(artifact_id)
            if dependents:
                result['deferred'].append(artifact_id)
                self._log(
                    logging.INFO,
                    f"Retention deferred for artifact {artifact_id}: "
                    f"incremental artifacts {[d.id for d in dependents]} depend on it"
                )
                continue

            try:
                if artifact.location:
                    self.producer.delete(artifact.location)
            except ProductionError as e:
                error_msg = f"Failed to delete artifact {artifact_id} ({artifact.location}): {e}"
                self._log(logging.ERROR, error_msg)
                result['errors'].append(error_msg)
                continue

            self.catalog.mark_deleted(artifact)
            result['deleted'].append(artifact_id)
            self._log(logging.INFO, f"Deleted {artifact.tier} artifact {artifact_id}: {artifact.location}")

            if self.prune_remote and self.sync is not None and artifact.remote_key:
                self._prune_remote(artifact)

        return result

    def _prune_remote(self, artifact: Artifact):
        try:
            self.sync.delete(artifact.remote_key)
            self._log(logging.INFO, f"Deleted remote copy {artifact.remote_key}")
        except SyncError as e:
            self._log(logging.WARNING, f"Failed to delete remote copy {artifact.remote_key}: {e}")

    def _log(self, level: int, message: str):
        logger.log(level, message)
        self.logs.append(message)
