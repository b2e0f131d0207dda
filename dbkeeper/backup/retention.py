"""
Retention policy enforcement for backups.

Local and remote retention are independent: local artifacts are pruned by
count, remote artifacts by age, and neither decision looks at the other
side's state. Only verified artifacts are ever deleted.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from .storage import LocalStorage, S3Storage, StorageError, RemoteStorageError, parse_artifact_filename
from .types import BackupArtifact


logger = logging.getLogger(__name__)


@dataclass
class PruneResult:
    deleted: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.errors


class RetentionError(Exception):
    """Raised when one or more prune deletions (or the listing) failed."""

    def __init__(self, message: str, result: PruneResult):
        super().__init__(message)
        self.result = result


class LocalRetentionManager:
    """
    Tracks verified artifacts in the local backup directory and keeps the
    newest local_keep_count of them.
    """

    def __init__(self, storage: LocalStorage):
        self.storage = storage
        self.tracked = [a for a in storage.list_artifacts() if a.is_verified]

    def register(self, artifact: BackupArtifact):
        """
        Add a freshly verified artifact to the tracked set.

        The artifact's write is flushed to disk before it is tracked, so a
        crash after this point cannot lose it to a prune.

        Raises:
            ValueError: If the artifact is not verified
            StorageError: If the flush fails
        """
        if not artifact.is_verified:
            raise ValueError(f"Cannot register unverified artifact: {artifact.name}")

        self.storage.sync(artifact)

        self.tracked = [a for a in self.tracked if a.path != artifact.path]
        self.tracked.append(artifact)
        self.tracked.sort(key=BackupArtifact.sort_key)

        logger.info("stage=local_prune outcome=registered artifact=%s bytes=%d",
                    artifact.name, artifact.size_bytes)

    def candidates(self, keep_count: int) -> List[BackupArtifact]:
        """Verified artifacts beyond keep_count, oldest first."""
        verified = [a for a in self.tracked if a.is_verified]
        excess = len(verified) - keep_count
        return verified[:excess] if excess > 0 else []

    def prune(self, keep_count: int) -> PruneResult:
        """
        Delete the oldest verified artifacts beyond keep_count.

        A failed deletion is logged and the pass continues with the
        remaining candidates.

        Raises:
            RetentionError: If any deletion failed
        """
        if keep_count < 1:
            raise ValueError("keep_count must be at least 1")

        result = PruneResult()

        for artifact in self.candidates(keep_count):
            try:
                self.storage.delete(artifact)
            except StorageError as e:
                logger.warning("stage=local_prune outcome=failed artifact=%s error=%s", artifact.name, e)
                result.failed.append(artifact.name)
                result.errors.append(str(e))
                continue

            self.tracked.remove(artifact)
            result.deleted.append(artifact.name)
            logger.info("stage=local_prune outcome=deleted artifact=%s bytes=%d",
                        artifact.name, artifact.size_bytes)

        if not result.ok:
            raise RetentionError(
                f"Failed to delete {len(result.failed)} local artifact(s): {', '.join(result.failed)}",
                result
            )

        return result


class RemoteRetentionManager:
    """Deletes remote artifacts older than remote_max_age_days."""

    def __init__(self, remote: S3Storage):
        self.remote = remote

    def prune(self, max_age_days: int, now: Optional[datetime] = None) -> PruneResult:
        """
        Delete remote artifacts whose key timestamp is older than max_age_days.

        Keys under the prefix that are not artifact names are left alone. An
        empty listing is a no-op.

        Raises:
            RetentionError: If listing failed or any deletion failed
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=max_age_days)
        result = PruneResult()

        try:
            objects = self.remote.list_objects()
        except RemoteStorageError as e:
            logger.warning("stage=remote_prune outcome=failed error=%s", e)
            result.errors.append(str(e))
            raise RetentionError(f"Failed to list remote artifacts: {e}", result)

        if not objects:
            logger.info("stage=remote_prune outcome=ok deleted=0 (no remote artifacts)")
            return result

        for obj in objects:
            created_at = parse_artifact_filename(os.path.basename(obj['Key']))
            if created_at is None:
                logger.debug("Ignoring non-artifact key %s", obj['Key'])
                continue

            if created_at >= cutoff:
                continue

            try:
                self.remote.delete(obj['Key'])
            except RemoteStorageError as e:
                logger.warning("stage=remote_prune outcome=failed key=%s error=%s", obj['Key'], e)
                result.failed.append(obj['Key'])
                result.errors.append(str(e))
                continue

            result.deleted.append(obj['Key'])
            logger.info("stage=remote_prune outcome=deleted key=%s bytes=%d", obj['Key'], obj['Size'])

        if not result.ok:
            raise RetentionError(
                f"Failed to delete {len(result.failed)} remote artifact(s): {', '.join(result.failed)}",
                result
            )

        return result
