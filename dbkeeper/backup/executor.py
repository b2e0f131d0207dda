"""
Backup executor - orchestrates one complete backup run.

Workflow:
1. Acquire the run lock (skip the run if another one holds it)
2. Discard temporaries left by an interrupted run
3. Dump all databases to a temporary file
4. Compress, commit and verify the artifact
5. Register the artifact and prune local artifacts by count
6. Upload the artifact to object storage (with retry)
7. Prune remote artifacts by age (only if the upload succeeded)
8. Release the lock, then classify and emit the run report (also when
   the run is interrupted by SIGTERM or Ctrl-C, which is then re-raised)

Dump and verification failures are fatal and end the run as 'failed' with no
new artifact registered. Upload and retention failures are recoverable and
end the run as 'degraded'.
"""

import logging
import os
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .compression import compress_and_verify, IntegrityError
from .dump import create_dump_producer, DumpError, DumpProducer
from .lock import RunLock
from .report import (
    RunReport, Reporter, utcnow,
    DUMP, VERIFY, LOCAL_PRUNE, UPLOAD, REMOTE_PRUNE,
    OK, FAILED, PARTIAL, SKIPPED,
)
from .retention import LocalRetentionManager, RemoteRetentionManager, RetentionError
from .storage import LocalStorage, S3Storage, StorageError, UploadError, PARTIAL_SUFFIX
from .types import ArtifactLocation, BackupArtifact


logger = logging.getLogger(__name__)

FATAL_ERRORS = (DumpError, IntegrityError, StorageError)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one run.

    Collaborators default to the real implementations built from settings
    and can be injected for testing.
    """

    def __init__(self, settings, producer: Optional[DumpProducer] = None,
                 local_storage: Optional[LocalStorage] = None,
                 remote: Optional[S3Storage] = None,
                 lock: Optional[RunLock] = None,
                 reporter: Optional[Reporter] = None,
                 clock: Callable[[], datetime] = utcnow):
        """
        Initialize backup executor.

        Args:
            settings: Validated BackupSettings for this run
            producer: Dump producer (default: from settings.credentials)
            local_storage: Local artifact directory handler
            remote: S3 handler for upload and remote retention
            lock: Run lock (default: settings.lock_file)
            reporter: Report emitter
            clock: Returns the current UTC time
        """
        self.settings = settings
        self.clock = clock
        self.producer = producer
        self.local_storage = local_storage
        self.remote = remote
        self.lock = lock or RunLock(settings.lock_file, stale_after=settings.lock_stale_seconds)
        self.reporter = reporter or Reporter()
        self.report = None
        self.dump_path = None
        self.artifact = None

    def execute(self) -> RunReport:
        """
        Execute one backup run.

        Returns:
            The emitted RunReport
        """
        self.report = RunReport(started_at=self.clock())

        try:
            acquired = self.lock.acquire()
        except OSError as e:
            self.report.fatal = True
            self.report.error = f"Cannot create lock file {self.lock.path}: {e}"
            self._log(f"Backup failed: {self.report.error}", logging.ERROR)
            self.report.finalize(self.clock())
            self.reporter.emit(self.report)
            return self.report

        if not acquired:
            logger.info("Another backup run holds %s; skipping this cycle", self.lock.path)
            self.report.skip(f"Lock {self.lock.path} held by another run; skipped")
            self.report.finalize(self.clock())
            self.reporter.emit(self.report)
            return self.report

        interrupted = None
        try:
            self._log("Starting backup run")
            self._execute_workflow()

        except FATAL_ERRORS as e:
            self.report.fatal = True
            self.report.error = str(e)
            self._log(f"Backup failed: {e}", logging.ERROR)

        except Exception as e:
            self.report.fatal = True
            self.report.error = f"Unexpected error: {e}"
            logger.exception("Unexpected error during backup run")
            self.report.add_log(f"Backup failed: {e}")

        except (KeyboardInterrupt, SystemExit) as e:
            interrupted = e
            self.report.fatal = True
            self.report.error = f"Interrupted ({type(e).__name__})"
            self._log(f"Backup failed: {self.report.error}", logging.ERROR)

        finally:
            self._cleanup()
            self._release_lock()

        status = self.report.finalize(self.clock())
        self._log(f"Backup run finished: {status}")
        self.reporter.emit(self.report)

        if interrupted is not None:
            raise interrupted
        return self.report

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        settings = self.settings

        if self.local_storage is None:
            self.local_storage = LocalStorage(settings.backup_dir)
        self.local_storage.discard_temporaries()

        # Dumping
        created_at = self._next_identity()
        self.dump_path = self.local_storage.temp_path(f"{created_at.strftime('%Y%m%dT%H%M%SZ')}.sql")
        self._run_dump()

        # Verifying
        self.artifact = self._run_verify(created_at)
        self.report.artifact = self.artifact

        # LocalPrune
        self._run_local_prune()

        # Uploading
        uploaded = self._run_upload()

        # RemotePrune
        if uploaded:
            self._run_remote_prune()
        else:
            self.report.record(REMOTE_PRUNE, SKIPPED, "upload failed; remote prune skipped this cycle")
            self._log("stage=remote_prune outcome=skipped reason=upload_failed", logging.WARNING)

    def _next_identity(self) -> datetime:
        """Creation timestamp for the new artifact, unique in the local directory."""
        created_at = self.clock().replace(microsecond=0)
        while self.local_storage.has_timestamp(created_at):
            created_at += timedelta(seconds=1)
        return created_at

    def _run_dump(self):
        producer = self.producer or create_dump_producer(
            self.settings.credentials, timeout=self.settings.dump_timeout
        )

        start = time.monotonic()
        try:
            size = producer.dump(self.dump_path)
        except DumpError as e:
            self.report.record(DUMP, FAILED, str(e), duration_seconds=time.monotonic() - start)
            raise

        self.report.record(DUMP, OK, bytes=size, duration_seconds=time.monotonic() - start)
        self._log(f"stage=dump outcome=ok bytes={size}")

    def _run_verify(self, created_at: datetime) -> BackupArtifact:
        fmt = self.settings.compression_format
        artifact = BackupArtifact(
            created_at=created_at,
            path=self.local_storage.artifact_path(created_at, fmt)
        )
        partial = self.local_storage.temp_path(artifact.name + PARTIAL_SUFFIX)

        start = time.monotonic()
        try:
            compress_and_verify(self.dump_path, artifact, partial, fmt)
        except (IntegrityError, StorageError) as e:
            self.report.record(VERIFY, FAILED, str(e), duration_seconds=time.monotonic() - start)
            raise

        self.report.record(VERIFY, OK, detail=artifact.checksum, bytes=artifact.size_bytes,
                           duration_seconds=time.monotonic() - start)
        self._log(f"stage=verify outcome=ok artifact={artifact.name} bytes={artifact.size_bytes}")
        return artifact

    def _run_local_prune(self):
        manager = LocalRetentionManager(self.local_storage)

        try:
            manager.register(self.artifact)
        except StorageError as e:
            self.report.record(LOCAL_PRUNE, FAILED, str(e))
            raise

        keep_count = self.settings.policy.local_keep_count
        try:
            result = manager.prune(keep_count)
        except RetentionError as e:
            self.report.record(LOCAL_PRUNE, PARTIAL, str(e))
            self._log(f"stage=local_prune outcome=partial deleted={len(e.result.deleted)} "
                      f"failed={len(e.result.failed)}", logging.WARNING)
            return

        self.report.record(LOCAL_PRUNE, OK, detail=f"deleted {len(result.deleted)}, keeping {keep_count}")
        self._log(f"stage=local_prune outcome=ok deleted={len(result.deleted)} keep={keep_count}")

    def _remote(self) -> S3Storage:
        if self.remote is None:
            settings = self.settings
            self.remote = S3Storage(
                settings.location,
                max_attempts=settings.upload_max_attempts,
                backoff_seconds=settings.upload_backoff_seconds,
                connect_timeout=settings.s3_connect_timeout,
                read_timeout=settings.s3_read_timeout
            )
        return self.remote

    def _run_upload(self) -> bool:
        start = time.monotonic()
        try:
            key = self._remote().upload(self.artifact)
        except UploadError as e:
            self.report.record(UPLOAD, FAILED, str(e), duration_seconds=time.monotonic() - start)
            self._log(f"stage=upload outcome=failed error={e}", logging.WARNING)
            return False

        self.artifact.remote_key = key
        self.artifact.location = ArtifactLocation.BOTH
        self.report.record(UPLOAD, OK, detail=key, bytes=self.artifact.size_bytes,
                           duration_seconds=time.monotonic() - start)
        self._log(f"stage=upload outcome=ok key={key} bytes={self.artifact.size_bytes}")
        return True

    def _run_remote_prune(self):
        max_age = self.settings.policy.remote_max_age_days
        manager = RemoteRetentionManager(self._remote())

        try:
            result = manager.prune(max_age, now=self.clock())
        except RetentionError as e:
            self.report.record(REMOTE_PRUNE, PARTIAL, str(e))
            self._log(f"stage=remote_prune outcome=partial deleted={len(e.result.deleted)} "
                      f"failed={len(e.result.failed)}", logging.WARNING)
            return

        self.report.record(REMOTE_PRUNE, OK, detail=f"deleted {len(result.deleted)} older than {max_age} days")
        self._log(f"stage=remote_prune outcome=ok deleted={len(result.deleted)} max_age_days={max_age}")

    def _release_lock(self):
        try:
            self.lock.release()
        except OSError as e:
            self._log(f"Warning: Failed to release lock {self.lock.path}: {e}", logging.WARNING)

    def _cleanup(self):
        """Remove the uncompressed temporary dump."""
        if self.dump_path and os.path.exists(self.dump_path):
            try:
                os.remove(self.dump_path)
            except OSError as e:
                self._log(f"Warning: Failed to remove temporary dump: {e}", logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to the run report and the logger.

        Args:
            message: Log message
            level: logging level
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.report.add_log(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_backup(settings, **collaborators) -> RunReport:
    """
    Run one backup with explicit settings.

    Args:
        settings: BackupSettings carrying the retention policy, database
            credentials and storage location
        **collaborators: Optional overrides passed to BackupExecutor

    Returns:
        The emitted RunReport
    """
    executor = BackupExecutor(settings, **collaborators)
    return executor.execute()


def execute_backup() -> RunReport:
    """
    Run one backup using the current Flask app's configuration.

    Raises:
        ConfigError: If the configuration is invalid
    """
    from flask import current_app
    from dbkeeper.config import BackupSettings

    settings = BackupSettings.from_config(current_app.config)
    return run_backup(settings)
