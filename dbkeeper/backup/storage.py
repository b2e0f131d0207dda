"""
Storage handlers for backup artifacts.

Supports:
- LocalStorage: the local directory of timestamp-named artifacts
- S3Storage: upload, listing and deletion in S3-compatible object storage

Artifact names are derived from the creation timestamp:
{YYYYmmddTHHMMSSZ}.sql.{ext}, stored locally as {base_path}/{name} and
remotely as {prefix}/{name}.
"""

import logging
import os
import re
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError, ConnectionError as BotoConnectionError, HTTPClientError
from tenacity import RetryError, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .types import ArtifactLocation, BackupArtifact, StorageLocation, VerificationStatus


logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y%m%dT%H%M%SZ'
EXTENSIONS = ('gz', 'bz2', 'xz')
CHECKSUM_SUFFIX = '.sha256'
PARTIAL_SUFFIX = '.partial'
TEMP_DIRNAME = '.tmp'

ARTIFACT_NAME_RE = re.compile(r'^(?P<stamp>\d{8}T\d{6}Z)\.sql\.(?P<ext>gz|bz2|xz)$')

# Multipart above 100MB, in 10MB parts
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024

TRANSIENT_ERROR_CODES = {
    'Throttling',
    'ThrottlingException',
    'ThrottledException',
    'RequestThrottled',
    'RequestLimitExceeded',
    'SlowDown',
    'RequestTimeout',
    'RequestTimeoutException',
    'InternalError',
    'ServiceUnavailable',
}


class StorageError(Exception):
    """Raised when the local filesystem rejects a write."""
    pass


class UploadError(Exception):
    """Raised when an artifact could not be transferred to object storage."""
    pass


class RemoteStorageError(Exception):
    """Raised when listing or deleting remote objects fails."""
    pass


def generate_artifact_filename(created_at: datetime, compression_format: str = 'gz') -> str:
    """
    Generate the artifact filename for a creation timestamp.

    Format: {YYYYmmddTHHMMSSZ}.sql.{ext}

    Args:
        created_at: UTC creation time
        compression_format: One of 'gz', 'bz2', 'xz'

    Returns:
        Filename (without path)
    """
    if compression_format not in EXTENSIONS:
        raise ValueError(f"Invalid compression format: {compression_format}")

    if created_at.tzinfo is not None:
        created_at = created_at.astimezone(timezone.utc)

    return f"{created_at.strftime(TIMESTAMP_FORMAT)}.sql.{compression_format}"


def parse_artifact_filename(filename: str) -> Optional[datetime]:
    """
    Parse the creation timestamp out of an artifact filename.

    Returns:
        Timezone-aware UTC datetime, or None if filename is not an artifact
    """
    match = ARTIFACT_NAME_RE.match(filename)
    if not match:
        return None

    try:
        stamp = datetime.strptime(match.group('stamp'), TIMESTAMP_FORMAT)
    except ValueError:
        return None

    return stamp.replace(tzinfo=timezone.utc)


def fsync_directory(path: str):
    """Flush directory entries (renames, unlinks) to disk."""
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_checksum_file(artifact_path: str, checksum: str):
    """
    Atomically write a sha256sum-format sidecar next to the artifact.

    The sidecar's presence is what marks an artifact verified on disk.
    """
    sidecar = artifact_path + CHECKSUM_SUFFIX
    tmp = sidecar + PARTIAL_SUFFIX

    with open(tmp, 'w') as f:
        f.write(f"{checksum}  {os.path.basename(artifact_path)}\n")
        f.flush()
        os.fsync(f.fileno())

    os.replace(tmp, sidecar)
    fsync_directory(os.path.dirname(artifact_path) or '.')


def read_checksum_file(artifact_path: str) -> Optional[str]:
    sidecar = artifact_path + CHECKSUM_SUFFIX
    try:
        with open(sidecar, 'r') as f:
            content = f.read().split()
    except FileNotFoundError:
        return None

    return content[0] if content else None


class LocalStorage:
    """
    Handler for the local backup directory.

    Committed artifacts live directly in base_path. In-flight dumps and
    partially written archives live in {base_path}/.tmp and are never
    treated as artifacts, so a restart can discard them.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Directory holding the artifacts
        """
        self.base_path = Path(base_path)
        self.temp_dir = self.base_path / TEMP_DIRNAME

        try:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def artifact_path(self, created_at: datetime, compression_format: str = 'gz') -> str:
        return str(self.base_path / generate_artifact_filename(created_at, compression_format))

    def temp_path(self, filename: str) -> str:
        return str(self.temp_dir / filename)

    def has_timestamp(self, created_at: datetime) -> bool:
        """Check whether any artifact (of any format) already uses this timestamp."""
        return any(
            (self.base_path / generate_artifact_filename(created_at, ext)).exists()
            for ext in EXTENSIONS
        )

    def list_artifacts(self) -> List[BackupArtifact]:
        """
        List committed artifacts, oldest first (ties broken by path).

        Artifacts with a checksum sidecar are reported verified; those without
        one are unverified and must not be counted or pruned.
        """
        artifacts = []

        try:
            entries = list(self.base_path.iterdir())
        except FileNotFoundError:
            return []
        except OSError as e:
            raise StorageError(f"Failed to list local artifacts: {e}")

        for entry in entries:
            created_at = parse_artifact_filename(entry.name)
            if created_at is None or not entry.is_file():
                continue

            checksum = read_checksum_file(str(entry))
            artifacts.append(BackupArtifact(
                created_at=created_at,
                path=str(entry),
                size_bytes=entry.stat().st_size,
                checksum=checksum,
                status=VerificationStatus.VERIFIED if checksum else VerificationStatus.UNVERIFIED,
                location=ArtifactLocation.LOCAL
            ))

        artifacts.sort(key=BackupArtifact.sort_key)
        return artifacts

    def delete(self, artifact: BackupArtifact):
        """
        Delete an artifact and its checksum sidecar.

        Raises:
            StorageError: If deletion fails
        """
        try:
            os.remove(artifact.path)
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {artifact.path}: {e}")
        except FileNotFoundError as e:
            raise StorageError(f"Artifact already gone: {artifact.path}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local artifact: {e}")

        try:
            os.remove(artifact.path + CHECKSUM_SUFFIX)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Deleted %s but not its checksum file: %s", artifact.name, e)

    def sync(self, artifact: BackupArtifact):
        """
        Confirm the artifact's bytes and directory entry are on disk.

        Raises:
            StorageError: If the file cannot be flushed
        """
        try:
            fd = os.open(artifact.path, os.O_RDONLY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
            fsync_directory(str(self.base_path))
        except OSError as e:
            raise StorageError(f"Failed to flush {artifact.path}: {e}")

    def discard_temporaries(self) -> int:
        """
        Remove leftovers of interrupted runs from the temporary directory.

        Returns:
            Number of entries removed
        """
        removed = 0
        for entry in self.temp_dir.iterdir():
            try:
                if entry.is_dir():
                    shutil.rmtree(entry)
                else:
                    entry.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Could not discard temporary %s: %s", entry, e)

        # Sidecars are written through a .partial file next to the artifact
        for entry in self.base_path.glob(f"*{CHECKSUM_SUFFIX}{PARTIAL_SUFFIX}"):
            try:
                entry.unlink()
                removed += 1
            except OSError as e:
                logger.warning("Could not discard temporary %s: %s", entry, e)

        if removed:
            logger.info("Discarded %d temporary file(s) from an interrupted run", removed)
        return removed


def is_transient_error(exc: BaseException) -> bool:
    """
    Decide whether an S3 failure is worth retrying.

    Connection problems, timeouts, throttling and server-side errors are
    transient; authorization and missing-bucket errors are not.
    """
    if isinstance(exc, (BotoConnectionError, HTTPClientError)):
        return True

    if isinstance(exc, ClientError):
        error = exc.response.get('Error', {})
        code = error.get('Code', '')
        status = exc.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        if code in TRANSIENT_ERROR_CODES:
            return True
        return status == 429 or status >= 500

    return False


class S3Storage:
    """
    Handler for artifacts in S3-compatible object storage.

    Uploads use a key derived from the artifact timestamp:
    {prefix}/{YYYYmmddTHHMMSSZ}.sql.{ext}
    so repeating an upload overwrites the same object.
    """

    def __init__(self, location: StorageLocation, access_key: Optional[str] = None,
                 secret_key: Optional[str] = None, max_attempts: int = 3,
                 backoff_seconds: float = 1.0, connect_timeout: float = 10,
                 read_timeout: float = 60, sleep: Callable[[float], None] = time.sleep,
                 client=None):
        """
        Initialize S3 storage handler.

        Args:
            location: Bucket, key prefix, region and optional endpoint
            access_key: AWS access key ID (default credential chain if None)
            secret_key: AWS secret access key
            max_attempts: Total attempts for transient failures
            backoff_seconds: First backoff delay; doubles on each retry
            connect_timeout: Socket connect timeout in seconds
            read_timeout: Socket read timeout in seconds
            sleep: Sleep function used between retries
            client: Pre-built boto3 S3 client
        """
        self.location = location
        self.bucket_name = location.bucket
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep

        if client is not None:
            self.s3_client = client
            return

        # Retries are driven by tenacity below, not by botocore
        boto_config = BotoConfig(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={'total_max_attempts': 1, 'mode': 'standard'}
        )

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=location.region,
                endpoint_url=location.endpoint_url,
                config=boto_config
            )
        except (BotoCoreError, ValueError) as e:
            raise UploadError(f"Failed to initialize S3 client: {e}")

    def key_for(self, artifact: BackupArtifact) -> str:
        return f"{self.location.key_prefix}{artifact.name}"

    def _retrying(self, operation: str) -> Retrying:
        def log_retry(retry_state):
            logger.warning(
                "S3 %s attempt %d/%d failed (%s); retrying in %.1fs",
                operation,
                retry_state.attempt_number,
                self.max_attempts,
                retry_state.outcome.exception(),
                retry_state.next_action.sleep
            )

        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, min=self.backoff_seconds),
            retry=retry_if_exception(is_transient_error),
            before_sleep=log_retry,
            sleep=self.sleep,
            reraise=True
        )

    def upload(self, artifact: BackupArtifact) -> str:
        """
        Upload a verified artifact.

        Args:
            artifact: Verified local artifact

        Returns:
            S3 key of the uploaded object

        Raises:
            UploadError: If the artifact is not verified, the file is missing,
                a non-transient error occurs, or retries are exhausted
        """
        if not artifact.is_verified:
            raise UploadError(f"Refusing to upload unverified artifact: {artifact.name}")

        if not os.path.exists(artifact.path):
            raise UploadError(f"Local file not found: {artifact.path}")

        s3_key = self.key_for(artifact)
        metadata = {
            'sha256': artifact.checksum or '',
            'created-at': artifact.created_at.strftime(TIMESTAMP_FORMAT)
        }
        file_size = os.path.getsize(artifact.path)

        try:
            for attempt in self._retrying('upload'):
                with attempt:
                    if file_size > MULTIPART_THRESHOLD:
                        self._multipart_upload(artifact.path, s3_key, metadata)
                    else:
                        self._simple_upload(artifact.path, s3_key, metadata)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise UploadError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, RetryError) as e:
            raise UploadError(f"S3 upload failed: {e}")
        except OSError as e:
            raise UploadError(f"Failed to read {artifact.path} for upload: {e}")

        logger.info("stage=upload outcome=ok key=%s bytes=%d", s3_key, file_size)
        return s3_key

    def _simple_upload(self, local_path: str, s3_key: str, metadata: Dict[str, str]):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f,
                Metadata=metadata
            )

    def _multipart_upload(self, local_path: str, s3_key: str, metadata: Dict[str, str]):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            Metadata=metadata
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
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
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (BotoCoreError, ClientError) as abort_error:
                logger.warning("Failed to abort multipart upload %s: %s", upload_id, abort_error)
            raise

    def delete(self, s3_key: str):
        """
        Delete an object from S3.

        Raises:
            RemoteStorageError: If deletion fails
        """
        try:
            for attempt in self._retrying('delete'):
                with attempt:
                    self.s3_client.delete_object(
                        Bucket=self.bucket_name,
                        Key=s3_key
                    )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise RemoteStorageError(f"S3 delete failed ({error_code}): {e}")
        except (BotoCoreError, RetryError) as e:
            raise RemoteStorageError(f"Failed to delete from S3: {e}")

    def list_objects(self) -> List[Dict[str, Any]]:
        """
        List objects directly under the configured prefix.

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys; empty
            when nothing has been uploaded yet

        Raises:
            RemoteStorageError: If listing fails
        """
        prefix = self.location.key_prefix

        try:
            for attempt in self._retrying('list'):
                with attempt:
                    objects = []
                    paginator = self.s3_client.get_paginator('list_objects_v2')

                    for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix, Delimiter='/'):
                        for obj in page.get('Contents', []):
                            objects.append({
                                'Key': obj['Key'],
                                'LastModified': obj['LastModified'],
                                'Size': obj['Size']
                            })

            return objects

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise RemoteStorageError(f"S3 list failed ({error_code}): {e}")
        except (BotoCoreError, RetryError) as e:
            raise RemoteStorageError(f"Failed to list S3 objects: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Raises:
            RemoteStorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchBucket'):
                raise RemoteStorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code in ('403', 'AccessDenied'):
                raise RemoteStorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise RemoteStorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise RemoteStorageError(f"Failed to connect to S3: {e}")
