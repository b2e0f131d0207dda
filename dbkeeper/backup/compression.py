"""
Compression and integrity verification for dump files.

Supports multiple formats:
- gz: gzip
- bz2: bzip2
- xz: LZMA

The compressed bytes are hashed while they are written. The committed file is
then re-read and must hash to the same value before the artifact is marked
verified, which catches truncation from a full disk or an interrupted write.
"""

import bz2
import gzip
import hashlib
import logging
import lzma
import os
from typing import Callable, Dict

from .storage import StorageError, write_checksum_file, fsync_directory
from .types import BackupArtifact, VerificationStatus


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class IntegrityError(Exception):
    """Raised when a written artifact does not match its checksum."""
    pass


class _HashingWriter:
    """File wrapper that hashes and counts every byte written through it."""

    def __init__(self, raw):
        self.raw = raw
        self.digest = hashlib.sha256()
        self.bytes_written = 0

    def write(self, data):
        self.raw.write(data)
        self.digest.update(data)
        self.bytes_written += len(data)
        return len(data)

    def flush(self):
        self.raw.flush()

    def hexdigest(self) -> str:
        return self.digest.hexdigest()


def _open_gzip(fileobj):
    return gzip.GzipFile(fileobj=fileobj, mode='wb', compresslevel=6)


def _open_bz2(fileobj):
    return bz2.BZ2File(fileobj, mode='wb')


def _open_xz(fileobj):
    return lzma.LZMAFile(fileobj, mode='wb')


COMPRESSORS: Dict[str, Callable] = {
    'gz': _open_gzip,
    'bz2': _open_bz2,
    'xz': _open_xz,
}


def sha256_file(path: str) -> str:
    """Return the hex SHA-256 of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def compress_and_verify(source_path: str, artifact: BackupArtifact, partial_path: str,
                        compression_format: str = 'gz') -> BackupArtifact:
    """
    Compress a dump into its artifact path and verify the written file.

    Args:
        source_path: Uncompressed dump in the temporary directory
        artifact: Unverified artifact whose path is the final destination
        partial_path: Temporary path for the in-progress compressed file
        compression_format: One of 'gz', 'bz2', 'xz'

    Returns:
        The same artifact, now verified with checksum and size set

    Raises:
        IntegrityError: If the committed file does not match the checksum
            computed during compression
        StorageError: If the local filesystem rejects a write
        ValueError: If compression_format is invalid
    """
    if compression_format not in COMPRESSORS:
        raise ValueError(
            f"Invalid compression format: {compression_format}. "
            f"Valid options: {list(COMPRESSORS.keys())}"
        )

    opener = COMPRESSORS[compression_format]

    try:
        with open(source_path, 'rb') as src, open(partial_path, 'wb') as raw:
            writer = _HashingWriter(raw)
            with opener(writer) as compressed:
                for chunk in iter(lambda: src.read(CHUNK_SIZE), b''):
                    compressed.write(chunk)
            raw.flush()
            os.fsync(raw.fileno())

        expected_checksum = writer.hexdigest()
        expected_size = writer.bytes_written

        os.replace(partial_path, artifact.path)
        fsync_directory(os.path.dirname(artifact.path))
    except OSError as e:
        _remove_quietly(partial_path)
        _remove_quietly(artifact.path)
        raise StorageError(f"Failed to write artifact {artifact.name}: {e}")

    try:
        actual_size = os.path.getsize(artifact.path)
        actual_checksum = sha256_file(artifact.path)
    except OSError as e:
        _remove_quietly(artifact.path)
        raise StorageError(f"Failed to read back artifact {artifact.name}: {e}")

    if actual_size != expected_size or actual_checksum != expected_checksum:
        artifact.status = VerificationStatus.CORRUPT
        _remove_quietly(artifact.path)
        raise IntegrityError(
            f"Checksum mismatch for {artifact.name}: "
            f"expected {expected_checksum} ({expected_size} bytes), "
            f"got {actual_checksum} ({actual_size} bytes)"
        )

    try:
        write_checksum_file(artifact.path, actual_checksum)
    except OSError as e:
        _remove_quietly(artifact.path)
        raise StorageError(f"Failed to record checksum for {artifact.name}: {e}")

    artifact.checksum = actual_checksum
    artifact.size_bytes = actual_size
    artifact.status = VerificationStatus.VERIFIED

    logger.info("stage=verify outcome=ok artifact=%s bytes=%d sha256=%s",
                artifact.name, actual_size, actual_checksum)
    return artifact


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)
