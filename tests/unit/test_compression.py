"""
Unit tests for compression and verification (dbkeeper/backup/compression.py).

Tests compress_and_verify for all supported formats, checksum mismatch and
local write failures.
"""

import bz2
import errno
import gzip
import hashlib
import lzma
import os
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from dbkeeper.backup.compression import (
    compress_and_verify,
    sha256_file,
    IntegrityError
)
from dbkeeper.backup.storage import StorageError, read_checksum_file
from dbkeeper.backup.types import BackupArtifact, VerificationStatus


CREATED_AT = datetime(2024, 1, 15, 3, 0, 0, tzinfo=timezone.utc)
DUMP = b"-- MySQL dump\nINSERT INTO t VALUES (1);\n" * 200 + b"-- Dump completed\n"


@pytest.fixture
def dump_file(local_storage):
    path = local_storage.temp_path('20240115T030000Z.sql')
    with open(path, 'wb') as f:
        f.write(DUMP)
    return path


def new_artifact(local_storage, fmt='gz'):
    return BackupArtifact(created_at=CREATED_AT, path=local_storage.artifact_path(CREATED_AT, fmt))


class TestCompressAndVerify:
    """Test compress_and_verify with different formats."""

    @pytest.mark.parametrize("compression_format,opener", [
        ("gz", gzip.open),
        ("bz2", bz2.open),
        ("xz", lzma.open),
    ])
    def test_all_formats_roundtrip(self, local_storage, dump_file, compression_format, opener):
        """Test the committed artifact decompresses to the original dump."""
        artifact = new_artifact(local_storage, compression_format)
        partial = local_storage.temp_path(artifact.name + '.partial')

        compress_and_verify(dump_file, artifact, partial, compression_format)

        assert artifact.path.endswith(f".sql.{compression_format}")
        with opener(artifact.path, 'rb') as f:
            assert f.read() == DUMP

    def test_marks_verified_with_checksum(self, local_storage, dump_file):
        artifact = new_artifact(local_storage)
        partial = local_storage.temp_path(artifact.name + '.partial')

        result = compress_and_verify(dump_file, artifact, partial, 'gz')

        assert result is artifact
        assert artifact.status == VerificationStatus.VERIFIED
        assert artifact.checksum == sha256_file(artifact.path)
        assert artifact.size_bytes == os.path.getsize(artifact.path)

    def test_writes_checksum_sidecar(self, local_storage, dump_file):
        """Test sha256sum-format sidecar is written next to the artifact."""
        artifact = new_artifact(local_storage)
        partial = local_storage.temp_path(artifact.name + '.partial')

        compress_and_verify(dump_file, artifact, partial, 'gz')

        assert read_checksum_file(artifact.path) == artifact.checksum
        with open(artifact.path + '.sha256') as f:
            assert f.read() == f"{artifact.checksum}  {artifact.name}\n"

    def test_partial_file_is_gone(self, local_storage, dump_file):
        artifact = new_artifact(local_storage)
        partial = local_storage.temp_path(artifact.name + '.partial')

        compress_and_verify(dump_file, artifact, partial, 'gz')

        assert not os.path.exists(partial)

    def test_checksum_mismatch_raises_integrity_error(self, local_storage, dump_file):
        """Test a file that reads back differently is discarded."""
        artifact = new_artifact(local_storage)
        partial = local_storage.temp_path(artifact.name + '.partial')

        with patch('dbkeeper.backup.compression.sha256_file', return_value='0' * 64):
            with pytest.raises(IntegrityError, match='Checksum mismatch'):
                compress_and_verify(dump_file, artifact, partial, 'gz')

        assert artifact.status == VerificationStatus.CORRUPT
        assert not os.path.exists(artifact.path)
        assert not os.path.exists(artifact.path + '.sha256')

    def test_disk_full_raises_storage_error(self, local_storage, dump_file, make_artifact):
        """Test ENOSPC during commit leaves earlier artifacts untouched."""
        earlier = make_artifact(datetime(2024, 1, 14, 3, 0, 0, tzinfo=timezone.utc))
        artifact = new_artifact(local_storage)
        partial = local_storage.temp_path(artifact.name + '.partial')

        no_space = OSError(errno.ENOSPC, 'No space left on device')
        with patch('dbkeeper.backup.compression.os.replace', side_effect=no_space):
            with pytest.raises(StorageError, match='No space left'):
                compress_and_verify(dump_file, artifact, partial, 'gz')

        assert not os.path.exists(partial)
        assert not os.path.exists(artifact.path)
        assert os.path.exists(earlier)
        assert read_checksum_file(earlier) is not None

    def test_missing_source_raises_storage_error(self, local_storage):
        artifact = new_artifact(local_storage)
        partial = local_storage.temp_path(artifact.name + '.partial')

        with pytest.raises(StorageError):
            compress_and_verify(local_storage.temp_path('missing.sql'), artifact, partial, 'gz')

    def test_invalid_format(self, local_storage, dump_file):
        artifact = new_artifact(local_storage)

        with pytest.raises(ValueError, match='Invalid compression format'):
            compress_and_verify(dump_file, artifact, artifact.path + '.partial', 'zip')


class TestSha256File:

    def test_matches_hashlib(self, tmp_path):
        path = tmp_path / 'data.bin'
        path.write_bytes(b'x' * (3 * 1024 * 1024 + 17))

        assert sha256_file(str(path)) == hashlib.sha256(path.read_bytes()).hexdigest()
