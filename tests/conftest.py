"""
Shared pytest fixtures for dbkeeper tests.

This module provides fixtures for:
- Flask app and database setup with in-memory SQLite
- Validated backup settings pointing at a temporary directory
- A fake dump producer standing in for mysqldump
- Mock S3 via moto
- Helpers for creating existing artifacts on disk
"""

import os
from datetime import datetime, timedelta, timezone

import pytest
import boto3
from moto import mock_aws

from dbkeeper import create_app, db as _db
from dbkeeper.backup.storage import LocalStorage, S3Storage, generate_artifact_filename, write_checksum_file
from dbkeeper.backup.compression import sha256_file
from dbkeeper.backup.dump import DumpProducer, DumpError
from dbkeeper.backup.types import DatabaseCredentials, RetentionPolicy, StorageLocation
from dbkeeper.config import BackupSettings


MYSQL_DUMP_BODY = (
    b"-- MySQL dump 10.13\n"
    b"CREATE DATABASE `shop`;\n"
    b"INSERT INTO `orders` VALUES (1,'widget'),(2,'gadget');\n"
    b"-- Dump completed on 2024-01-15  3:00:00\n"
)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')

    app.config.update({
        'LOCAL_BACKUP_DIR': str(tmp_path / 'backups'),
        'LOCK_FILE': str(tmp_path / 'dbkeeper.lock'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never looks for real ones."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def location():
    return StorageLocation(bucket='test-bucket', prefix='mysql-backups', region='us-east-1')


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def s3_storage(mock_s3, location, sleeps):
    return S3Storage(location, max_attempts=3, backoff_seconds=1, sleep=sleeps.append)


@pytest.fixture
def settings(tmp_path, location):
    """Validated settings for a MySQL instance, keeping 3 local and 30 days remote."""
    return BackupSettings(
        credentials=DatabaseCredentials(
            engine='mysql', host='db.internal', port=3306, user='backup', password='s3cret'
        ),
        location=location,
        policy=RetentionPolicy(local_keep_count=3, remote_max_age_days=30),
        backup_dir=str(tmp_path / 'backups'),
        lock_file=str(tmp_path / 'dbkeeper.lock'),
        lock_stale_seconds=3600,
        compression_format='gz',
    )


@pytest.fixture
def local_storage(settings):
    return LocalStorage(settings.backup_dir)


class FakeDumpProducer(DumpProducer):
    """Writes a canned dump instead of running mysqldump."""

    def __init__(self, body: bytes = MYSQL_DUMP_BODY, error: Exception = None):
        super().__init__(DatabaseCredentials('mysql', 'localhost', 3306, 'root'))
        self.body = body
        self.error = error
        self.calls = []

    def dump(self, destination: str) -> int:
        self.calls.append(destination)
        if self.error is not None:
            raise self.error
        with open(destination, 'wb') as f:
            f.write(self.body)
        return len(self.body)


@pytest.fixture
def fake_producer():
    return FakeDumpProducer()


@pytest.fixture
def failing_producer():
    return FakeDumpProducer(error=DumpError("mysqldump exited with status 2: Access denied for user 'backup'"))


class SteppingClock:
    """Returns a fixed UTC time that only moves when advanced."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return SteppingClock(datetime(2024, 1, 15, 3, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def make_artifact(local_storage):
    """
    Create a committed artifact on disk.

    Args (of the returned function):
        created_at: artifact timestamp
        verified: write the checksum sidecar
    """
    def _make(created_at: datetime, verified: bool = True, content: bytes = b'compressed-dump') -> str:
        path = os.path.join(str(local_storage.base_path), generate_artifact_filename(created_at, 'gz'))
        with open(path, 'wb') as f:
            f.write(content)
        if verified:
            write_checksum_file(path, sha256_file(path))
        return path

    return _make
