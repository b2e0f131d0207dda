"""
Unit tests for dump producers (dbkeeper/backup/dump.py).

Tests command construction and failure detection for MySQLDump and
PostgresDump without running the real export tools.
"""

import os
import subprocess
from unittest.mock import patch

import pytest

from dbkeeper.backup.dump import (
    MySQLDump,
    PostgresDump,
    DumpError,
    create_dump_producer
)
from dbkeeper.backup.types import DatabaseCredentials


MYSQL_CREDS = DatabaseCredentials(
    engine='mysql', host='db.internal', port=3306, user='backup', password='s3cret'
)
PG_CREDS = DatabaseCredentials(
    engine='postgresql', host='pg.internal', port=5432, user='postgres', password='pgpass'
)


def fake_run(body=b'', returncode=0, stderr=b''):
    """Build a subprocess.run replacement that writes body to stdout."""
    calls = []

    def _run(command, **kwargs):
        calls.append(dict(kwargs, command=command))
        kwargs['stdout'].write(body)
        return subprocess.CompletedProcess(command, returncode, stdout=None, stderr=stderr)

    _run.calls = calls
    return _run


class TestMySQLDumpCommand:
    """Test mysqldump command line construction."""

    def test_command_uses_consistent_snapshot(self):
        """Test mysqldump runs in a single transaction over all databases."""
        command = MySQLDump(MYSQL_CREDS).build_command()

        assert command[0] == 'mysqldump'
        assert '--single-transaction' in command
        assert '--all-databases' in command
        assert '--quick' in command
        assert '--lock-all-tables' not in command

    def test_command_includes_host_and_port(self):
        command = MySQLDump(MYSQL_CREDS).build_command()

        assert '--host=db.internal' in command
        assert '--port=3306' in command
        assert '--user=backup' in command

    def test_command_prefers_socket(self):
        creds = DatabaseCredentials(
            engine='mysql', host='localhost', port=3306, user='root', socket='/run/mysqld/mysqld.sock'
        )
        command = MySQLDump(creds).build_command()

        assert '--socket=/run/mysqld/mysqld.sock' in command
        assert not any(arg.startswith('--host=') for arg in command)

    def test_password_not_on_command_line(self):
        """Test password is passed via environment, never argv."""
        producer = MySQLDump(MYSQL_CREDS)

        assert not any('s3cret' in arg for arg in producer.build_command())
        assert producer.build_env()['MYSQL_PWD'] == 's3cret'


class TestPostgresDumpCommand:
    """Test pg_dumpall command line construction."""

    def test_command(self):
        producer = PostgresDump(PG_CREDS)
        command = producer.build_command()

        assert command[0] == 'pg_dumpall'
        assert '--host=pg.internal' in command
        assert '--username=postgres' in command
        assert '--no-password' in command
        assert producer.build_env()['PGPASSWORD'] == 'pgpass'


class TestDump:
    """Test DumpProducer.dump output handling."""

    def test_dump_success(self, tmp_path):
        """Test successful dump returns size and keeps the file."""
        body = b"CREATE TABLE t (id int);\n-- Dump completed on 2024-01-15\n"
        destination = tmp_path / 'dump.sql'
        run = fake_run(body)

        with patch('dbkeeper.backup.dump.subprocess.run', side_effect=run):
            size = MySQLDump(MYSQL_CREDS, timeout=60).dump(str(destination))

        assert size == len(body)
        assert destination.read_bytes() == body
        assert run.calls[0]['timeout'] == 60
        assert run.calls[0]['env']['MYSQL_PWD'] == 's3cret'

    def test_dump_nonzero_exit(self, tmp_path):
        """Test authentication failure surfaces as DumpError and removes output."""
        destination = tmp_path / 'dump.sql'
        run = fake_run(b'', returncode=2, stderr=b"mysqldump: Got error: 1045: Access denied for user 'backup'")

        with patch('dbkeeper.backup.dump.subprocess.run', side_effect=run):
            with pytest.raises(DumpError, match='Access denied'):
                MySQLDump(MYSQL_CREDS).dump(str(destination))

        assert not destination.exists()

    def test_dump_empty_output(self, tmp_path):
        destination = tmp_path / 'dump.sql'

        with patch('dbkeeper.backup.dump.subprocess.run', side_effect=fake_run(b'')):
            with pytest.raises(DumpError, match='empty'):
                MySQLDump(MYSQL_CREDS).dump(str(destination))

        assert not destination.exists()

    def test_dump_truncated_output(self, tmp_path):
        """Test output without the completion trailer is rejected."""
        destination = tmp_path / 'dump.sql'
        body = b"CREATE TABLE t (id int);\nINSERT INTO t VALUES (1),(2"

        with patch('dbkeeper.backup.dump.subprocess.run', side_effect=fake_run(body)):
            with pytest.raises(DumpError, match='truncated'):
                MySQLDump(MYSQL_CREDS).dump(str(destination))

        assert not destination.exists()

    def test_dump_tool_missing(self, tmp_path):
        destination = tmp_path / 'dump.sql'

        with patch('dbkeeper.backup.dump.subprocess.run', side_effect=FileNotFoundError('mysqldump')):
            with pytest.raises(DumpError, match='not found'):
                MySQLDump(MYSQL_CREDS).dump(str(destination))

        assert not destination.exists()

    def test_dump_timeout(self, tmp_path):
        destination = tmp_path / 'dump.sql'
        timeout = subprocess.TimeoutExpired(cmd='mysqldump', timeout=5)

        with patch('dbkeeper.backup.dump.subprocess.run', side_effect=timeout):
            with pytest.raises(DumpError, match='timed out'):
                MySQLDump(MYSQL_CREDS, timeout=5).dump(str(destination))

        assert not os.path.exists(destination)

    def test_postgres_completion_marker(self, tmp_path):
        destination = tmp_path / 'dump.sql'
        body = b"CREATE ROLE app;\n--\n-- PostgreSQL database cluster dump complete\n--\n"

        with patch('dbkeeper.backup.dump.subprocess.run', side_effect=fake_run(body)):
            assert PostgresDump(PG_CREDS).dump(str(destination)) == len(body)


class TestCreateDumpProducer:
    """Test producer factory."""

    @pytest.mark.parametrize("engine,expected", [
        ("mysql", MySQLDump),
        ("mariadb", MySQLDump),
        ("postgresql", PostgresDump),
        ("postgres", PostgresDump),
    ])
    def test_engines(self, engine, expected):
        creds = DatabaseCredentials(engine=engine, host='h', port=1, user='u')
        assert isinstance(create_dump_producer(creds), expected)

    def test_invalid_engine(self):
        creds = DatabaseCredentials(engine='oracle', host='h', port=1, user='u')
        with pytest.raises(ValueError, match='Invalid database engine'):
            create_dump_producer(creds)
