"""
Dump producers for the database instance.

Supports:
- MySQLDump: mysqldump --single-transaction across all databases
- PostgresDump: pg_dumpall

Each producer streams the export tool's stdout into a temporary file and
checks that the output is complete before handing it on.
"""

import logging
import os
import subprocess
from typing import Dict, List, Optional

from .types import DatabaseCredentials


logger = logging.getLogger(__name__)


class DumpError(Exception):
    """Raised when a consistent export cannot be produced."""
    pass


class DumpProducer:
    """
    Base class for export-tool wrappers.

    Subclasses provide the command line, the environment used to pass the
    password, and the trailer the tool writes as the last line of a complete
    dump.
    """

    executable = None
    completion_marker = None

    def __init__(self, credentials: DatabaseCredentials, timeout: Optional[float] = None):
        self.credentials = credentials
        self.timeout = timeout

    def build_command(self) -> List[str]:
        raise NotImplementedError

    def build_env(self) -> Dict[str, str]:
        return os.environ.copy()

    def dump(self, destination: str) -> int:
        """
        Export all databases into destination.

        Args:
            destination: Temporary file path for the uncompressed dump

        Returns:
            Size of the dump in bytes

        Raises:
            DumpError: If the tool is missing, times out, exits non-zero, or
                the output is empty or truncated
        """
        command = self.build_command()
        logger.info("stage=dump outcome=started command=%s", command[0])

        try:
            with open(destination, 'wb') as out:
                result = subprocess.run(
                    command,
                    stdout=out,
                    stderr=subprocess.PIPE,
                    env=self.build_env(),
                    timeout=self.timeout,
                    check=False
                )
        except FileNotFoundError:
            self._discard(destination)
            raise DumpError(f"Export tool not found: {command[0]}")
        except subprocess.TimeoutExpired:
            self._discard(destination)
            raise DumpError(f"{command[0]} timed out after {self.timeout} seconds")
        except OSError as e:
            self._discard(destination)
            raise DumpError(f"Failed to run {command[0]}: {e}")

        if result.returncode != 0:
            self._discard(destination)
            stderr = (result.stderr or b'').decode('utf-8', errors='replace').strip()
            raise DumpError(
                f"{command[0]} exited with status {result.returncode}: {stderr[-500:]}"
            )

        try:
            size = os.path.getsize(destination)
        except OSError as e:
            raise DumpError(f"Dump output missing: {e}")

        if size == 0:
            self._discard(destination)
            raise DumpError(f"{command[0]} produced an empty dump")

        if not self._is_complete(destination):
            self._discard(destination)
            raise DumpError(f"{command[0]} output is truncated (no completion trailer)")

        return size

    def _is_complete(self, path: str) -> bool:
        if not self.completion_marker:
            return True

        with open(path, 'rb') as f:
            f.seek(max(0, os.path.getsize(path) - 4096))
            tail = f.read()

        return self.completion_marker.encode() in tail

    @staticmethod
    def _discard(path: str):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass


class MySQLDump(DumpProducer):
    """
    mysqldump over a single InnoDB snapshot.

    --single-transaction takes a consistent read view instead of table locks,
    --quick streams rows rather than buffering whole tables.
    """

    executable = 'mysqldump'
    completion_marker = '-- Dump completed'

    def build_command(self) -> List[str]:
        creds = self.credentials
        command = [
            self.executable,
            f"--user={creds.user}",
            '--single-transaction',
            '--quick',
            '--routines',
            '--triggers',
            '--events',
            '--all-databases',
        ]

        if creds.socket:
            command.insert(2, f"--socket={creds.socket}")
        else:
            command[2:2] = [f"--host={creds.host}", f"--port={creds.port}"]

        return command

    def build_env(self) -> Dict[str, str]:
        env = super().build_env()
        if self.credentials.password:
            env['MYSQL_PWD'] = self.credentials.password
        return env


class PostgresDump(DumpProducer):
    """pg_dumpall; every database is exported from its own snapshot."""

    executable = 'pg_dumpall'
    completion_marker = '-- PostgreSQL database cluster dump complete'

    def build_command(self) -> List[str]:
        creds = self.credentials
        host = creds.socket or creds.host
        return [
            self.executable,
            f"--host={host}",
            f"--port={creds.port}",
            f"--username={creds.user}",
            '--no-password',
        ]

    def build_env(self) -> Dict[str, str]:
        env = super().build_env()
        if self.credentials.password:
            env['PGPASSWORD'] = self.credentials.password
        return env


def create_dump_producer(credentials: DatabaseCredentials, timeout: Optional[float] = None) -> DumpProducer:
    """
    Factory function to create the producer for the configured engine.

    Args:
        credentials: Database connection parameters
        timeout: Seconds before the export is abandoned

    Returns:
        MySQLDump or PostgresDump instance

    Raises:
        ValueError: If the engine is not supported
    """
    engine = credentials.engine.lower()

    if engine in ('mysql', 'mariadb'):
        return MySQLDump(credentials, timeout)
    elif engine in ('postgres', 'postgresql'):
        return PostgresDump(credentials, timeout)
    else:
        raise ValueError(f"Invalid database engine: {credentials.engine}")
