"""
Filesystem run lock.

At most one backup run may hold the lock. The lock file records who holds it
and when it was taken, so a later run can recognise a lock left behind by a
process that died (dead pid on this host, or older than stale_after) and
reclaim it.
"""

import json
import logging
import os
import socket
import time
import uuid
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class RunLock:
    """
    Exclusive lock file with stale-lock detection.

    Usage:
        lock = RunLock('/var/lib/dbkeeper/backup.lock', stale_after=43200)
        if lock.acquire():
            try:
                ...
            finally:
                lock.release()
    """

    def __init__(self, path: str, stale_after: float = 12 * 3600, clock: Callable[[], float] = time.time):
        self.path = path
        self.stale_after = stale_after
        self.clock = clock
        self.token = None

    @property
    def held(self) -> bool:
        return self.token is not None

    def acquire(self) -> bool:
        """
        Try to take the lock without waiting.

        Returns:
            True if acquired, False if another live run holds it
        """
        if self.held:
            return True

        if self._create():
            return True

        if not self._reclaim_if_stale():
            return False

        return self._create()

    def release(self):
        """Remove the lock file if it is still ours."""
        if not self.held:
            return

        holder = self._read()
        if holder is not None and holder.get('token') != self.token:
            logger.warning("Lock %s was taken over by pid %s; leaving it", self.path, holder.get('pid'))
        else:
            try:
                os.remove(self.path)
            except FileNotFoundError:
                pass

        self.token = None

    def _create(self) -> bool:
        token = uuid.uuid4().hex
        content = {
            'pid': os.getpid(),
            'host': socket.gethostname(),
            'token': token,
            'acquired_at': self.clock()
        }

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(content, f)
                f.flush()
                os.fsync(f.fileno())
        except BaseException:
            # Never leave a lock file that names no holder
            os.remove(self.path)
            raise

        self.token = token
        return True

    def _read(self) -> Optional[dict]:
        try:
            with open(self.path, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            # Half-written by a process that died mid-acquire
            return {}

    def is_stale(self, holder: dict) -> bool:
        acquired_at = holder.get('acquired_at')
        if acquired_at is None:
            try:
                acquired_at = os.path.getmtime(self.path)
            except FileNotFoundError:
                return True

        if self.clock() - acquired_at > self.stale_after:
            return True

        pid = holder.get('pid')
        if pid and holder.get('host') == socket.gethostname():
            return not _pid_alive(pid)

        return False

    def _reclaim_if_stale(self) -> bool:
        try:
            before = os.stat(self.path)
        except FileNotFoundError:
            return True

        holder = self._read()
        if holder is None:
            return True

        if not self.is_stale(holder):
            logger.info("Backup already running (pid %s on %s)", holder.get('pid'), holder.get('host'))
            return False

        # Move the stale file aside atomically, then make sure what we moved
        # is the file we inspected and not a lock taken in the meantime.
        aside = f"{self.path}.stale.{os.getpid()}"
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return True

        if os.stat(aside).st_ino != before.st_ino:
            try:
                os.rename(aside, self.path)
            except OSError as e:
                logger.warning("Could not restore lock %s: %s", self.path, e)
            return False

        os.remove(aside)
        logger.warning(
            "Reclaimed stale lock %s (pid %s on %s)",
            self.path, holder.get('pid'), holder.get('host')
        )
        return True


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
