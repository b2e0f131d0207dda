"""
Backup module for dbkeeper.

This module handles the core backup functionality including:
- Consistent database dumps
- Compression and checksum verification
- Local artifact storage and retention by count
- Upload to object storage and retention by age
- Run locking, orchestration and reporting
"""

from .executor import BackupExecutor, run_backup, execute_backup
from .dump import create_dump_producer, MySQLDump, PostgresDump, DumpError
from .compression import compress_and_verify, IntegrityError
from .storage import LocalStorage, S3Storage, StorageError, UploadError, RemoteStorageError
from .retention import LocalRetentionManager, RemoteRetentionManager, RetentionError
from .lock import RunLock
from .report import RunReport, Reporter, exit_code_for

__all__ = [
    'BackupExecutor',
    'run_backup',
    'execute_backup',
    'create_dump_producer',
    'MySQLDump',
    'PostgresDump',
    'DumpError',
    'compress_and_verify',
    'IntegrityError',
    'LocalStorage',
    'S3Storage',
    'StorageError',
    'UploadError',
    'RemoteStorageError',
    'LocalRetentionManager',
    'RemoteRetentionManager',
    'RetentionError',
    'RunLock',
    'RunReport',
    'Reporter',
    'exit_code_for'
]
