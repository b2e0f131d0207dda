import os
import tempfile
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from dbkeeper.backup.types import DatabaseCredentials, RetentionPolicy, StorageLocation


class Config:
    """Base configuration"""

    # Database being backed up
    DB_ENGINE = os.environ.get('DB_ENGINE', 'mysql')
    DB_HOST = os.environ.get('DB_HOST', 'localhost')
    DB_PORT = os.environ.get('DB_PORT')
    DB_USER = os.environ.get('DB_USER', 'root')
    DB_PASSWORD = os.environ.get('DB_PASSWORD')
    DB_PASSWORD_FILE = os.environ.get('DB_PASSWORD_FILE')
    DB_SOCKET = os.environ.get('DB_SOCKET')
    DUMP_TIMEOUT_SECONDS = os.environ.get('DUMP_TIMEOUT_SECONDS', '21600')

    # Object storage
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_PREFIX = os.environ.get('S3_PREFIX', 'mysql-backups')
    AWS_REGION = os.environ.get('AWS_REGION')
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    S3_CONNECT_TIMEOUT = os.environ.get('S3_CONNECT_TIMEOUT', '10')
    S3_READ_TIMEOUT = os.environ.get('S3_READ_TIMEOUT', '60')
    UPLOAD_MAX_ATTEMPTS = os.environ.get('UPLOAD_MAX_ATTEMPTS', '3')
    UPLOAD_BACKOFF_SECONDS = os.environ.get('UPLOAD_BACKOFF_SECONDS', '1')

    # Local artifacts and retention
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/var/backups/dbkeeper'
    LOCAL_KEEP_COUNT = os.environ.get('LOCAL_KEEP_COUNT', '7')
    REMOTE_MAX_AGE_DAYS = os.environ.get('REMOTE_MAX_AGE_DAYS', '30')
    COMPRESSION_FORMAT = os.environ.get('COMPRESSION_FORMAT', 'gz')

    # Run lock
    LOCK_FILE = os.environ.get('LOCK_FILE') or '/var/lock/dbkeeper.lock'
    LOCK_STALE_SECONDS = os.environ.get('LOCK_STALE_SECONDS', '43200')

    # Scheduler (only used by `dbkeeper schedule`)
    BACKUP_SCHEDULE_CRON = os.environ.get('BACKUP_SCHEDULE_CRON', '0 3 * * *')

    # Run history and logs
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////var/lib/dbkeeper/history.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_DIR = os.environ.get('LOG_DIR') or '/var/log/dbkeeper'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "history.db")}'
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')
    LOCK_FILE = os.path.join(DATA_DIR, 'dbkeeper.lock')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Test configuration; paths are overridden per test by the fixtures"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'dbkeeper-test-logs')
    S3_BUCKET = 'test-bucket'
    AWS_REGION = 'us-east-1'
    DB_PASSWORD = 'test-password'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


DEFAULT_PORTS = {
    'mysql': 3306,
    'mariadb': 3306,
    'postgres': 5432,
    'postgresql': 5432,
}


class ConfigError(ValueError):
    """Raised when backup configuration is missing or invalid."""

    def __init__(self, problems: List[str]):
        super().__init__("Invalid backup configuration: " + "; ".join(problems))
        self.problems = problems


@dataclass(frozen=True)
class BackupSettings:
    """
    Everything one backup run needs, validated once at run start and passed
    explicitly into each component.
    """

    credentials: DatabaseCredentials
    location: StorageLocation
    policy: RetentionPolicy
    backup_dir: str
    lock_file: str
    lock_stale_seconds: float = 43200
    compression_format: str = 'gz'
    dump_timeout: Optional[float] = None
    upload_max_attempts: int = 3
    upload_backoff_seconds: float = 1.0
    s3_connect_timeout: float = 10
    s3_read_timeout: float = 60

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> 'BackupSettings':
        """
        Build settings from a Flask config (or any mapping).

        Raises:
            ConfigError: Listing every missing or invalid value
        """
        problems = []

        def number(key, cast=int, minimum=None, required=True):
            raw = cfg.get(key)
            if raw in (None, ''):
                if required:
                    problems.append(f"{key} is required")
                return None
            try:
                value = cast(raw)
            except (TypeError, ValueError):
                problems.append(f"{key} must be a number, got {raw!r}")
                return None
            if minimum is not None and value < minimum:
                problems.append(f"{key} must be >= {minimum}, got {value}")
                return None
            return value

        engine = (cfg.get('DB_ENGINE') or '').lower()
        if engine not in DEFAULT_PORTS:
            problems.append(f"DB_ENGINE must be one of {sorted(DEFAULT_PORTS)}, got {engine!r}")

        port = number('DB_PORT', required=False, minimum=1) or DEFAULT_PORTS.get(engine, 0)

        password = cfg.get('DB_PASSWORD')
        password_file = cfg.get('DB_PASSWORD_FILE')
        if password_file:
            try:
                with open(password_file, 'r') as f:
                    password = f.read().strip()
            except OSError as e:
                problems.append(f"DB_PASSWORD_FILE could not be read: {e}")

        if not cfg.get('DB_USER'):
            problems.append("DB_USER is required")
        if not cfg.get('DB_HOST') and not cfg.get('DB_SOCKET'):
            problems.append("DB_HOST or DB_SOCKET is required")

        bucket = cfg.get('S3_BUCKET')
        if not bucket:
            problems.append("S3_BUCKET is required")

        compression_format = cfg.get('COMPRESSION_FORMAT') or 'gz'
        if compression_format not in ('gz', 'bz2', 'xz'):
            problems.append(f"COMPRESSION_FORMAT must be gz, bz2 or xz, got {compression_format!r}")

        if not cfg.get('LOCAL_BACKUP_DIR'):
            problems.append("LOCAL_BACKUP_DIR is required")
        if not cfg.get('LOCK_FILE'):
            problems.append("LOCK_FILE is required")

        keep_count = number('LOCAL_KEEP_COUNT', minimum=1)
        max_age_days = number('REMOTE_MAX_AGE_DAYS', minimum=1)
        lock_stale = number('LOCK_STALE_SECONDS', cast=float, minimum=1)
        dump_timeout = number('DUMP_TIMEOUT_SECONDS', cast=float, minimum=1, required=False)
        attempts = number('UPLOAD_MAX_ATTEMPTS', minimum=1)
        backoff = number('UPLOAD_BACKOFF_SECONDS', cast=float, minimum=0)
        connect_timeout = number('S3_CONNECT_TIMEOUT', cast=float, minimum=1)
        read_timeout = number('S3_READ_TIMEOUT', cast=float, minimum=1)

        if problems:
            raise ConfigError(problems)

        return cls(
            credentials=DatabaseCredentials(
                engine=engine,
                host=cfg.get('DB_HOST') or 'localhost',
                port=port,
                user=cfg['DB_USER'],
                password=password or None,
                socket=cfg.get('DB_SOCKET') or None
            ),
            location=StorageLocation(
                bucket=bucket,
                prefix=cfg.get('S3_PREFIX') or '',
                region=cfg.get('AWS_REGION') or None,
                endpoint_url=cfg.get('S3_ENDPOINT_URL') or None
            ),
            policy=RetentionPolicy(
                local_keep_count=keep_count,
                remote_max_age_days=max_age_days
            ),
            backup_dir=cfg['LOCAL_BACKUP_DIR'],
            lock_file=cfg['LOCK_FILE'],
            lock_stale_seconds=lock_stale,
            compression_format=compression_format,
            dump_timeout=dump_timeout,
            upload_max_attempts=attempts,
            upload_backoff_seconds=backoff,
            s3_connect_timeout=connect_timeout,
            s3_read_timeout=read_timeout
        )
