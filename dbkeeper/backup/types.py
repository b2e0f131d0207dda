"""
Value types shared by the backup pipeline.

These are plain dataclasses built once per run from configuration and passed
explicitly into each component.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class VerificationStatus(str, Enum):
    UNVERIFIED = 'unverified'
    VERIFIED = 'verified'
    CORRUPT = 'corrupt'


class ArtifactLocation(str, Enum):
    LOCAL = 'local'
    REMOTE = 'remote'
    BOTH = 'both'


@dataclass
class BackupArtifact:
    """
    One compressed, checksummed dump.

    The creation timestamp (UTC, whole seconds) is the artifact's identity and
    determines both its local file name and its remote key.
    """

    created_at: datetime
    path: str
    size_bytes: int = 0
    checksum: Optional[str] = None
    status: VerificationStatus = VerificationStatus.UNVERIFIED
    location: ArtifactLocation = ArtifactLocation.LOCAL
    remote_key: Optional[str] = None

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def is_verified(self) -> bool:
        return self.status == VerificationStatus.VERIFIED

    def sort_key(self):
        return (self.created_at, self.path)


@dataclass(frozen=True)
class RetentionPolicy:
    """Independent local (by count) and remote (by age) retention limits."""

    local_keep_count: int
    remote_max_age_days: int


@dataclass(frozen=True)
class DatabaseCredentials:
    engine: str
    host: str
    port: int
    user: str
    password: Optional[str] = field(default=None, repr=False)
    socket: Optional[str] = None


@dataclass(frozen=True)
class StorageLocation:
    bucket: str
    prefix: str = ''
    region: Optional[str] = None
    endpoint_url: Optional[str] = None

    @property
    def key_prefix(self) -> str:
        """Prefix with exactly one trailing slash, or empty for the bucket root."""
        prefix = self.prefix.strip('/')
        return f"{prefix}/" if prefix else ''
