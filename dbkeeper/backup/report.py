"""
Run reports.

A RunReport is opened when a run starts, each stage appends a StageResult,
and the Reporter classifies and emits it exactly once. After emission the
report can no longer be changed.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from flask import has_app_context

from .types import BackupArtifact


logger = logging.getLogger('dbkeeper.report')

# Stage names
DUMP = 'dump'
VERIFY = 'verify'
LOCAL_PRUNE = 'local_prune'
UPLOAD = 'upload'
REMOTE_PRUNE = 'remote_prune'

FATAL_STAGES = (DUMP, VERIFY)

# Stage outcomes
OK = 'ok'
FAILED = 'failed'
PARTIAL = 'partial'
SKIPPED = 'skipped'

# Run classifications
SUCCESS = 'success'
DEGRADED = 'degraded'
RUN_FAILED = 'failed'
RUN_SKIPPED = 'skipped'


class ReportEmittedError(RuntimeError):
    """Raised when a report is changed or emitted after emission."""
    pass


@dataclass
class StageResult:
    name: str
    status: str
    detail: Optional[str] = None
    bytes: Optional[int] = None
    duration_seconds: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'status': self.status,
            'detail': self.detail,
            'bytes': self.bytes,
            'duration_seconds': self.duration_seconds,
        }


@dataclass
class RunReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    stages: List[StageResult] = field(default_factory=list)
    status: Optional[str] = None
    error: Optional[str] = None
    artifact: Optional[BackupArtifact] = None
    logs: List[str] = field(default_factory=list)
    fatal: bool = False
    emitted: bool = False

    def __setattr__(self, name, value):
        if getattr(self, 'emitted', False):
            raise ReportEmittedError(f"Report already emitted; cannot set {name}")
        super().__setattr__(name, value)

    def _check_open(self):
        if self.emitted:
            raise ReportEmittedError("Report already emitted")

    def record(self, name: str, status: str, detail: Optional[str] = None,
               bytes: Optional[int] = None, duration_seconds: Optional[float] = None) -> StageResult:
        self._check_open()
        result = StageResult(name, status, detail, bytes, duration_seconds)
        self.stages.append(result)
        return result

    def stage(self, name: str) -> Optional[StageResult]:
        for result in self.stages:
            if result.name == name:
                return result
        return None

    def add_log(self, entry: str):
        self._check_open()
        self.logs.append(entry)

    def skip(self, reason: str):
        self.status = RUN_SKIPPED
        self.error = None
        self.add_log(reason)

    def finalize(self, finished_at: datetime) -> str:
        """Set the end time and classify the run (unless already skipped)."""
        self.finished_at = finished_at
        if self.status == RUN_SKIPPED:
            return self.status
        self.status = RUN_FAILED if self.fatal else classify(self.stages)
        return self.status

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': self.duration_seconds,
            'artifact': self.artifact.name if self.artifact else None,
            'bytes': self.artifact.size_bytes if self.artifact else None,
            'remote_key': self.artifact.remote_key if self.artifact else None,
            'stages': [s.to_dict() for s in self.stages],
            'error': self.error,
        }


def classify(stages: List[StageResult]) -> str:
    """
    Classify a run from its stage outcomes.

    failed: dump or verification did not succeed (no new artifact)
    degraded: a new artifact exists but a later stage failed or was partial
    success: every stage that ran succeeded
    """
    by_name = {s.name: s for s in stages}

    for name in FATAL_STAGES:
        result = by_name.get(name)
        if result is None or result.status != OK:
            return RUN_FAILED

    if any(s.status in (FAILED, PARTIAL) for s in stages):
        return DEGRADED

    return SUCCESS


def exit_code_for(status: Optional[str]) -> int:
    """Process exit status: zero unless the run failed."""
    return 1 if status == RUN_FAILED else 0


class Reporter:
    """
    Emits finished reports to the log and, inside an app context, to the
    run history table.
    """

    def __init__(self, persist: bool = True):
        self.persist = persist

    def emit(self, report: RunReport):
        if report.emitted:
            raise ReportEmittedError("Report already emitted")
        if report.finished_at is None:
            raise ValueError("Report must be finalized before it is emitted")

        line = json.dumps(report.to_dict(), sort_keys=True, default=str)

        if report.status == RUN_FAILED:
            logger.error(line)
        elif report.status == DEGRADED:
            logger.warning(line)
        else:
            logger.info(line)

        report.emitted = True

        if self.persist and has_app_context():
            self._save(report)

    def _save(self, report: RunReport):
        from sqlalchemy.exc import SQLAlchemyError
        from dbkeeper import db
        from dbkeeper.models import BackupRun

        try:
            db.session.add(BackupRun.from_report(report))
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error("Failed to record run history: %s", e)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)
