import json
from datetime import datetime, timezone
from dbkeeper import db


class BackupRun(db.Model):
    """Backup run history and logs"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(20), nullable=False)  # success, degraded, failed, skipped
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    artifact_name = db.Column(db.String(255))
    file_size_bytes = db.Column(db.BigInteger)
    checksum = db.Column(db.String(64))
    s3_key = db.Column(db.String(500))
    error_message = db.Column(db.Text)
    stages = db.Column(db.Text)  # JSON list of stage results
    logs = db.Column(db.Text)  # Detailed execution logs

    @classmethod
    def from_report(cls, report):
        artifact = report.artifact
        return cls(
            status=report.status,
            started_at=_naive_utc(report.started_at),
            completed_at=_naive_utc(report.finished_at),
            artifact_name=artifact.name if artifact else None,
            file_size_bytes=artifact.size_bytes if artifact else None,
            checksum=artifact.checksum if artifact else None,
            s3_key=artifact.remote_key if artifact else None,
            error_message=report.error,
            stages=json.dumps([s.to_dict() for s in report.stages]),
            logs='\n'.join(report.logs)
        )

    def stage_results(self) -> list:
        return json.loads(self.stages) if self.stages else []

    def __repr__(self):
        return f'<BackupRun id={self.id} status={self.status}>'


def _naive_utc(value):
    # SQLite DateTime columns hold naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
