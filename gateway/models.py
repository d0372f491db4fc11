"""
Audit trail storage model.

APPEND-ONLY: audit entries are immutable compliance records.
Updates and deletes are blocked at the model level.
"""

from datetime import timezone

from models import db


class AuditEntryRecord(db.Model):
    """One access attempt against the gateway, success or failure."""
    __tablename__ = 'audit_entries'

    id = db.Column(db.String(64), primary_key=True)
    timestamp = db.Column(db.DateTime, nullable=False, index=True)
    subject_id = db.Column(db.String(128), nullable=False, index=True)
    role = db.Column(db.String(32), nullable=False)
    ip_address = db.Column(db.String(64), nullable=False)
    action = db.Column(db.String(16), nullable=False, index=True)
    resource_type = db.Column(db.String(64), nullable=False, index=True)
    resource_id = db.Column(db.String(64), nullable=True, index=True)
    outcome = db.Column(db.String(16), nullable=False)
    status_code = db.Column(db.Integer, nullable=True)
    description = db.Column(db.Text, nullable=False)
    duration_ms = db.Column(db.Float, nullable=False, default=0.0)
    correlation_id = db.Column(db.String(128), nullable=True)

    __table_args__ = (
        db.Index('ix_audit_entries_subject_timestamp', 'subject_id', 'timestamp'),
        db.Index('ix_audit_entries_resource', 'resource_type', 'resource_id'),
    )

    @classmethod
    def from_entry(cls, entry):
        return cls(
            id=entry.id,
            timestamp=entry.timestamp.astimezone(timezone.utc).replace(tzinfo=None),
            subject_id=entry.subject_id,
            role=entry.role,
            ip_address=entry.ip_address,
            action=entry.action,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            outcome=entry.outcome,
            status_code=entry.status_code,
            description=entry.description,
            duration_ms=entry.duration_ms,
            correlation_id=entry.correlation_id,
        )

    def to_entry(self):
        from gateway.audit import AuditEntry

        timestamp = self.timestamp
        # SQLite hands back naive datetimes; stored values are UTC
        if timestamp is not None and timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return AuditEntry(
            id=self.id,
            timestamp=timestamp,
            subject_id=self.subject_id,
            role=self.role,
            ip_address=self.ip_address,
            action=self.action,
            resource_type=self.resource_type,
            resource_id=self.resource_id,
            outcome=self.outcome,
            description=self.description,
            duration_ms=self.duration_ms,
            status_code=self.status_code,
            correlation_id=self.correlation_id,
        )


# --- Append-only enforcement ---
# These listeners fire on Session.delete() and dirty flush, preventing
# programmatic mutation of audit records. DROP TABLE (test teardown) is unaffected.

@db.event.listens_for(AuditEntryRecord, 'before_update')
def _prevent_audit_update(mapper, connection, target):
    raise RuntimeError('Audit entries are immutable and cannot be updated')


@db.event.listens_for(AuditEntryRecord, 'before_delete')
def _prevent_audit_delete(mapper, connection, target):
    raise RuntimeError('Audit entries are immutable and cannot be deleted')
