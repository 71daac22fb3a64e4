# excel_bridge/models.py
from datetime import datetime
import uuid

from excel_bridge.extensions import db


# ------------------ Audit ------------------
class AuditEntry(db.Model):
    __tablename__ = "audit_entries"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event = db.Column(db.String(64), nullable=False, index=True)   # "WRITE" | "FILE_RENAMED" | ...
    user = db.Column(db.String(255), nullable=True, index=True)
    role = db.Column(db.String(32), nullable=True)
    request_id = db.Column(db.String(64), nullable=True)
    ip = db.Column(db.String(64), nullable=True)
    file_name = db.Column(db.String(512), nullable=True, index=True)
    success = db.Column(db.Boolean, nullable=False, default=True)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditEntry {self.id} {self.event} {self.user} {self.created_at}>"

    def to_dict(self):
        return {
            "id": self.id,
            "event": self.event,
            "user": self.user,
            "role": self.role,
            "requestId": self.request_id,
            "ip": self.ip,
            "fileName": self.file_name,
            "success": self.success,
            "details": self.details or {},
            "timestamp": self.created_at.isoformat() + "Z",
        }
