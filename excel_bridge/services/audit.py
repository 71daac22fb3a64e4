# excel_bridge/services/audit.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from flask import g, has_request_context, request
from sqlalchemy.exc import SQLAlchemyError

from excel_bridge.errors import ValidationError
from excel_bridge.extensions import db
from excel_bridge.models import AuditEntry

audit_log = logging.getLogger("excel_bridge.audit")

MAX_LIMIT = 100


def _request_user() -> Dict[str, Optional[str]]:
    if not has_request_context():
        return {"user": "system", "role": None, "ip": None, "request_id": None}
    user = getattr(g, "user", None) or request.headers.get("X-User-Email") or request.headers.get("X-User")
    return {
        "user": user or "anonymous",
        "role": getattr(g, "role", None),
        "ip": request.headers.get("X-Forwarded-For", request.remote_addr),
        "request_id": getattr(g, "request_id", None),
    }


def record_event(
    event: str,
    details: Optional[Dict[str, Any]] = None,
    *,
    success: bool = True,
    file_name: Optional[str] = None,
) -> Optional[AuditEntry]:
    """Log one audit event and persist it; a failed insert is logged, never raised."""
    who = _request_user()
    details = dict(details or {})
    audit_log.info(
        "%s success=%s user=%s file=%s request=%s",
        event, success, who["user"], file_name or "-", who["request_id"] or "-",
    )

    entry = AuditEntry(
        event=event,
        user=who["user"],
        role=who["role"],
        ip=who["ip"],
        request_id=who["request_id"],
        file_name=file_name,
        success=success,
        details=details,
    )
    try:
        db.session.add(entry)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        audit_log.warning("could not persist audit event %s", event, exc_info=True)
        return None
    return entry


def _parse_date(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO-8601 date")


def query_events(filters: Mapping[str, Any]) -> List[dict]:
    q = AuditEntry.query

    if filters.get("user"):
        q = q.filter(AuditEntry.user == filters["user"])
    event = filters.get("operation") or filters.get("event")
    if event:
        q = q.filter(AuditEntry.event == str(event).upper())
    if filters.get("fileName"):
        q = q.filter(AuditEntry.file_name.ilike(f"%{filters['fileName']}%"))
    if filters.get("success") not in (None, ""):
        q = q.filter(AuditEntry.success == (str(filters["success"]).lower() in ("1", "true", "yes")))

    start = _parse_date(filters.get("startDate"), "startDate")
    end = _parse_date(filters.get("endDate"), "endDate")
    if start:
        q = q.filter(AuditEntry.created_at >= start)
    if end:
        q = q.filter(AuditEntry.created_at <= end)

    try:
        limit = int(filters.get("limit") or 50)
    except (TypeError, ValueError):
        raise ValidationError("limit must be an integer")
    limit = max(1, min(limit, MAX_LIMIT))

    rows = q.order_by(AuditEntry.created_at.desc()).limit(limit).all()
    return [r.to_dict() for r in rows]
