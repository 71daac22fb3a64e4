# excel_bridge/routes/audit_routes.py
from flask import Blueprint, jsonify, request

from excel_bridge.services import audit

audit_bp = Blueprint("audit", __name__, url_prefix="/api/audit")


@audit_bp.route("/logs", methods=["GET"])
def audit_logs():
    entries = audit.query_events(request.args)
    return jsonify(status="success", data=entries, count=len(entries))
