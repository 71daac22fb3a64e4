# excel_bridge/routes/rename_routes.py
from flask import Blueprint, jsonify

from excel_bridge.graph_client import get_graph_client
from excel_bridge.services import rename_service
from excel_bridge.services.rbac import require_permission
from excel_bridge.utils.request_params import request_params, require

rename_bp = Blueprint("rename", __name__, url_prefix="/api/excel")


@rename_bp.route("/rename-file", methods=["POST", "PATCH"])
@require_permission("write")
def rename_file():
    p = request_params()
    require(p, ["newName"])
    data = rename_service.rename_file(get_graph_client(), p)
    return jsonify(status="success", message=f"File renamed to '{data['newName']}'", data=data)


@rename_bp.route("/rename-folder", methods=["POST", "PATCH"])
@require_permission("write")
def rename_folder():
    p = request_params()
    require(p, ["newName"])
    data = rename_service.rename_folder(get_graph_client(), p)
    return jsonify(status="success", message=f"Folder renamed to '{data['newName']}'", data=data)


@rename_bp.route("/rename-sheet", methods=["POST", "PATCH"])
@require_permission("write")
def rename_sheet():
    p = request_params()
    data = rename_service.rename_sheet(get_graph_client(), p)
    return jsonify(status="success", message=f"Sheet renamed to '{data['newName']}'", data=data)


@rename_bp.route("/rename-suggestions", methods=["POST", "GET"])
def rename_suggestions():
    p = request_params()
    return jsonify(status="success", data=rename_service.rename_suggestions(get_graph_client(), p))


@rename_bp.route("/batch-rename", methods=["POST"])
@require_permission("write")
def batch_rename():
    p = request_params()
    operations = p.pop("operations", None)
    body, status = rename_service.batch_rename(get_graph_client(), p, operations)
    return jsonify(body), status
