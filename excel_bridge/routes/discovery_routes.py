# excel_bridge/routes/discovery_routes.py
from flask import Blueprint, jsonify, redirect, request, url_for

from excel_bridge.graph_client import get_graph_client
from excel_bridge.services import name_resolver
from excel_bridge.utils.request_params import request_params

discovery_bp = Blueprint("discovery", __name__)


@discovery_bp.route("/list-drives", methods=["GET"])
def list_drives():
    p = request_params()
    client = get_graph_client()
    site_id = name_resolver.resolve_site_id(client, name_resolver.SiteContext.from_params(p))
    drives = [
        {"id": d["id"], "name": d["name"], "driveType": d.get("driveType"), "webUrl": d.get("webUrl")}
        for d in name_resolver.list_drives(client, site_id)
    ]
    return jsonify(status="success", data=drives, count=len(drives))


@discovery_bp.route("/list-items", methods=["GET"])
def list_items():
    """Workbooks and folders of one drive (recursive), with their display paths."""
    p = request_params()
    client = get_graph_client()
    site_id = name_resolver.resolve_site_id(client, name_resolver.SiteContext.from_params(p))
    drive = name_resolver.resolve_drive(client, site_id, p.get("driveName"))
    entries = list(name_resolver.walk_drive(client, drive["id"]))
    items = [
        {**{k: e[k] for k in ("id", "name", "path", "parentId")}, "type": "folder" if e["isFolder"] else "file"}
        for e in entries
        if e["isFolder"] or name_resolver.is_workbook(e["name"])
    ]
    return jsonify(status="success", data={"driveName": drive["name"], "items": items}, count=len(items))


# legacy /api/* spellings redirect with method and body preserved
@discovery_bp.route("/api/list-drives", methods=["GET"])
def list_drives_alias():
    return redirect(url_for("discovery.list_drives", **request.args), code=307)


@discovery_bp.route("/api/list-items", methods=["GET"])
def list_items_alias():
    return redirect(url_for("discovery.list_items", **request.args), code=307)
