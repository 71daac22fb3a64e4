# excel_bridge/routes/excel_routes.py
from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify

from excel_bridge.config import cfg
from excel_bridge.errors import ValidationError
from excel_bridge.graph_client import get_graph_client
from excel_bridge.services import audit, find_replace, formatting, workbook_service
from excel_bridge.services.name_resolver import SiteContext, resolve_target
from excel_bridge.services.rbac import check_permission, require_permission
from excel_bridge.utils.request_params import as_bool, request_params, require

excel_bp = Blueprint("excel", __name__, url_prefix="/api/excel")


def _ok(data: Any, status: int = 200, **extra):
    return jsonify(status="success", data=data, **extra), status


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------

@excel_bp.route("/workbooks", methods=["GET"])
def workbooks():
    p = request_params()
    client = get_graph_client()
    items = workbook_service.list_workbooks(client, SiteContext.from_params(p), p.get("driveName"))
    return _ok(items, count=len(items))


@excel_bp.route("/worksheets", methods=["GET"])
def worksheets():
    p = request_params()
    client = get_graph_client()
    target = resolve_target(client, p)
    sheets = workbook_service.list_worksheets(client, target)
    return _ok({**target.describe(), "worksheets": sheets}, count=len(sheets))


@excel_bp.route("/search", methods=["GET"])
def search_files():
    p = request_params()
    query = p.get("q") or p.get("query")
    client = get_graph_client()
    items = workbook_service.search_files(client, SiteContext.from_params(p), query, p.get("driveName"))
    return _ok(items, count=len(items))


@excel_bp.route("/metadata", methods=["GET", "POST"])
def metadata():
    p = request_params()
    client = get_graph_client()
    target = resolve_target(client, p)
    return _ok(workbook_service.metadata(client, target))


@excel_bp.route("/analyze-scope", methods=["GET", "POST"])
def analyze_scope():
    p = request_params()
    client = get_graph_client()
    target = resolve_target(client, p)
    return _ok(workbook_service.analyze_scope(client, target))


# ---------------------------------------------------------------------------
# Ranges
# ---------------------------------------------------------------------------

@excel_bp.route("/read", methods=["POST"])
def read():
    p = request_params()
    client = get_graph_client()
    target = resolve_target(client, p, need_sheet=True)
    return _ok(workbook_service.read(client, target, as_records=as_bool(p.get("asRecords"))))


@excel_bp.route("/write", methods=["POST"])
@require_permission("write")
def write():
    p = request_params()
    require(p, ["values"])
    client = get_graph_client()
    target = resolve_target(client, p, need_sheet=True)
    return _ok(workbook_service.write(client, target, p.get("values")))


@excel_bp.route("/clear-data", methods=["POST"])
@require_permission("write")
def clear_data():
    p = request_params()
    client = get_graph_client()
    target = resolve_target(client, p, need_sheet=True)
    return _ok(workbook_service.clear(client, target, p.get("applyTo")))


@excel_bp.route("/batch", methods=["POST"])
@require_permission("write")
def batch():
    p = request_params()
    operations = p.pop("operations", None)
    body, status = workbook_service.batch(get_graph_client(), p, operations)
    return jsonify(body), status


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

@excel_bp.route("/read-table", methods=["POST"])
def read_table():
    p = request_params()
    require(p, ["tableName"])
    client = get_graph_client()
    target = resolve_target(client, p)
    return _ok(workbook_service.read_table(client, target, p["tableName"]))


@excel_bp.route("/add-table-rows", methods=["POST"])
@require_permission("write")
def add_table_rows():
    p = request_params()
    require(p, ["tableName", "values"])
    client = get_graph_client()
    target = resolve_target(client, p)
    return _ok(workbook_service.add_table_rows(client, target, p["tableName"], p["values"]))


# ---------------------------------------------------------------------------
# Find / replace
# ---------------------------------------------------------------------------

@excel_bp.route("/find-replace", methods=["POST"])
def find_and_replace():
    p = request_params()
    opts = find_replace.FindReplaceOptions.from_params(p)
    if opts.is_apply:
        # previews are read-only; only the write phase needs the permission
        check_permission("write")
    client = get_graph_client()
    target = resolve_target(client, p)
    body, status = find_replace.run_find_replace(client, target, opts)
    return jsonify(body), status


@excel_bp.route("/search-text", methods=["POST"])
def search_text():
    p = request_params()
    require(p, ["searchTerm"])
    opts = find_replace.FindReplaceOptions.from_params({**p, "mode": "preview", "strategy": "text"})
    client = get_graph_client()
    target = resolve_target(client, p)
    scope, matches = find_replace.discover(client, target, opts)
    summary = find_replace.search_summary(opts.search_term, matches, int(cfg("SEARCH_RESULT_LIMIT", 50)))
    audit.record_event(
        "TEXT_SEARCH",
        {**target.describe(), "searchTerm": opts.search_term, "scope": scope, "totalMatches": len(matches)},
        file_name=target.item_name,
    )
    return _ok({**target.describe(), "scope": scope, "rangeSpec": opts.range_spec, **summary})


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

@excel_bp.route("/format", methods=["POST"])
@require_permission("write")
def format_cells():
    p = request_params()
    require(p, ["operations"])
    client = get_graph_client()
    target = resolve_target(client, p, need_sheet=True)
    return _ok(formatting.apply_formatting(client, target, p["operations"]))


# ---------------------------------------------------------------------------
# Files & sheets
# ---------------------------------------------------------------------------

@excel_bp.route("/create-file", methods=["POST"])
@require_permission("create")
def create_file():
    p = request_params()
    require(p, ["itemName"])
    sheet_names = p.get("sheetNames") or ([p["sheetName"]] if p.get("sheetName") else None)
    data = workbook_service.create_file(
        get_graph_client(), SiteContext.from_params(p), p.get("driveName"),
        p["itemName"], p.get("folderPath"), sheet_names,
    )
    return _ok(data, 201)


@excel_bp.route("/create-sheet", methods=["POST"])
@require_permission("create")
def create_sheet():
    p = request_params()
    name = p.get("newSheetName") or p.pop("sheetName", None)
    client = get_graph_client()
    target = resolve_target(client, p)
    return _ok(workbook_service.create_sheet(client, target, name, p.get("position")), 201)


@excel_bp.route("/delete-file", methods=["DELETE", "POST"])
@require_permission("delete")
def delete_file():
    p = request_params()
    if not (p.get("itemName") or p.get("fullPath") or p.get("itemPath")):
        # never auto-select a file for deletion
        raise ValidationError("itemName, itemPath or fullPath is required")
    client = get_graph_client()
    target = resolve_target(client, p)
    return _ok(workbook_service.delete_file(client, target))


@excel_bp.route("/delete-sheet", methods=["DELETE", "POST"])
@require_permission("delete")
def delete_sheet():
    p = request_params()
    require(p, ["sheetName"])
    client = get_graph_client()
    target = resolve_target(client, p, need_sheet=True)
    return _ok(workbook_service.delete_sheet(client, target))
