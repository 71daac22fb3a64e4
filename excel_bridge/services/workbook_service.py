# excel_bridge/services/workbook_service.py
from __future__ import annotations

import io
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from openpyxl import Workbook

from excel_bridge import graph_sharepoint as gs
from excel_bridge.config import cfg
from excel_bridge.errors import AppError, ValidationError
from excel_bridge.graph_client import GraphClient
from excel_bridge.services import audit, name_resolver
from excel_bridge.services.cell_refs import parse_address, range_address, range_shape, split_cell
from excel_bridge.services.name_resolver import SiteContext, WorkbookTarget

log = logging.getLogger(__name__)

CLEAR_APPLY_TO = {"all": "All", "formats": "Formats", "contents": "Contents"}
BATCH_TYPES = ("read_range", "write_range", "read_table", "add_table_rows")


# ───────────────────────── helpers ─────────────────────────
def validate_values(values: Any) -> List[List[Any]]:
    """Non-empty 2D array whose rows all have the same length."""
    if not isinstance(values, list) or not values:
        raise ValidationError("values must be a non-empty 2D array")
    if not all(isinstance(row, list) and row for row in values):
        raise ValidationError("values must be a 2D array (a list of non-empty rows)")
    width = len(values[0])
    if any(len(row) != width for row in values):
        raise ValidationError("all rows in values must have the same number of columns")
    return values


def _is_blank_grid(values: List[List[Any]]) -> bool:
    return all(v in (None, "") for row in values for v in row)


def _range_payload(sheet: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    values = payload.get("values") or []
    return {
        "sheetName": sheet,
        "address": payload.get("address"),
        "values": values,
        "rowCount": payload.get("rowCount", len(values)),
        "columnCount": payload.get("columnCount", len(values[0]) if values else 0),
    }


def _records(payload: Dict[str, Any], first_row_headers: bool = True) -> Tuple[List[str], List[dict], bool]:
    df = gs.pandas_from_range_payload(payload, first_row_headers=first_row_headers)
    max_rows = int(cfg("EXCEL_PREVIEW_ROW_LIMIT", 500))
    truncated = False
    if len(df) > max_rows:
        df = df.head(max_rows)
        truncated = True
    columns = [str(c) for c in df.columns]
    rows = [
        dict(zip(columns, (x if x is not None else "" for x in row)))
        for row in df.fillna("").to_numpy().tolist()
    ]
    return columns, rows, truncated


def _require_sheet(target: WorkbookTarget) -> str:
    if not target.sheet:
        raise ValidationError("sheetName could not be determined")
    return target.sheet


# ───────────────────────── discovery ─────────────────────────
def list_workbooks(client: GraphClient, ctx: SiteContext, drive_name: Optional[str] = None) -> List[dict]:
    site_id = name_resolver.resolve_site_id(client, ctx)
    if drive_name:
        drives = [name_resolver.resolve_drive(client, site_id, drive_name)]
    else:
        drives = name_resolver.list_drives(client, site_id)

    out: List[dict] = []
    for drive in drives:
        for item in gs.search_drive(client, drive["id"], "xlsx"):
            name = item.get("name") or ""
            if "folder" in item or not name.lower().endswith(name_resolver.WORKBOOK_EXTENSIONS):
                continue
            out.append({
                "driveName": drive["name"],
                "name": name,
                "id": item.get("id"),
                "webUrl": item.get("webUrl"),
                "size": item.get("size"),
                "lastModifiedDateTime": item.get("lastModifiedDateTime"),
            })
    return out


def search_files(client: GraphClient, ctx: SiteContext, query: str, drive_name: Optional[str] = None) -> List[dict]:
    if not query:
        raise ValidationError("q is required")
    site_id = name_resolver.resolve_site_id(client, ctx)
    if drive_name:
        drives = [name_resolver.resolve_drive(client, site_id, drive_name)]
    else:
        drives = name_resolver.list_drives(client, site_id)
    out = []
    for drive in drives:
        for item in gs.search_drive(client, drive["id"], query):
            out.append({
                "driveName": drive["name"],
                "name": item.get("name"),
                "id": item.get("id"),
                "isFolder": "folder" in item,
                "webUrl": item.get("webUrl"),
                "lastModifiedDateTime": item.get("lastModifiedDateTime"),
            })
    return out


def list_worksheets(client: GraphClient, target: WorkbookTarget) -> List[dict]:
    sheets = name_resolver.list_sheets(client, target.drive_id, target.item_id)
    return [
        {"id": s.get("id"), "name": s.get("name"), "position": s.get("position"), "visibility": s.get("visibility")}
        for s in sheets
    ]


def metadata(client: GraphClient, target: WorkbookTarget) -> dict:
    item = gs.get_item(client, target.drive_id, target.item_id)
    return {
        **target.describe(),
        "id": item.get("id"),
        "size": item.get("size"),
        "webUrl": item.get("webUrl"),
        "createdDateTime": item.get("createdDateTime"),
        "lastModifiedDateTime": item.get("lastModifiedDateTime"),
        "lastModifiedBy": ((item.get("lastModifiedBy") or {}).get("user") or {}).get("displayName"),
        "worksheets": list_worksheets(client, target),
        "tables": [
            {"id": t.get("id"), "name": t.get("name"), "showHeaders": t.get("showHeaders")}
            for t in gs.list_tables(client, target.drive_id, target.item_id)
        ],
    }


def analyze_scope(client: GraphClient, target: WorkbookTarget) -> dict:
    sheets = []
    for s in name_resolver.list_sheets(client, target.drive_id, target.item_id):
        used = gs.used_range(client, target.drive_id, target.item_id, s["name"])
        values = used.get("values") or []
        empty = not values or _is_blank_grid(values)
        sheets.append({
            "name": s["name"],
            "usedRange": used.get("address"),
            "rowCount": 0 if empty else used.get("rowCount", len(values)),
            "columnCount": 0 if empty else used.get("columnCount", len(values[0]) if values else 0),
        })
    return {**target.describe(), "totalSheets": len(sheets), "worksheets": sheets}


# ───────────────────────── ranges ─────────────────────────
def read(client: GraphClient, target: WorkbookTarget, *, as_records: bool = False) -> dict:
    """Explicit range, or the whole used range of the (auto-)selected sheet."""
    sheet = _require_sheet(target)
    if target.address:
        payload = gs.get_range(client, target.drive_id, target.item_id, sheet, target.address)
    else:
        payload = gs.used_range(client, target.drive_id, target.item_id, sheet)
    out = _range_payload(sheet, payload)
    if as_records:
        columns, rows, truncated = _records(payload)
        out.update({"columns": columns, "records": rows, "truncated": truncated})
    audit.record_event("READ", {**target.describe(), "address": out["address"]}, file_name=target.item_name)
    return out


def _append_address(client: GraphClient, target: WorkbookTarget, rows: int, cols: int) -> str:
    used = gs.used_range(client, target.drive_id, target.item_id, target.sheet)
    values = used.get("values") or []
    if not values or _is_blank_grid(values):
        return range_address(1, 1, rows, cols)
    _, _, last_row, _ = parse_address(used["address"])
    return range_address(last_row + 1, 1, rows, cols)


def write(client: GraphClient, target: WorkbookTarget, values: Any) -> dict:
    """Write into `range`, or append below the used range starting at column A."""
    sheet = _require_sheet(target)
    values = validate_values(values)
    rows, cols = len(values), len(values[0])

    if target.address:
        if ":" not in target.address:
            row, col = split_cell(target.address)
            address = range_address(row, col, rows, cols)
        else:
            address = target.address
            if range_shape(address) != (rows, cols):
                r, c = range_shape(address)
                raise ValidationError(
                    f"values are {rows}x{cols} but range {address} is {r}x{c}"
                )
        appended = False
    else:
        address = _append_address(client, target, rows, cols)
        appended = True

    resp = gs.patch_range(client, target.drive_id, target.item_id, sheet, address, {"values": values})
    audit.record_event(
        "WRITE",
        {**target.describe(), "address": address, "rows": rows, "columns": cols, "appended": appended},
        file_name=target.item_name,
    )
    return {
        "sheetName": sheet,
        "address": resp.get("address") or address,
        "rowsWritten": rows,
        "columnsWritten": cols,
        "appended": appended,
    }


def clear(client: GraphClient, target: WorkbookTarget, apply_to: Optional[str] = None) -> dict:
    sheet = _require_sheet(target)
    key = (apply_to or "contents").lower()
    if key not in CLEAR_APPLY_TO:
        raise ValidationError("applyTo must be one of all, formats, contents")
    if not target.address and key != "all":
        raise ValidationError("range is required unless applyTo is 'all'")
    gs.clear_range(client, target.drive_id, target.item_id, sheet, target.address, CLEAR_APPLY_TO[key])
    audit.record_event(
        "CLEAR",
        {**target.describe(), "address": target.address or "usedRange", "applyTo": CLEAR_APPLY_TO[key]},
        file_name=target.item_name,
    )
    return {"sheetName": sheet, "address": target.address or "usedRange", "applyTo": CLEAR_APPLY_TO[key]}


# ───────────────────────── sheets & files ─────────────────────────
def create_sheet(client: GraphClient, target: WorkbookTarget, name: str, position: Optional[int] = None) -> dict:
    name = (name or "").strip()
    if not name:
        raise ValidationError("newSheetName is required")
    existing = name_resolver.list_sheets(client, target.drive_id, target.item_id)
    if name_resolver.match_by_name(existing, name):
        raise AppError(f"Sheet '{name}' already exists", 409, category="conflict",
                       payload={"availableSheets": [s["name"] for s in existing]})

    sheet = gs.add_worksheet(client, target.drive_id, target.item_id, name)
    if position is not None:
        sheet = gs.patch_worksheet(client, target.drive_id, target.item_id, sheet.get("name", name),
                                   {"position": int(position)}) or sheet
    name_resolver.invalidate("sheet", target.item_id)
    audit.record_event("SHEET_CREATED", {**target.describe(), "sheetName": name}, file_name=target.item_name)
    return {"id": sheet.get("id"), "name": sheet.get("name", name), "position": sheet.get("position")}


def delete_sheet(client: GraphClient, target: WorkbookTarget) -> dict:
    sheet = _require_sheet(target)
    existing = name_resolver.list_sheets(client, target.drive_id, target.item_id)
    if len(existing) <= 1:
        raise ValidationError("Cannot delete the last worksheet in a workbook")
    gs.delete_worksheet(client, target.drive_id, target.item_id, sheet)
    name_resolver.invalidate("sheet", target.item_id)
    audit.record_event("SHEET_DELETED", target.describe(), file_name=target.item_name)
    return {"deleted": sheet, "remainingSheets": [s["name"] for s in existing if s["name"] != sheet]}


def build_blank_workbook(sheet_names: Optional[List[str]] = None) -> bytes:
    """In-memory .xlsx with the given (or one default) worksheet."""
    names = [n for n in (sheet_names or []) if n] or ["Sheet1"]
    wb = Workbook()
    ws = wb.active
    ws.title = names[0]
    for extra in names[1:]:
        wb.create_sheet(title=extra)
    bio = io.BytesIO()
    wb.save(bio)
    bio.seek(0)
    return bio.read()


def create_file(
    client: GraphClient,
    ctx: SiteContext,
    drive_name: Optional[str],
    file_name: str,
    folder_path: Optional[str] = None,
    sheet_names: Optional[List[str]] = None,
) -> dict:
    file_name = (file_name or "").strip()
    if not file_name.lower().endswith(".xlsx"):
        raise ValidationError("fileName must end with .xlsx")
    if "/" in file_name:
        raise ValidationError("fileName must not contain '/'; use folderPath")
    if folder_path and not folder_path.startswith("/"):
        raise ValidationError("folderPath must start with '/'")

    site_id = name_resolver.resolve_site_id(client, ctx)
    drive = name_resolver.resolve_drive(client, site_id, drive_name)
    path = f"{(folder_path or '').rstrip('/')}/{file_name}"
    item = gs.upload_content(client, drive["id"], path, build_blank_workbook(sheet_names), "fail")
    name_resolver.invalidate("item", drive["id"])
    audit.record_event("FILE_CREATED", {"driveName": drive["name"], "path": path}, file_name=file_name)
    return {
        "id": item.get("id"),
        "name": item.get("name", file_name),
        "path": path,
        "driveName": drive["name"],
        "webUrl": item.get("webUrl"),
    }


def delete_file(client: GraphClient, target: WorkbookTarget) -> dict:
    gs.delete_item(client, target.drive_id, target.item_id)
    name_resolver.invalidate("item", target.drive_id)
    name_resolver.invalidate("sheet", target.item_id)
    audit.record_event("FILE_DELETED", target.describe(), file_name=target.item_name)
    return {"deleted": target.item_name, "path": target.item_path}


# ───────────────────────── tables ─────────────────────────
def read_table(client: GraphClient, target: WorkbookTarget, table_name: str) -> dict:
    if not table_name:
        raise ValidationError("tableName is required")
    header = gs.read_table_header(client, target.drive_id, target.item_id, table_name)
    rows_payload = gs.read_table_rows(client, target.drive_id, target.item_id, table_name)
    headers = ((header.get("values") or [[]])[0]) or []
    values: List[List[Any]] = []
    for r in rows_payload.get("value", []):
        values.extend(r.get("values", []))
    columns, records, truncated = _records({"values": [headers] + values} if headers else {"values": values},
                                           first_row_headers=bool(headers))
    return {
        "tableName": table_name,
        "headers": headers,
        "rowCount": len(values),
        "values": values,
        "records": records,
        "truncated": truncated,
    }


def add_table_rows(client: GraphClient, target: WorkbookTarget, table_name: str, values: Any) -> dict:
    if not table_name:
        raise ValidationError("tableName is required")
    values = validate_values(values)
    resp = gs.add_table_rows(client, target.drive_id, target.item_id, table_name, values)
    audit.record_event(
        "WRITE", {**target.describe(), "tableName": table_name, "rows": len(values)}, file_name=target.item_name
    )
    return {"tableName": table_name, "rowsAdded": len(values), "index": resp.get("index")}


# ───────────────────────── batch ─────────────────────────
def _run_batch_op(client: GraphClient, base: Mapping[str, Any], op: Mapping[str, Any]) -> dict:
    op_type = op.get("type")
    if op_type not in BATCH_TYPES:
        raise ValidationError(f"unsupported operation type '{op_type}'")
    params = {**base, **{k: v for k, v in op.items() if k != "type"}}

    if op_type in ("read_range", "write_range"):
        target = name_resolver.resolve_target(client, params, need_sheet=True)
        if op_type == "read_range":
            return read(client, target)
        return write(client, target, params.get("values"))

    target = name_resolver.resolve_target(client, params)
    if op_type == "read_table":
        return read_table(client, target, params.get("tableName"))
    return add_table_rows(client, target, params.get("tableName"), params.get("values"))


def batch(client: GraphClient, base: Mapping[str, Any], operations: Any) -> Tuple[dict, int]:
    """Run operations in order; one failure does not stop the rest."""
    if not isinstance(operations, list) or not operations:
        raise ValidationError("operations must be a non-empty array")

    results = []
    for index, op in enumerate(operations):
        if not isinstance(op, dict):
            results.append({"index": index, "status": "error", "error": {"code": 400, "message": "operation must be an object"}})
            continue
        try:
            data = _run_batch_op(client, base, op)
            results.append({"index": index, "type": op.get("type"), "status": "success", "data": data})
        except AppError as e:
            log.info("batch op %d (%s) failed: %s", index, op.get("type"), e.message)
            results.append({
                "index": index,
                "type": op.get("type"),
                "status": "error",
                "error": {"code": e.status_code, "message": e.message, "category": e.category, **e.payload},
            })

    ok = sum(1 for r in results if r["status"] == "success")
    failed = len(results) - ok
    summary = {"total": len(results), "successful": ok, "failed": failed}
    audit.record_event("BATCH", {"summary": summary}, success=failed == 0)

    if failed == 0:
        return {"status": "success", "data": {"summary": summary, "results": results}}, 200
    if ok == 0:
        return {"status": "error", "message": "All batch operations failed",
                "data": {"summary": summary, "results": results}}, 400
    return {"status": "partial_success", "data": {"summary": summary, "results": results}}, 207
