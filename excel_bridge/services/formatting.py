# excel_bridge/services/formatting.py
from __future__ import annotations

import logging
import re
from typing import Any, Callable, Dict, List

from excel_bridge import graph_sharepoint as gs
from excel_bridge.errors import AppError, ValidationError
from excel_bridge.graph_client import GraphClient
from excel_bridge.services import audit
from excel_bridge.services.cell_refs import parse_sheet_and_address
from excel_bridge.services.name_resolver import WorkbookTarget

log = logging.getLogger(__name__)

COLOR_NAMES = {
    "red": "#FF0000",
    "green": "#00FF00",
    "blue": "#0000FF",
    "yellow": "#FFFF00",
    "orange": "#FFA500",
    "purple": "#800080",
    "pink": "#FFC0CB",
    "brown": "#A52A2A",
    "gray": "#808080",
    "grey": "#808080",
    "black": "#000000",
    "white": "#FFFFFF",
}
_HEX_RE = re.compile(r"^#?([0-9A-Fa-f]{6})$")


def normalize_color(color: Any) -> str:
    if not color:
        return "#000000"
    s = str(color).strip()
    if s.lower() in COLOR_NAMES:
        return COLOR_NAMES[s.lower()]
    m = _HEX_RE.match(s)
    if m:
        return f"#{m.group(1).upper()}"
    raise ValidationError(f"Unrecognized color '{color}'")


def _number(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number")


def _range(op: Dict[str, Any]) -> str:
    _, address = parse_sheet_and_address(op.get("range") or "")
    if not address:
        raise ValidationError(f"range is required for {op.get('type')} operation")
    return address


class _Ctx:
    def __init__(self, client: GraphClient, target: WorkbookTarget):
        self.client = client
        self.target = target

    def range_url(self, address: str) -> str:
        return gs.range_url(self.target.drive_id, self.target.item_id, self.target.sheet, address)

    def sheet_url(self) -> str:
        return gs.worksheet_url(self.target.drive_id, self.target.item_id, self.target.sheet)


# ───────────────────────── operations ─────────────────────────
def _highlight(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    address = _range(op)
    color = normalize_color(op.get("color") or op.get("backgroundColor"))
    ctx.client.patch(f"{ctx.range_url(address)}/format/fill", json={"color": color})
    return {"range": address, "color": color}


def _font(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    address = _range(op)
    body: Dict[str, Any] = {}
    for key in ("bold", "italic", "underline", "name"):
        if key in op:
            body[key] = op[key]
    if op.get("fontName"):
        body["name"] = op["fontName"]
    if op.get("fontSize") or op.get("size"):
        body["size"] = _number(op.get("fontSize") or op.get("size"), "fontSize")
    if op.get("fontColor") or op.get("color"):
        body["color"] = normalize_color(op.get("fontColor") or op.get("color"))
    if body.get("underline") is True:
        body["underline"] = "Single"
    elif body.get("underline") is False:
        body["underline"] = "None"
    if not body:
        raise ValidationError("font operation needs at least one of bold, italic, underline, fontSize, fontColor")
    ctx.client.patch(f"{ctx.range_url(address)}/format/font", json=body)
    return {"range": address, "font": body}


def _borders(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    address = _range(op)
    style = op.get("borderStyle") or "Continuous"
    color = normalize_color(op.get("borderColor") or "#000000")
    sides = op.get("sides") or ["top", "bottom", "left", "right"]
    side_index = {"top": "EdgeTop", "bottom": "EdgeBottom", "left": "EdgeLeft", "right": "EdgeRight"}
    applied = []
    for side in sides:
        edge = side_index.get(str(side).lower())
        if not edge:
            raise ValidationError(f"unknown border side '{side}'")
        ctx.client.patch(
            f"{ctx.range_url(address)}/format/borders('{edge}')",
            json={"style": style, "color": color},
        )
        applied.append(side)
    return {"range": address, "sides": applied, "style": style, "color": color}


def _resize_column(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    column = op.get("column") or op.get("range")
    if not column:
        raise ValidationError("column is required for resizeColumn operation")
    address = f"{column}:{column}" if ":" not in str(column) else str(column)
    if op.get("width") is not None:
        width = _number(op["width"], "width")
        ctx.client.patch(f"{ctx.range_url(address)}/format", json={"columnWidth": width})
        return {"column": column, "width": width}
    ctx.client.post(f"{ctx.range_url(address)}/format/autofitColumns")
    return {"column": column, "autofit": True}


def _resize_row(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    row = op.get("row") or op.get("range")
    if not row:
        raise ValidationError("row is required for resizeRow operation")
    address = f"{row}:{row}" if ":" not in str(row) else str(row)
    if op.get("height") is not None:
        height = _number(op["height"], "height")
        ctx.client.patch(f"{ctx.range_url(address)}/format", json={"rowHeight": height})
        return {"row": row, "height": height}
    ctx.client.post(f"{ctx.range_url(address)}/format/autofitRows")
    return {"row": row, "autofit": True}


def _merge(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    address = _range(op)
    ctx.client.post(f"{ctx.range_url(address)}/merge", json={"across": bool(op.get("across", False))})
    return {"range": address}


def _unmerge(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    address = _range(op)
    ctx.client.post(f"{ctx.range_url(address)}/unmerge")
    return {"range": address}


def _formula(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    expression = op.get("expression") or op.get("formula")
    cell = op.get("targetCell") or op.get("range")
    if not expression or not cell:
        raise ValidationError("expression and targetCell are required for formula operation")
    if not str(expression).startswith("="):
        expression = f"={expression}"
    if not op.get("overwrite"):
        current = ctx.client.get(ctx.range_url(cell), params={"$select": "values,formulas"})
        value = ((current.get("values") or [[None]])[0] or [None])[0]
        if value not in (None, ""):
            raise ValidationError(f"Cell {cell} contains data. Set overwrite: true to replace.")
    ctx.client.patch(ctx.range_url(cell), json={"formulas": [[expression]]})
    return {"cell": cell, "expression": expression}


def _number_format(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    address = _range(op)
    fmt = op.get("format") or op.get("numberFormat")
    if not fmt:
        raise ValidationError("format is required for numberFormat operation")
    current = ctx.client.get(ctx.range_url(address), params={"$select": "rowCount,columnCount"})
    rows, cols = int(current.get("rowCount") or 1), int(current.get("columnCount") or 1)
    ctx.client.patch(ctx.range_url(address), json={"numberFormat": [[fmt] * cols for _ in range(rows)]})
    return {"range": address, "format": fmt}


def _named_range(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    name = op.get("name")
    address = _range(op)
    if not name:
        raise ValidationError("name and range are required for namedRange operation")
    sheet = ctx.target.sheet.replace("'", "''")
    gs.add_named_item(
        ctx.client, ctx.target.drive_id, ctx.target.item_id,
        name, f"='{sheet}'!{address}", op.get("comment") or "",
    )
    return {"name": name, "range": address}


def _data_validation(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    address = _range(op)
    rule = op.get("rule")
    if not isinstance(rule, dict):
        raise ValidationError("rule is required for dataValidation operation")
    body: Dict[str, Any] = {"rule": rule.get("rule") or {rule.get("type", "list"): rule.get("criteria") or {}}}
    if rule.get("errorAlert"):
        body["errorAlert"] = rule["errorAlert"]
    if rule.get("prompt") or rule.get("inputMessage"):
        body["prompt"] = rule.get("prompt") or rule.get("inputMessage")
    ctx.client.patch(f"{ctx.range_url(address)}/dataValidation", json=body)
    return {"range": address, "rule": rule}


def _conditional(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    address = _range(op)
    rule = op.get("rule")
    if not isinstance(rule, dict):
        raise ValidationError("rule is required for conditionalFormatting operation")
    fmt = op.get("format") or {}
    condition = rule.get("condition") or {}
    body = {
        "type": rule.get("type") or "cellValue",
        "cellValue": {
            "formula1": str(condition.get("value", "")),
            "operator": condition.get("operator") or "GreaterThan",
        },
    }
    created = ctx.client.post(f"{ctx.range_url(address)}/conditionalFormats/add", json=body)
    cf_id = created.get("id")
    style: Dict[str, Any] = {}
    if fmt.get("backgroundColor"):
        style["fill"] = {"color": normalize_color(fmt["backgroundColor"])}
    if fmt.get("fontColor"):
        style["font"] = {"color": normalize_color(fmt["fontColor"])}
    if cf_id and style:
        ctx.client.patch(
            f"{ctx.range_url(address)}/conditionalFormats/{cf_id}/cellValue/format",
            json=style,
        )
    return {"range": address, "rule": rule}


def _sort(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    address = _range(op)
    fields = op.get("sortFields")
    if not fields:
        raise ValidationError("sortFields are required for sort operation")
    ctx.client.post(
        f"{ctx.range_url(address)}/sort/apply",
        json={"fields": fields, "hasHeaders": op.get("hasHeaders", True) is not False},
    )
    return {"range": address, "sortFields": fields}


def _filter(ctx: _Ctx, op: Dict[str, Any]) -> dict:
    address = _range(op)
    body: Dict[str, Any] = {"range": address}
    if op.get("criteria"):
        body["criteria"] = op["criteria"]
        body["columnIndex"] = int(_number(op.get("columnIndex", 0), "columnIndex"))
    ctx.client.post(f"{ctx.sheet_url()}/autoFilter/apply", json=body)
    return {"range": address, "criteria": op.get("criteria")}


OPERATIONS: Dict[str, Callable[[_Ctx, Dict[str, Any]], dict]] = {
    "highlight": _highlight,
    "backgroundColor": _highlight,
    "font": _font,
    "textStyle": _font,
    "borders": _borders,
    "resizeColumn": _resize_column,
    "resizeRow": _resize_row,
    "mergeCells": _merge,
    "unmergeCells": _unmerge,
    "formula": _formula,
    "numberFormat": _number_format,
    "namedRange": _named_range,
    "dataValidation": _data_validation,
    "conditionalFormatting": _conditional,
    "sort": _sort,
    "filter": _filter,
}


def apply_formatting(client: GraphClient, target: WorkbookTarget, operations: Any) -> dict:
    """Run each formatting operation on the target sheet; failures are reported per operation."""
    if not isinstance(operations, list) or not operations:
        raise ValidationError("operations must be a non-empty array")
    if not target.sheet:
        raise ValidationError("sheetName could not be determined")

    unknown = [
        op.get("type") if isinstance(op, dict) else op
        for op in operations
        if not isinstance(op, dict) or op.get("type") not in OPERATIONS
    ]
    if unknown:
        raise ValidationError(
            f"unsupported operation type(s): {', '.join(str(u) for u in unknown)}",
            payload={"supportedTypes": sorted(OPERATIONS)},
        )

    ctx = _Ctx(client, target)
    results: List[dict] = []
    for op in operations:
        op_type = op["type"]
        try:
            detail = OPERATIONS[op_type](ctx, op)
            results.append({"type": op_type, "status": "success", **detail})
        except AppError as e:
            log.warning("format operation %s failed: %s", op_type, e.message)
            results.append({"type": op_type, "status": "error", "range": op.get("range"), "error": e.message})

    ok = sum(1 for r in results if r["status"] == "success")
    summary = {"total": len(results), "successful": ok, "failed": len(results) - ok}
    audit.record_event(
        "FORMAT_APPLIED",
        {**target.describe(), "summary": summary, "types": [r["type"] for r in results]},
        success=summary["failed"] == 0,
        file_name=target.item_name,
    )
    return {**target.describe(), "summary": summary, "results": results}
