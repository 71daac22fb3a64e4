# excel_bridge/services/rename_service.py
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Tuple

from excel_bridge import graph_sharepoint as gs
from excel_bridge.errors import AppError, GraphAPIError, ValidationError
from excel_bridge.graph_client import GraphClient
from excel_bridge.services import audit, name_resolver
from excel_bridge.services.name_resolver import SiteContext

log = logging.getLogger(__name__)

_INVALID_ITEM_CHARS = re.compile(r'[\\/:*?"<>|]')
_INVALID_SHEET_CHARS = re.compile(r"[\[\]:*?/\\]")
MAX_SHEET_NAME = 31
RENAME_TYPES = ("file", "folder", "sheet")


def _parent_of(path: str) -> str:
    parent = path.rsplit("/", 1)[0]
    return parent or ""


def _check_item_name(new_name: Any) -> str:
    new_name = (new_name or "").strip() if isinstance(new_name, str) else ""
    if not new_name:
        raise ValidationError("newName is required")
    if _INVALID_ITEM_CHARS.search(new_name) or new_name.endswith("."):
        raise ValidationError(f"newName '{new_name}' contains characters SharePoint does not allow")
    return new_name


def _rename_failed(e: GraphAPIError, kind: str, new_name: str, path_before: str) -> AppError:
    """Reword the Graph failures a rename commonly hits; others pass through unchanged."""
    messages = {
        409: f"A {kind} named '{new_name}' already exists in this location",
        403: f"Access denied. You may not have permission to rename this {kind}",
        423: f"{kind.capitalize()} is currently locked and cannot be renamed",
    }
    if e.status_code not in messages:
        return e
    return AppError(
        messages[e.status_code],
        e.status_code,
        category=e.category,
        payload={
            "pathBefore": path_before,
            "attemptedPath": f"{_parent_of(path_before)}/{new_name}",
            "breadcrumbs": [p for p in path_before.split("/") if p],
        },
    )


def _drive(client: GraphClient, params: Mapping[str, Any]) -> dict:
    site_id = name_resolver.resolve_site_id(client, SiteContext.from_params(params))
    return name_resolver.resolve_drive(client, site_id, params.get("driveName"))


def _rename_entry(client: GraphClient, params: Mapping[str, Any], kind: str) -> dict:
    new_name = _check_item_name(params.get("newName"))
    drive = _drive(client, params)
    if params.get("selectedItemId"):
        entry = name_resolver.resolve_entry_by_id(
            client, drive["id"], str(params["selectedItemId"]), folders=kind == "folder"
        )
    elif kind == "file":
        if params.get("fullPath"):
            entry = name_resolver.resolve_item_by_full_path(client, drive["id"], params["fullPath"])
        else:
            entry = name_resolver.resolve_item(client, drive["id"], params.get("itemName"), params.get("itemPath"))
    else:
        if not (params.get("folderName") or params.get("folderPath")):
            raise ValidationError("folderName or folderPath is required")
        entry = name_resolver.resolve_folder(client, drive["id"], params.get("folderName"), params.get("folderPath"))

    path_before = entry["path"]
    try:
        updated = gs.patch_item(client, drive["id"], entry["id"], {"name": new_name})
    except GraphAPIError as e:
        audit.record_event(
            f"{kind.upper()}_RENAMED",
            {"driveName": drive["name"], "pathBefore": path_before, "newName": new_name, "error": e.message},
            success=False,
            file_name=entry["name"],
        )
        raise _rename_failed(e, kind, new_name, path_before) from e

    name_resolver.invalidate("item" if kind == "file" else "folder", drive["id"])
    if kind == "folder":
        # paths of everything below the folder changed too
        name_resolver.invalidate("item", drive["id"])
    final_name = updated.get("name") or new_name
    path_after = f"{_parent_of(path_before)}/{final_name}"
    audit.record_event(
        f"{kind.upper()}_RENAMED",
        {"driveName": drive["name"], "oldName": entry["name"], "newName": final_name,
         "pathBefore": path_before, "pathAfter": path_after},
        file_name=final_name,
    )
    log.info("%s renamed: %s -> %s", kind, path_before, path_after)
    return {
        "id": entry["id"],
        "type": kind,
        "driveName": drive["name"],
        "oldName": entry["name"],
        "newName": final_name,
        "pathBefore": path_before,
        "pathAfter": path_after,
        "lastModifiedDateTime": updated.get("lastModifiedDateTime"),
    }


def rename_file(client: GraphClient, params: Mapping[str, Any]) -> dict:
    return _rename_entry(client, params, "file")


def rename_folder(client: GraphClient, params: Mapping[str, Any]) -> dict:
    return _rename_entry(client, params, "folder")


def rename_sheet(client: GraphClient, params: Mapping[str, Any]) -> dict:
    new_name = (params.get("newName") or params.get("newSheetName") or "").strip()
    if not new_name:
        raise ValidationError("newName is required")
    if len(new_name) > MAX_SHEET_NAME or _INVALID_SHEET_CHARS.search(new_name):
        raise ValidationError(
            f"Sheet names are limited to {MAX_SHEET_NAME} characters and may not contain [ ] : * ? / \\"
        )

    target = name_resolver.resolve_target(client, params, need_sheet=True)
    sheets = name_resolver.list_sheets(client, target.drive_id, target.item_id)
    clash = [s for s in name_resolver.match_by_name(sheets, new_name) if s["name"] != target.sheet]
    if clash:
        raise AppError(
            f"A sheet named '{new_name}' already exists in this workbook",
            409,
            category="conflict",
            payload={"availableSheets": [s["name"] for s in sheets]},
        )

    try:
        updated = gs.patch_worksheet(client, target.drive_id, target.item_id, target.sheet, {"name": new_name})
    except GraphAPIError as e:
        raise _rename_failed(e, "sheet", new_name, f"{target.item_path}/{target.sheet}") from e

    name_resolver.invalidate("sheet", target.item_id)
    audit.record_event(
        "SHEET_RENAMED",
        {**target.describe(), "oldName": target.sheet, "newName": updated.get("name") or new_name},
        file_name=target.item_name,
    )
    return {
        "id": updated.get("id") or target.sheet_id,
        "type": "sheet",
        "itemName": target.item_name,
        "oldName": target.sheet,
        "newName": updated.get("name") or new_name,
        "pathBefore": f"{target.item_path}/{target.sheet}",
        "pathAfter": f"{target.item_path}/{updated.get('name') or new_name}",
    }


def rename_suggestions(client: GraphClient, params: Mapping[str, Any]) -> dict:
    old_term = (params.get("oldTerm") or "").strip()
    new_term = params.get("newTerm")
    if not old_term or new_term is None:
        raise ValidationError("oldTerm and newTerm are required")

    drive = _drive(client, params)
    pattern = re.compile(re.escape(old_term), re.IGNORECASE)
    suggestions = []
    for entry in name_resolver.walk_drive(client, drive["id"]):
        if not pattern.search(entry["name"] or ""):
            continue
        suggested = pattern.sub(lambda _m: new_term, entry["name"])
        suggestions.append({
            "id": entry["id"],
            "type": "folder" if entry["isFolder"] else "file",
            "currentName": entry["name"],
            "suggestedName": suggested,
            "path": entry["path"],
            "suggestedPath": f"{_parent_of(entry['path'])}/{suggested}",
            "parentId": entry["parentId"],
        })
    return {
        "driveName": drive["name"],
        "oldTerm": old_term,
        "newTerm": new_term,
        "total": len(suggestions),
        "suggestions": suggestions,
    }


_HANDLERS = {"file": rename_file, "folder": rename_folder, "sheet": rename_sheet}


def batch_rename(client: GraphClient, base: Mapping[str, Any], operations: Any) -> Tuple[dict, int]:
    if not isinstance(operations, list) or not operations:
        raise ValidationError("operations must be a non-empty array")

    results: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for index, op in enumerate(operations):
        op_type = op.get("type") if isinstance(op, dict) else None
        try:
            if op_type not in _HANDLERS:
                raise ValidationError(f"Unknown operation type: {op_type}")
            params = {**base, **{k: v for k, v in op.items() if k != "type"}}
            results.append({"index": index, "operation": op_type, "success": True,
                            "data": _HANDLERS[op_type](client, params)})
        except AppError as e:
            log.info("batch rename op %d failed: %s", index, e.message)
            errors.append({"index": index, "operation": op_type, "code": e.status_code, "error": e.message})

    summary = {"total": len(operations), "successful": len(results), "failed": len(errors)}
    body = {"data": {"summary": summary, "results": results, "errors": errors}}
    if not errors:
        return {"status": "success", **body}, 200
    if not results:
        return {"status": "error", "message": "All rename operations failed", **body}, 400
    return {"status": "partial_success", **body}, 207
