# excel_bridge/utils/request_params.py
from typing import Any, Dict, Iterable

from flask import request

from excel_bridge.errors import ValidationError

ALIASES = {
    "fileName": "itemName",
    "worksheetName": "sheetName",
    "sharepointHostname": "hostname",
    "sharepointSiteName": "siteName",
}
PATH_PARAMS = ("itemPath", "fullPath", "folderPath")


def request_params() -> Dict[str, Any]:
    """Query string merged with the JSON body (body wins), aliases folded in."""
    params: Dict[str, Any] = dict(request.args.items())
    body = request.get_json(silent=True) or {}
    if isinstance(body, dict):
        params.update(body)
    for alias, canonical in ALIASES.items():
        if params.get(alias) not in (None, "") and params.get(canonical) in (None, ""):
            params[canonical] = params[alias]
    for key in list(params):
        if isinstance(params[key], str):
            params[key] = params[key].strip()
    for key in PATH_PARAMS:
        if params.get(key) and not str(params[key]).startswith("/"):
            raise ValidationError(f"{key} must start with '/'")
    return params


def require(params: Dict[str, Any], names: Iterable[str]) -> None:
    missing = [n for n in names if params.get(n) in (None, "", [])]
    if missing:
        raise ValidationError(f"Missing required parameter(s): {', '.join(missing)}")


def as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "y", "on")
