# excel_bridge/errors.py
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flask import Flask, g, jsonify
from werkzeug.exceptions import HTTPException

log = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class AppError(Exception):
    """Operational error with an HTTP status, a category and extra JSON fields."""

    status_code = 500
    category = "internal"
    status_label = "error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        *,
        category: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if category is not None:
            self.category = category
        self.payload: Dict[str, Any] = dict(payload or {})

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "status": self.status_label,
            "message": self.message,
            "error": {
                "code": self.status_code,
                "message": self.message,
                "category": self.category,
            },
            "requestId": getattr(g, "request_id", None),
            "timestamp": _now_iso(),
        }
        body.update(self.payload)
        return body


class ValidationError(AppError):
    status_code = 400
    category = "validation"


class ConfigurationError(AppError):
    status_code = 500
    category = "configuration"


class PermissionDenied(AppError):
    status_code = 403
    category = "forbidden"


class NameNotFoundError(AppError):
    """Zero candidates matched a name; carries every available name."""

    status_code = 404
    category = "not_found"

    def __init__(self, entity: str, name: Optional[str], available: List[str]):
        label = entity.capitalize()
        if name:
            message = f"{label} '{name}' not found"
        else:
            message = f"No {entity}s found"
        self.entity = entity
        self.available = list(available)
        super().__init__(message, payload={f"available{label}s": self.available})


class SelectionRequiredError(AppError):
    """Name omitted while more than one candidate exists."""

    status_code = 400
    category = "selection_required"
    status_label = "selection_required"

    def __init__(self, entity: str, available: List[str], param: Optional[str] = None):
        label = entity.capitalize()
        param = param or f"{entity}Name"
        self.entity = entity
        self.available = list(available)
        super().__init__(
            f"Multiple {entity}s found. Please specify {param}.",
            payload={f"available{label}s": self.available},
        )


class MultipleMatchesError(AppError):
    """More than one candidate matched a name. Never auto-resolved."""

    status_code = 409
    category = "disambiguation_required"
    status_label = "multiple_matches"

    def __init__(self, entity: str, name: str, matches: List[Dict[str, Any]], hint: str = "itemPath"):
        self.entity = entity
        self.matches = [
            {
                "index": i + 1,
                "id": m.get("id"),
                "name": m.get("name"),
                "path": m.get("path"),
                "parentId": m.get("parentId"),
            }
            for i, m in enumerate(matches)
        ]
        super().__init__(
            f"Multiple {entity}s named '{name}' found. Please specify {hint} or select from the list.",
            payload={
                "entityType": entity,
                "matches": self.matches,
                "instructions": f"Re-send the request with {hint} set to one of the listed paths.",
            },
        )


class GraphAPIError(AppError):
    """A classified failure from Microsoft Graph."""

    status_code = 502
    category = "upstream"

    def __init__(
        self,
        message: str,
        status_code: int,
        *,
        category: str,
        graph_status: Optional[int] = None,
        graph_code: Optional[str] = None,
        retry_after: Optional[str] = None,
    ):
        payload: Dict[str, Any] = {}
        if retry_after:
            payload["retryAfter"] = retry_after
        super().__init__(message, status_code, category=category, payload=payload)
        self.graph_status = graph_status
        self.graph_code = graph_code
        self.retry_after = retry_after


# ───────────────────────── Graph classification ─────────────────────────
_GRAPH_CODE_STATUS = {
    "nameAlreadyExists": (409, "conflict", "An item with that name already exists"),
    "resourceLocked": (423, "locked", "The resource is locked or in use"),
    "accessDenied": (403, "forbidden", "Access denied to the requested resource"),
    "itemNotFound": (404, "not_found", "Requested resource not found"),
}


def _graph_error_body(response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"message": (response.text or "")[:500]}
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        return err
    return {}


def classify_graph_error(response) -> GraphAPIError:
    """Map a non-2xx Graph response to a normalized GraphAPIError."""
    status = response.status_code
    err = _graph_error_body(response)
    code = err.get("code") or ""
    detail = err.get("message") or "Graph API error"
    retry_after = response.headers.get("Retry-After")

    def _err(msg: str, http_status: int, category: str) -> GraphAPIError:
        return GraphAPIError(
            msg, http_status, category=category,
            graph_status=status, graph_code=code or None,
            retry_after=retry_after if http_status == 429 else None,
        )

    if status == 429 or code == "TooManyRequests":
        return _err("Rate limit exceeded. Please try again later", 429, "rate_limited")
    if code in _GRAPH_CODE_STATUS:
        http_status, category, msg = _GRAPH_CODE_STATUS[code]
        return _err(msg, http_status, category)
    if status == 401:
        return _err("Authentication with Microsoft Graph failed", 401, "auth")
    if status == 403:
        return _err("Access denied to the requested resource", 403, "forbidden")
    if status == 404:
        return _err("Requested resource not found", 404, "not_found")
    if status == 400:
        return _err(f"Invalid request: {detail}", 400, "invalid_request")
    if status == 409:
        return _err(f"Conflict: {detail}", 409, "conflict")
    if status == 423:
        return _err("The resource is locked or in use", 423, "locked")
    if status >= 500:
        return _err("Microsoft Graph service error", 502, "upstream")
    return _err(detail, status or 500, "upstream")


# ───────────────────────── Flask wiring ─────────────────────────
def error_response(err: AppError):
    return jsonify(err.to_dict()), err.status_code


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(AppError)
    def _handle_app_error(err: AppError):
        if err.status_code >= 500:
            app.logger.error("request failed: %s (%s)", err.message, err.category)
        else:
            app.logger.info("request rejected: %s (%s)", err.message, err.category)
        return error_response(err)

    @app.errorhandler(HTTPException)
    def _handle_http(err: HTTPException):
        status = err.code or 500
        wrapped = AppError(err.description or err.name, status, category="http")
        return error_response(wrapped)

    @app.errorhandler(Exception)
    def _handle_unexpected(err: Exception):
        app.logger.exception("unhandled error")
        return error_response(AppError("Internal server error", 500))
