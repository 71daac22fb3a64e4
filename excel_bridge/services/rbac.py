# excel_bridge/services/rbac.py
from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Dict, Optional

import jwt
from flask import g, request

from excel_bridge.config import cfg
from excel_bridge.errors import AppError, PermissionDenied

log = logging.getLogger(__name__)

"""
Role permissions:
  - admin: write, delete, create
  - editor: write
  - viewer: read only (the fallback for anything unrecognized)
"""
ROLE_PERMISSIONS: Dict[str, Dict[str, bool]] = {
    "admin":  {"write": True, "delete": True, "create": True},
    "editor": {"write": True, "delete": False, "create": False},
    "viewer": {"write": False, "delete": False, "create": False},
}
ROLES_BY_PRECEDENCE = ("admin", "editor", "viewer")

_jwks_clients: Dict[str, jwt.PyJWKClient] = {}


def is_allowed(role: Optional[str], action: str) -> bool:
    perms = ROLE_PERMISSIONS.get((role or "viewer").lower(), ROLE_PERMISSIONS["viewer"])
    return bool(perms.get(action, False))


def role_from_claims(claims: Any) -> str:
    if not isinstance(claims, dict):
        return "viewer"
    candidates = []
    for key in ("roles", "groups"):
        if isinstance(claims.get(key), list):
            candidates.extend(claims[key])
    for key in ("appRole", "group"):
        if isinstance(claims.get(key), str):
            candidates.append(claims[key])
    names = {str(c).lower() for c in candidates if c}
    for role in ROLES_BY_PRECEDENCE:
        if role in names:
            return role
    return "viewer"


def _jwks_client(tenant: str) -> jwt.PyJWKClient:
    client = _jwks_clients.get(tenant)
    if client is None:
        client = jwt.PyJWKClient(f"https://login.microsoftonline.com/{tenant}/discovery/v2.0/keys")
        _jwks_clients[tenant] = client
    return client


def decode_bearer(token: str) -> Dict[str, Any]:
    """Verify a role token with the shared secret, or with the tenant's Entra ID signing keys."""
    audience = str(cfg("JWT_AUDIENCE") or cfg("AZURE_CLIENT_ID") or "") or None
    secret = str(cfg("JWT_SECRET_KEY") or "")
    options = {"verify_aud": audience is not None}
    if secret:
        return jwt.decode(token, secret, algorithms=[str(cfg("JWT_ALG", "HS256"))],
                          audience=audience, options=options)

    tenant = str(cfg("AZURE_TENANT_ID") or "")
    if not tenant:
        raise AppError("No JWT_SECRET_KEY or AZURE_TENANT_ID configured for token verification",
                       500, category="configuration")
    key = _jwks_client(tenant).get_signing_key_from_jwt(token)
    return jwt.decode(token, key.key, algorithms=["RS256", "RS384", "RS512"],
                      audience=audience, options=options)


def current_role() -> str:
    """Role of the caller: X-User-Role outside production, a verified JWT in production."""
    cached = getattr(g, "role", None)
    if cached:
        return cached

    if str(cfg("APP_ENV", "development")).lower() != "production":
        header = (request.headers.get("X-User-Role") or "").strip().lower()
        role = header if header in ROLE_PERMISSIONS else "viewer"
    else:
        auth = request.headers.get("Authorization", "")
        if not auth.lower().startswith("bearer "):
            raise AppError("Unauthorized: Bearer token required.", 401, category="auth")
        try:
            claims = decode_bearer(auth.split(" ", 1)[1].strip())
        except jwt.PyJWTError as e:
            log.warning("token verification failed for %s %s: %s", request.method, request.path, e)
            raise AppError("Unauthorized: Invalid token.", 401, category="auth") from e
        role = role_from_claims(claims)
        g.user = claims.get("preferred_username") or claims.get("upn") or claims.get("sub")

    g.role = role
    return role


def check_permission(action: str) -> None:
    """Raise PermissionDenied when RBAC is on and the caller's role lacks `action`."""
    if not cfg("RBAC_ENABLED", False):
        return
    role = current_role()
    if not is_allowed(role, action):
        log.info("denied %s for role %s on %s", action, role, request.path)
        raise PermissionDenied(
            f"Forbidden: role '{role}' is not allowed to {action}",
            payload={"role": role, "requiredPermission": action},
        )


def require_permission(action: str):
    """Route decorator; a no-op unless RBAC_ENABLED."""

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            check_permission(action)
            return fn(*args, **kwargs)

        return wrapper

    return decorator
