# excel_bridge/config.py
import os

from dotenv import load_dotenv
from flask import current_app, has_app_context

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes", "y")


class Config:
    # ── Core app settings ──────────────────────────────────────────────────────
    APP_ENV = os.getenv("APP_ENV", os.getenv("NODE_ENV", "development"))
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # ── Audit store ────────────────────────────────────────────────────────────
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URI", "sqlite:///excel_bridge.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ── Microsoft Entra / Graph (app-only) ─────────────────────────────────────
    AZURE_TENANT_ID     = os.getenv("AZURE_TENANT_ID", os.getenv("TENANT_ID", ""))
    AZURE_CLIENT_ID     = os.getenv("AZURE_CLIENT_ID", os.getenv("CLIENT_ID", ""))
    AZURE_CLIENT_SECRET = os.getenv("AZURE_CLIENT_SECRET", os.getenv("CLIENT_SECRET", ""))
    # Static bearer for local runs; skips MSAL entirely when set
    MS_GRAPH_BEARER     = os.getenv("MS_GRAPH_BEARER", "")

    GRAPH_BASE            = os.getenv("GRAPH_BASE", "https://graph.microsoft.com/v1.0")
    GRAPH_SCOPE           = "https://graph.microsoft.com/.default"
    GRAPH_TIMEOUT_SECONDS = float(os.getenv("GRAPH_TIMEOUT_SECONDS", "30"))

    # ── Default site context ───────────────────────────────────────────────────
    SHAREPOINT_SITE_ID   = os.getenv("SHAREPOINT_SITE_ID", "")
    SHAREPOINT_SITE_URL  = os.getenv("SHAREPOINT_SITE_URL", "")
    SHAREPOINT_HOSTNAME  = os.getenv("SHAREPOINT_HOSTNAME", "")
    SHAREPOINT_SITE_NAME = os.getenv("SHAREPOINT_SITE_NAME", "")

    # ── Name resolution ────────────────────────────────────────────────────────
    NAME_CACHE_TTL_SECONDS         = int(os.getenv("NAME_CACHE_TTL_SECONDS", "600"))  # 0 disables
    EMPTY_LIST_RETRY_DELAY_SECONDS = float(os.getenv("EMPTY_LIST_RETRY_DELAY_SECONDS", "1.0"))
    MAX_SEARCH_DEPTH               = int(os.getenv("MAX_SEARCH_DEPTH", "20"))

    SEARCH_RESULT_LIMIT     = int(os.getenv("SEARCH_RESULT_LIMIT", "50"))
    EXCEL_PREVIEW_ROW_LIMIT = int(os.getenv("EXCEL_PREVIEW_ROW_LIMIT", "500"))

    # ── Roles ──────────────────────────────────────────────────────────────────
    RBAC_ENABLED   = _env_bool("RBAC_ENABLED", "false")
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
    JWT_ALG        = os.getenv("JWT_ALG", "HS256")
    JWT_AUDIENCE   = os.getenv("JWT_AUDIENCE", "")

    # ── CORS (set your client origins here) ────────────────────────────────────
    CORS_ALLOWED_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000").split(",")
        if o.strip()
    ]


def cfg(key: str, default=None):
    """App config first (so tests can override per app), then the class defaults."""
    if has_app_context():
        if key in current_app.config and current_app.config[key] is not None:
            return current_app.config[key]
    return getattr(Config, key, default)
