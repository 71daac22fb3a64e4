# app.py
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flask import Flask, g, jsonify, request
from dotenv import load_dotenv

from excel_bridge.config import Config
from excel_bridge.errors import register_error_handlers
from excel_bridge.extensions import db, init_extensions
from excel_bridge.services import name_resolver

# ===== Blueprints =====
from excel_bridge.routes.audit_routes import audit_bp
from excel_bridge.routes.discovery_routes import discovery_bp
from excel_bridge.routes.excel_routes import excel_bp
from excel_bridge.routes.rename_routes import rename_bp

load_dotenv()

SERVICE_NAME = "excel-bridge"
SERVICE_VERSION = "1.0.0"


def _configure_logging(app: Flask) -> None:
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.logger.setLevel(level)


def _install_request_hooks(app: Flask) -> None:
    @app.before_request
    def _assign_request_id():
        g.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        g.request_started = time.monotonic()

    @app.after_request
    def _log_request(resp):
        resp.headers["X-Request-ID"] = getattr(g, "request_id", "")
        started = getattr(g, "request_started", None)
        elapsed_ms = (time.monotonic() - started) * 1000 if started else 0.0
        app.logger.info(
            "HTTP request %s %s -> %s (%.0f ms) [%s]",
            request.method, request.path, resp.status_code, elapsed_ms, getattr(g, "request_id", "-"),
        )
        return resp


def _endpoint_map(app: Flask):
    rules = []
    for rule in app.url_map.iter_rules():
        if rule.endpoint == "static":
            continue
        methods = sorted(m for m in rule.methods if m not in ("HEAD", "OPTIONS"))
        rules.append({"path": rule.rule, "methods": methods, "endpoint": rule.endpoint})
    rules.sort(key=lambda r: r["path"])
    return rules


# ---------- app factory ----------
def create_app(config_overrides: Optional[Dict[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    _configure_logging(app)
    init_extensions(app)
    register_error_handlers(app)
    _install_request_hooks(app)

    # Register API blueprints (each defines its own prefix)
    app.register_blueprint(excel_bp)
    app.register_blueprint(rename_bp)
    app.register_blueprint(discovery_bp)
    app.register_blueprint(audit_bp)

    # Health check
    @app.get("/health")
    @app.get("/api/health")
    def health():
        return jsonify(
            status="ok",
            service=SERVICE_NAME,
            env=app.config.get("APP_ENV"),
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            cache=name_resolver.cache_stats(),
        )

    @app.get("/")
    def index():
        return jsonify(
            service=SERVICE_NAME,
            version=SERVICE_VERSION,
            description="Name-based Microsoft Graph middleware for SharePoint/OneDrive Excel workbooks",
            docs="/api/docs",
            health="/health",
        )

    @app.get("/api/docs")
    def docs():
        endpoints = _endpoint_map(app)
        return jsonify(status="success", data=endpoints, count=len(endpoints))

    # Import models so the audit table is known before create_all
    import excel_bridge.models  # noqa: F401

    with app.app_context():
        db.create_all()

    app.logger.info(
        "%s ready (env=%s, rbac=%s)", SERVICE_NAME, app.config.get("APP_ENV"), app.config.get("RBAC_ENABLED"),
    )
    return app


if __name__ == "__main__":
    app = create_app()
    app.run(host="localhost", port=5001, debug=True)
