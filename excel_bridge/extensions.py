# excel_bridge/extensions.py
from flask import Flask
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def init_extensions(app: Flask):
    db.init_app(app)
    CORS(
        app,
        resources={r"/*": {"origins": app.config.get("CORS_ALLOWED_ORIGINS") or "*"}},
        expose_headers=["X-Request-ID"],
    )
