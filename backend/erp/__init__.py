# backend/erp/__init__.py
import logging

from flask import Flask, jsonify, request
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException

from .config import Config
from .errors import ConstraintViolation, WorkflowError
from .extensions import db, migrate


@event.listens_for(Engine, "connect")
def _sqlite_pragmas(dbapi_connection, connection_record):
    # SQLite ships with foreign keys off; every connection turns them on.
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def _engine_options(app: Flask) -> None:
    uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if uri.startswith("sqlite"):
        options = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
        connect_args = dict(options.get("connect_args") or {})
        # Driver busy timeout bounds the wait for BEGIN IMMEDIATE
        connect_args.setdefault("timeout", float(app.config.get("LOCK_TIMEOUT_SECONDS", 5)))
        options["connect_args"] = connect_args
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = options


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
    logging.getLogger("erp").setLevel(app.config.get("LOG_LEVEL", "INFO"))

    _engine_options(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.inventory import inventory_bp
    from .routes.sales import sales_bp
    from .routes.purchases import purchases_bp
    from .routes.finance import finance_bp
    from .routes.reports import reports_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(purchases_bp)
    app.register_blueprint(finance_bp)
    app.register_blueprint(reports_bp)

    @app.errorhandler(WorkflowError)
    def handle_workflow_error(exc: WorkflowError):
        if exc.status_code >= 500:
            app.logger.warning("%s on %s %s: %s", exc.kind, request.method, request.path, exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(IntegrityError)
    def handle_integrity_error(exc: IntegrityError):
        # Schema details stay in the log
        db.session.rollback()
        app.logger.warning("Integrity error on %s %s: %s", request.method, request.path, exc.orig)
        err = ConstraintViolation()
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(Exception)
    def handle_unexpected_error(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "internal_error", "message": "Internal server error", "details": {}, "retryable": False}), 500

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Actor-Id, X-Actor-Role"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
