import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from sqlalchemy import inspect as sa_inspect
from werkzeug.exceptions import HTTPException

from app.cdms.auth import bp as auth_bp, load_current_user
from app.cdms.config import load_config
from app.cdms.db import init_db, teardown_db_session
from app.cdms.errors import DocumentControlError
from app.cdms.modules.acknowledgments.admin import bp as acknowledgments_bp
from app.cdms.modules.approvals.admin import bp as approvals_bp
from app.cdms.modules.document_control.admin import bp as doc_control_bp
from app.cdms.routes import bp as routes_bp
from app.cdms.services import build_services
from app.cdms.storage import StorageError

logger = logging.getLogger(__name__)

# Tables/columns the code expects; missing ones mean `alembic upgrade head` was not run.
_EXPECTED_SCHEMA = {
    "documents": ("current_version", "published_at", "deleted_at"),
    "document_versions": ("av_scan_status", "extraction_error"),
    "approval_workflows": ("workflow_type", "completed_at"),
    "approval_steps": ("step_order", "approver_user_id"),
    "ack_campaigns": ("audience_type", "audience_ids"),
    "ack_assignments": ("quiz_score", "quiz_passed"),
}


def _rollback_request_session() -> None:
    s = getattr(g, "db_session", None)
    if s is not None:
        s.rollback()


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    level = getattr(logging, str(app.config.get("LOG_LEVEL") or "INFO").upper(), logging.INFO)
    logging.getLogger("app.cdms").setLevel(level)
    app.logger.setLevel(level)

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")
        if app.config.get("AV_BACKEND") == "none":
            app.logger.warning("AV_BACKEND=none in production; uploads are not virus-scanned.")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    # Storage config check (fail loudly on misconfiguration)
    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.extensions["cdms"] = build_services(app.config)

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(doc_control_bp, url_prefix="/api/documents")
    app.register_blueprint(approvals_bp, url_prefix="/api/workflows")
    app.register_blueprint(acknowledgments_bp, url_prefix="/api/ack")

    @app.before_request
    def _session_defaults():
        from flask import session

        session.permanent = True

    app.before_request(load_current_user)
    app.teardown_appcontext(teardown_db_session)

    # Schema health (lean): log drift between code expectations and DB schema.
    app.config.setdefault("_schema_health_ok", True)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> None:
        missing: list[str] = []
        try:
            insp = sa_inspect(app.extensions["sqlalchemy_engine"])
            for table, cols in _EXPECTED_SCHEMA.items():
                if not insp.has_table(table):
                    missing.append(f"{table} (table)")
                    continue
                have = {c["name"] for c in insp.get_columns(table)}
                missing.extend(f"{table}.{c}" for c in cols if c not in have)
        except Exception as e:
            app.logger.exception("Schema health check failed: %s", e)
            return
        if missing:
            app.config["_schema_health_ok"] = False
            app.config["_schema_health_missing"] = missing
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))

    _run_schema_health_check()

    @app.errorhandler(DocumentControlError)
    def _err_domain(e: DocumentControlError):  # type: ignore[no-redef]
        _rollback_request_session()
        rid = getattr(g, "request_id", None)
        if e.http_status >= 500:
            app.logger.error("%s: %s (request_id=%s details=%s)", e.kind, e.message, rid, e.details)
        else:
            app.logger.info("%s: %s (request_id=%s)", e.kind, e.message, rid)
        return jsonify({"error": e.kind, "message": e.message}), e.http_status

    @app.errorhandler(StorageError)
    def _err_storage(e: StorageError):  # type: ignore[no-redef]
        _rollback_request_session()
        app.logger.error("Storage failure (request_id=%s): %s", getattr(g, "request_id", None), e)
        return jsonify({"error": "external_failure", "message": "Document storage is unavailable."}), 502

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"error": "unauthorized", "message": "Forbidden.", "missing_permission": missing}), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        limit_mb = int(app.config.get("MAX_CONTENT_LENGTH") or 0) // (1024 * 1024)
        return jsonify({"error": "validation", "message": f"File too large. Maximum size is {limit_mb}MB."}), 413

    @app.errorhandler(HTTPException)
    def _err_http(e: HTTPException):  # type: ignore[no-redef]
        return jsonify({"error": (e.name or "error").lower().replace(" ", "_"), "message": e.description}), e.code

    @app.errorhandler(Exception)
    def _err_500(e):  # type: ignore[no-redef]
        _rollback_request_session()
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s path=%s)", rid, request.path)
        return jsonify({"error": "internal", "request_id": rid}), 500

    logger.info("create_app() complete; app ready to serve")

    return app
