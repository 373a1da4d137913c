import json
import os

import click
from flask import Flask, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from handoff.config import env_bool, env_int, env_str, is_production, payment_webhook_secret, runtime_env
from handoff.errors import HandoffError, RateLimited
from handoff.extensions import cors, db, migrate
from handoff.integrations.payments.factory import payment_health
from handoff.segments.segment_admin import admin_bp
from handoff.segments.segment_locations import locations_bp
from handoff.segments.segment_notifications import notifications_bp
from handoff.segments.segment_orders import orders_bp
from handoff.segments.segment_payment_webhooks import webhooks_bp
from handoff.segments.segment_wallets import wallets_bp
from handoff.utils.actors import user_id_from_request
from handoff.utils.observability import get_request_id, init_sentry, install_request_observers
from handoff.utils import rate_limit

BLUEPRINTS = (orders_bp, wallets_bp, webhooks_bp, locations_bp, notifications_bp, admin_bp)


def _check_production_settings() -> None:
    if not is_production():
        return
    if len(env_str("SECRET_KEY")) < 16:
        raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")
    if not (env_str("DATABASE_URL") or env_str("SQLALCHEMY_DATABASE_URI")):
        raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
    if not payment_webhook_secret():
        raise RuntimeError("PAYMENT_WEBHOOK_SECRET must be set in production")


def _database_url() -> str:
    url = env_str("SQLALCHEMY_DATABASE_URI") or env_str("DATABASE_URL")
    if url:
        return url
    instance_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "instance"))
    os.makedirs(instance_dir, exist_ok=True)
    return "sqlite:///" + os.path.join(instance_dir, "handoff.db").replace(os.sep, "/")


def _engine_options(database_url: str, app) -> dict:
    if database_url.startswith("sqlite"):
        return {}
    options = {
        "pool_pre_ping": True,
        "pool_recycle": env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
        "pool_size": env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
        "max_overflow": env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
        "pool_timeout": env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
    }
    app.logger.info("db_pool %s", " ".join(f"{k}={v}" for k, v in sorted(options.items())))
    return options


def _cors_origins() -> list[str]:
    origins = [o.strip() for o in env_str("CORS_ORIGINS").split(",") if o.strip()]
    if not origins and not is_production():
        return ["*"]
    return origins


def _error_response(code: str, message: str, status: int, details: dict | None = None):
    body = {"ok": False, "error": code, "message": message, "status": int(status)}
    if details:
        body["details"] = details
    rid = get_request_id()
    if rid:
        body["trace_id"] = rid
    return jsonify(body), int(status)


def _register_error_handlers(app) -> None:
    @app.errorhandler(HandoffError)
    def _business_error(error: HandoffError):
        db.session.rollback()
        app.logger.info("business_error code=%s path=%s", error.code, request.path)
        response, status = _error_response(error.code, error.message, error.status, error.details)
        if isinstance(error, RateLimited):
            response.headers["Retry-After"] = str(error.retry_after_seconds)
        return response, status

    @app.errorhandler(HTTPException)
    def _http_error(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        return _error_response(error.name, error.description or error.name, int(error.code or 500))

    @app.errorhandler(Exception)
    def _unhandled(error: Exception):
        db.session.rollback()
        app.logger.exception("unhandled_exception path=%s", request.path)
        return _error_response("InternalServerError", "Internal server error", 500)


def _register_rate_limit_guard(app) -> None:
    app.extensions["rate_limit_store"] = rate_limit.build_counter_store()

    @app.before_request
    def _rate_limit_guard():
        if app.config.get("TESTING") and not env_bool("RATE_LIMIT_IN_TESTS", False):
            return None
        if not rate_limit.rate_limit_enabled(True):
            return None
        user_id = None if request.path.startswith("/api/webhooks/") else user_id_from_request()
        rate_limit.enforce(app.extensions["rate_limit_store"], request, user_id=user_id)
        return None


def _register_health(app) -> None:
    @app.get("/api/health")
    def health():
        payload = {
            "ok": True,
            "service": "handoff-backend",
            "env": runtime_env(),
            "db": "ok",
            "git_sha": env_str("GIT_SHA", "unknown"),
            "payments": payment_health(),
            "rate_limit_store": getattr(app.extensions.get("rate_limit_store"), "name", "unknown"),
        }
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as exc:
            payload["db"] = "fail"
            payload["db_error"] = str(exc)[:300]
        return jsonify(payload)


def _register_cli(app) -> None:
    @app.cli.command("init-db")
    def init_db():
        """Create tables directly (dev and test databases)."""
        db.create_all()
        click.echo("init_db_ok")

    @app.cli.command("expire-stale")
    @click.option("--limit", "limit", type=int, default=None, help="Maximum orders and top-ups to expire.")
    def expire_stale_command(limit):
        from handoff.jobs.expiry_sweep import run_expiry_sweep

        result = run_expiry_sweep(limit=limit)
        click.echo(json.dumps(result, indent=2))
        if not result.get("ok"):
            raise SystemExit(1)

    @app.cli.command("reconcile-wallets")
    @click.option("--currency", "currency", default=None, help="Only reconcile wallets in this currency.")
    @click.option("--persist", is_flag=True, help="Persist a reconciliation report row.")
    def reconcile_wallets_command(currency, persist):
        from handoff.services.reconciliation_service import persist_report, recompute_wallet_balances

        summary = recompute_wallet_balances(currency=currency)
        if persist:
            summary["report_id"] = int(persist_report(summary).id)
        click.echo(json.dumps(summary, indent=2))
        if int(summary.get("drift_count") or 0):
            raise SystemExit(2)


def create_app():
    app = Flask(__name__)
    init_sentry(app)
    _check_production_settings()

    database_url = _database_url()
    app.config.update(
        SECRET_KEY=env_str("SECRET_KEY", "dev-secret"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        SQLALCHEMY_DATABASE_URI=database_url,
        SQLALCHEMY_ENGINE_OPTIONS=_engine_options(database_url, app),
    )

    cors.init_app(app, resources={r"/api/*": {"origins": _cors_origins()}})
    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    _register_error_handlers(app)
    _register_rate_limit_guard(app)
    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint)
    _register_health(app)

    @app.teardown_request
    def _cleanup_db_session(exc):
        if exc is not None:
            db.session.rollback()
        db.session.remove()

    _register_cli(app)
    return app
