import os

import click
from flask import Flask, g, jsonify, request
from sqlalchemy import text
from werkzeug.exceptions import HTTPException

from escrowmarket.config import get_settings, market_config_from_env
from escrowmarket.errors import MarketError
from escrowmarket.extensions import cors, db, migrate
from escrowmarket.integrations.payments.factory import payment_health
from escrowmarket.segments.segment_admin import admin_bp
from escrowmarket.segments.segment_earnings import earnings_bp
from escrowmarket.segments.segment_listings import listings_bp
from escrowmarket.segments.segment_offers import offers_bp
from escrowmarket.segments.segment_orders import orders_bp
from escrowmarket.segments.segment_payment_webhooks import webhooks_bp
from escrowmarket.utils.observability import init_sentry, install_request_observers, note_error_code


def _env_int(name: str, default: int, *, minimum: int = 1, maximum: int = 100000) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except Exception:
        value = int(default)
    return max(minimum, min(maximum, value))


def _error_body(code: str, message: str, status: int, **extra) -> dict:
    payload = {"ok": False, "error": code, "message": message, "status": int(status)}
    payload.update(extra)
    note_error_code(code)
    rid = (getattr(g, "request_id", "") or "").strip()
    if rid:
        payload["trace_id"] = rid
    return payload


def create_app(config_overrides: dict | None = None):
    app = Flask(__name__)

    env = (os.getenv("ESCROWMARKET_ENV", "dev") or "dev").strip().lower()

    if env in ("prod", "production"):
        secret = (os.getenv("SECRET_KEY") or "").strip()
        if not secret or len(secret) < 16:
            raise RuntimeError("SECRET_KEY must be set and at least 16 chars in production")

    app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", "dev-secret")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["ESCROWMARKET_ENV"] = env

    database_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL")
    if not database_url:
        if env in ("prod", "production"):
            raise RuntimeError("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
        database_url = "sqlite:///escrowmarket.db"
    if database_url.startswith("postgres://"):
        database_url = "postgresql://" + database_url[len("postgres://"):]
    app.config["SQLALCHEMY_DATABASE_URI"] = database_url

    app.config.update(market_config_from_env())
    if config_overrides:
        app.config.update(config_overrides)
    init_sentry(app)

    database_url = app.config["SQLALCHEMY_DATABASE_URI"]
    engine_options = {"pool_pre_ping": True}
    if not database_url.startswith("sqlite://"):
        engine_options.update(
            {
                "pool_reset_on_return": "rollback",
                "pool_recycle": _env_int("DB_POOL_RECYCLE_SECONDS", 1800, minimum=60, maximum=86400),
                "pool_size": _env_int("DB_POOL_SIZE", 10, minimum=1, maximum=200),
                "max_overflow": _env_int("DB_MAX_OVERFLOW", 20, minimum=0, maximum=500),
                "pool_timeout": _env_int("DB_POOL_TIMEOUT_SECONDS", 30, minimum=1, maximum=300),
            }
        )
        app.logger.info(
            "db_pooling_enabled pool_size=%s max_overflow=%s",
            engine_options["pool_size"],
            engine_options["max_overflow"],
        )
    app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", engine_options)

    cors_origins = (os.getenv("CORS_ORIGINS") or "").strip()
    if env in ("prod", "production"):
        origins = [o.strip() for o in cors_origins.split(",") if o.strip()]
    else:
        origins = ["*"] if not cors_origins else [o.strip() for o in cors_origins.split(",") if o.strip()]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}})

    db.init_app(app)
    migrate.init_app(app, db)
    install_request_observers(app)

    @app.errorhandler(MarketError)
    def _market_error(error: MarketError):
        if error.status_code >= 500:
            app.logger.warning("market_error code=%s path=%s", error.code, request.path)
        payload = error.to_dict()
        note_error_code(error.code)
        rid = (getattr(g, "request_id", "") or "").strip()
        if rid:
            payload["trace_id"] = rid
        return jsonify(payload), int(error.status_code)

    @app.errorhandler(HTTPException)
    def _api_http_exception(error: HTTPException):
        if not request.path.startswith("/api/"):
            return error
        code = (error.name or "HTTP_ERROR").upper().replace(" ", "_")
        return jsonify(_error_body(code, error.description or error.name, int(error.code or 500))), int(error.code or 500)

    @app.errorhandler(Exception)
    def _api_unhandled_exception(error: Exception):
        app.logger.exception("unhandled_exception path=%s", request.path)
        try:
            db.session.rollback()
        except Exception:
            pass
        return jsonify(_error_body("INTERNAL_ERROR", "Internal server error", 500)), 500

    app.register_blueprint(listings_bp)
    app.register_blueprint(offers_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(earnings_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_bp)

    @app.get("/api/health")
    def health():
        db_state = "ok"
        db_error = None
        try:
            with db.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            db_state = "fail"
            msg = str(e)
            if msg:
                db_error = (msg[:300] + "...") if len(msg) > 300 else msg
        payload = {
            "ok": True,
            "service": "escrowmarket",
            "env": env,
            "db": db_state,
            "payments": payment_health(get_settings()),
        }
        if db_error:
            payload["db_error"] = db_error
        return jsonify(payload)

    @app.teardown_request
    def _cleanup_db_session(exc):
        try:
            if exc is not None:
                db.session.rollback()
        finally:
            db.session.remove()

    @app.cli.command("init-db")
    def init_db():
        db.create_all()
        click.echo("init_db_ok")

    @app.cli.command("sweep-reservations")
    @click.option("--limit", default=500, show_default=True, type=int)
    def sweep_reservations(limit: int):
        from escrowmarket.jobs.reservation_sweeper import run_reservation_sweep

        result = run_reservation_sweep(limit=limit)
        click.echo(f"sweep_reservations scanned={result['scanned']} released={result['released']}")

    @app.cli.command("expire-offers")
    @click.option("--limit", default=200, show_default=True, type=int)
    def expire_offers(limit: int):
        from escrowmarket.jobs.reservation_sweeper import run_offer_expiry

        result = run_offer_expiry(limit=limit)
        click.echo(f"expire_offers scanned={result['scanned']} expired={result['expired']} failed={result['failed']}")

    return app
