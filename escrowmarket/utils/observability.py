"""Request tracing for the market API.

Every response carries ``X-Request-Id``; the same id is the ``trace_id`` in
error bodies, audit rows and queued task kwargs. Access lines name the market
entity the route addressed so one order or offer can be followed through the
logs.
"""
from __future__ import annotations

import json
import time
import uuid
from datetime import datetime

from flask import g, has_app_context, request

# Route arguments that identify a market entity.
SUBJECT_ARGS = ("order_id", "offer_id", "listing_id", "withdrawal_id")

SCRUBBED_HEADERS = {"authorization", "stripe-signature", "idempotency-key", "cookie", "set-cookie"}


def get_request_id() -> str:
    if not has_app_context():
        # celery tasks and CLI commands
        return ""
    return getattr(g, "request_id", "") or ""


def note_error_code(code: str) -> None:
    """Remember the error code the response carries, for the access line."""
    g.error_code = (code or "")[:64]


def request_subject() -> dict:
    args = request.view_args or {}
    return {name: int(args[name]) for name in SUBJECT_ARGS if args.get(name) is not None}


def access_record(response) -> dict:
    started = getattr(g, "request_started_at", None)
    record = {
        "event": "api_request",
        "ts": datetime.utcnow().isoformat(),
        "request_id": get_request_id(),
        "method": request.method,
        "route": request.url_rule.rule if request.url_rule is not None else request.path,
        "status": int(response.status_code),
        "latency_ms": round((time.perf_counter() - started) * 1000.0, 2) if started is not None else None,
        "user_id": getattr(g, "auth_user_id", None),
    }
    record.update(request_subject())
    error_code = getattr(g, "error_code", None)
    if error_code:
        record["error"] = error_code
    return record


def init_sentry(app) -> None:
    dsn = (app.config.get("SENTRY_DSN") or "").strip()
    if not dsn:
        app.logger.info("sentry_disabled_no_dsn")
        return
    try:
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=dsn,
            environment=app.config.get("ESCROWMARKET_ENV", "dev"),
            release=app.config.get("RELEASE") or "unknown",
            integrations=[FlaskIntegration()],
            send_default_pii=False,
            traces_sample_rate=max(0.0, min(float(app.config.get("SENTRY_TRACES_SAMPLE_RATE") or 0.0), 1.0)),
            before_send=scrub_sentry_event,
        )
        app.extensions["sentry"] = True
        app.logger.info("sentry_enabled env=%s", app.config.get("ESCROWMARKET_ENV", "dev"))
    except Exception as e:
        app.logger.warning("sentry_init_failed err=%s", e)


def scrub_sentry_event(event, hint):
    headers = (event.get("request") or {}).get("headers")
    if isinstance(headers, dict):
        for key in list(headers):
            if key.lower() in SCRUBBED_HEADERS:
                headers[key] = "[REDACTED]"
    return event


def install_request_observers(app) -> None:
    @app.before_request
    def _begin_trace():
        g.request_id = (request.headers.get("X-Request-Id") or "").strip()[:64] or uuid.uuid4().hex
        g.request_started_at = time.perf_counter()
        g.error_code = None
        g.auth_user_id = None
        if app.extensions.get("sentry"):
            import sentry_sdk

            sentry_sdk.set_tag("request_id", g.request_id)
            for name, value in request_subject().items():
                sentry_sdk.set_tag(name, value)

    @app.after_request
    def _end_trace(response):
        if not getattr(g, "request_id", ""):
            g.request_id = uuid.uuid4().hex
        response.headers["X-Request-Id"] = g.request_id
        app.logger.info(json.dumps(access_record(response)))
        return response
