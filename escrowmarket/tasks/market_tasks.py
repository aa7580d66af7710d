from __future__ import annotations

import base64
import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


@shared_task(bind=True, name="escrowmarket.reservation_sweep", max_retries=3)
def reservation_sweep_task(self, *, limit: int = 500, trace_id: str = ""):
    from escrowmarket.jobs.reservation_sweeper import run_reservation_sweep

    started = time.perf_counter()
    result = run_reservation_sweep(limit=limit)
    _task_log("reservation_sweep", status="ok" if result.get("ok") else "failed", started_at=started, trace_id=trace_id, released=result.get("released", 0))
    return result


@shared_task(bind=True, name="escrowmarket.expire_offers", max_retries=3)
def expire_offers_task(self, *, limit: int = 200, trace_id: str = ""):
    from escrowmarket.jobs.reservation_sweeper import run_offer_expiry

    started = time.perf_counter()
    result = run_offer_expiry(limit=limit)
    _task_log("expire_offers", status="ok" if result.get("ok") else "failed", started_at=started, trace_id=trace_id, expired=result.get("expired", 0))
    return result


@shared_task(bind=True, name="escrowmarket.process_payment_webhook", max_retries=5)
def process_payment_webhook_task(self, *, raw_b64: str, signature: str | None = None, trace_id: str = ""):
    from escrowmarket.services.payment_webhook_service import process_payment_webhook

    started = time.perf_counter()
    raw = base64.b64decode(raw_b64 or "")
    try:
        body, code = process_payment_webhook(raw, signature, source="api/webhooks/payments:queued")
    except Exception as exc:
        if int(self.request.retries or 0) < int(self.max_retries or 0):
            countdown = _retry_countdown(int(self.request.retries or 0))
            _task_log("process_payment_webhook", status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown)
            raise self.retry(exc=exc, countdown=countdown)
        _task_log("process_payment_webhook", status="failed", started_at=started, trace_id=trace_id, detail=str(exc))
        raise
    if int(code) >= 500 and int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log("process_payment_webhook", status="retrying", started_at=started, trace_id=trace_id, status_code=int(code), countdown=countdown)
        raise self.retry(exc=RuntimeError(f"webhook_status_{int(code)}"), countdown=countdown)
    _task_log("process_payment_webhook", status="ok", started_at=started, trace_id=trace_id, status_code=int(code), event_id=body.get("event_id", ""))
    return {"ok": int(code) < 400, "status_code": int(code), "body": body}


@shared_task(bind=True, name="escrowmarket.deliver_notification", max_retries=5)
def deliver_notification_task(self, *, notification_id: int, trace_id: str = ""):
    from escrowmarket.services.notification_service import deliver_notification

    started = time.perf_counter()
    ok = deliver_notification(int(notification_id))
    if ok:
        _task_log("deliver_notification", status="ok", started_at=started, trace_id=trace_id, notification_id=notification_id)
        return {"ok": True}
    if int(self.request.retries or 0) < int(self.max_retries or 0):
        countdown = _retry_countdown(int(self.request.retries or 0))
        _task_log("deliver_notification", status="retrying", started_at=started, trace_id=trace_id, notification_id=notification_id, countdown=countdown)
        raise self.retry(exc=RuntimeError("notification_send_failed"), countdown=countdown)
    _task_log("deliver_notification", status="failed", started_at=started, trace_id=trace_id, notification_id=notification_id)
    return {"ok": False}
