from __future__ import annotations

import hashlib
import hmac
import json

import requests

from escrowmarket.integrations.messaging.base import MessageResult, MessagingProvider


class WebhookMessagingProvider(MessagingProvider):
    """Hands notifications to an external delivery service (email/SMS fan-out) by signed POST."""

    name = "webhook"

    def __init__(self, *, url: str, signing_secret: str = "", timeout: int = 10):
        self.url = url
        self.signing_secret = signing_secret
        self.timeout = timeout

    def send(self, *, user_id: int, event: str, message: str, meta: dict | None = None, reference: str = "") -> MessageResult:
        body = json.dumps(
            {"user_id": int(user_id), "event": event, "message": message, "meta": meta or {}, "reference": reference},
            separators=(",", ":"),
        )
        headers = {"Content-Type": "application/json"}
        if self.signing_secret:
            digest = hmac.new(self.signing_secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()
            headers["X-Signature"] = digest
        try:
            r = requests.post(self.url, data=body, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            return MessageResult(ok=False, code="PROVIDER_UNREACHABLE", message=type(e).__name__)
        if r.status_code >= 400:
            return MessageResult(ok=False, code=f"HTTP_{r.status_code}", message=(r.text or "")[:200])
        return MessageResult(ok=True, code="OK", message="accepted", provider_ref=reference)
