from __future__ import annotations

import os

from escrowmarket.integrations.messaging.base import MessageResult, MessagingProvider


class MockMessagingProvider(MessagingProvider):
    name = "mock"

    def _force_failure(self, message: str) -> bool:
        msg = (message or "").lower()
        return "[fail]" in msg or (os.getenv("MOCK_NOTIFY_FORCE_FAIL") or "").strip() == "1"

    def send(self, *, user_id: int, event: str, message: str, meta: dict | None = None, reference: str = "") -> MessageResult:
        if self._force_failure(message):
            return MessageResult(ok=False, code="PROVIDER_DOWN", message="mock forced failure")
        return MessageResult(ok=True, code="OK", message="mock_sent", provider_ref=reference, raw={"user_id": user_id, "event": event})
