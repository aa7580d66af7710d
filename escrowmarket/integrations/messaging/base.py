from __future__ import annotations

from dataclasses import dataclass


@dataclass
class MessageResult:
    ok: bool
    code: str = ""
    message: str = ""
    provider_ref: str = ""
    raw: dict | None = None


class MessagingProvider:
    name = "unknown"

    def send(self, *, user_id: int, event: str, message: str, meta: dict | None = None, reference: str = "") -> MessageResult:
        raise NotImplementedError
