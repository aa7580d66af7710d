from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ChatChannelResult:
    ok: bool
    channel_ref: str = ""
    message: str = ""
    raw: dict | None = None


class ChatProvider:
    name = "unknown"

    def open_channel(self, *, buyer_id: int, seller_id: int, order_id: int) -> ChatChannelResult:
        raise NotImplementedError
