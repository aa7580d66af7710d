from __future__ import annotations

import os

from escrowmarket.integrations.chat.base import ChatChannelResult, ChatProvider


class MockChatProvider(ChatProvider):
    name = "mock"

    def open_channel(self, *, buyer_id: int, seller_id: int, order_id: int) -> ChatChannelResult:
        if (os.getenv("MOCK_CHAT_FORCE_FAIL") or "").strip() == "1":
            return ChatChannelResult(ok=False, message="mock forced failure")
        # Deterministic per order so reopening yields the same channel.
        ref = f"chat_order_{int(order_id)}_{int(buyer_id)}_{int(seller_id)}"
        return ChatChannelResult(ok=True, channel_ref=ref, raw={"order_id": order_id})
