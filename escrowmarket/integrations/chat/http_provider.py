from __future__ import annotations

import logging

import requests

from escrowmarket.integrations.chat.base import ChatChannelResult, ChatProvider

logger = logging.getLogger(__name__)


class HttpChatProvider(ChatProvider):
    """Opens conversations on an external chat service over its REST API."""

    name = "http"

    def __init__(self, *, base_url: str, api_key: str = "", timeout: int = 10):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def open_channel(self, *, buyer_id: int, seller_id: int, order_id: int) -> ChatChannelResult:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "participants": [int(buyer_id), int(seller_id)],
            "order_id": int(order_id),
            "external_key": f"order:{int(order_id)}",
        }
        try:
            r = requests.post(f"{self.base_url}/channels", json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            return ChatChannelResult(ok=False, message=f"chat_service_unreachable {type(e).__name__}")
        try:
            data = r.json()
        except ValueError:
            data = {}
        if r.status_code >= 400:
            return ChatChannelResult(ok=False, message=f"chat_service_http_{r.status_code}", raw=data)
        ref = str(data.get("id") or data.get("channel_id") or "")
        if not ref:
            return ChatChannelResult(ok=False, message="chat_service_missing_id", raw=data)
        return ChatChannelResult(ok=True, channel_ref=ref, raw=data)
