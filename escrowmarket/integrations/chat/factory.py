from __future__ import annotations

import os

from escrowmarket.integrations.chat.base import ChatProvider
from escrowmarket.integrations.chat.http_provider import HttpChatProvider
from escrowmarket.integrations.chat.mock_provider import MockChatProvider
from escrowmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError


def build_chat_provider(settings) -> ChatProvider:
    provider = (getattr(settings, "chat_provider", "mock") or "mock").strip().lower()
    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:chat")
    if provider == "mock":
        return MockChatProvider()
    if provider != "http":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:chat_provider={provider}")
    base_url = (os.getenv("CHAT_SERVICE_URL") or "").strip()
    if not base_url:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing CHAT_SERVICE_URL")
    return HttpChatProvider(base_url=base_url, api_key=(os.getenv("CHAT_SERVICE_API_KEY") or "").strip())
