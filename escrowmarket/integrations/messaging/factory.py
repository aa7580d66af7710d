from __future__ import annotations

import os

from escrowmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from escrowmarket.integrations.messaging.base import MessagingProvider
from escrowmarket.integrations.messaging.mock_provider import MockMessagingProvider
from escrowmarket.integrations.messaging.webhook_provider import WebhookMessagingProvider


def build_messaging_provider(settings) -> MessagingProvider:
    provider = (getattr(settings, "notify_provider", "mock") or "mock").strip().lower()
    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:notifications")
    if provider == "mock":
        return MockMessagingProvider()
    if provider != "webhook":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:notify_provider={provider}")
    url = (os.getenv("NOTIFY_WEBHOOK_URL") or "").strip()
    if not url:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing NOTIFY_WEBHOOK_URL")
    return WebhookMessagingProvider(url=url, signing_secret=(os.getenv("NOTIFY_WEBHOOK_SECRET") or "").strip())
