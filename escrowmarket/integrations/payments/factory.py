from __future__ import annotations

import os

from flask import current_app, has_app_context

from escrowmarket.config import get_settings
from escrowmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from escrowmarket.integrations.payments.base import PaymentsProvider
from escrowmarket.integrations.payments.mock_provider import MockPaymentsProvider
from escrowmarket.integrations.payments.stripe_provider import StripePaymentsProvider


def build_payments_provider(settings) -> PaymentsProvider:
    provider = (getattr(settings, "payments_provider", "mock") or "mock").strip().lower()
    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")
    if provider == "mock":
        return MockPaymentsProvider()
    if provider != "stripe":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    secret_key = (os.getenv("STRIPE_SECRET_KEY") or "").strip()
    if not secret_key:
        raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing STRIPE_SECRET_KEY")
    return StripePaymentsProvider(
        secret_key=secret_key,
        webhook_secret=(os.getenv("STRIPE_WEBHOOK_SECRET") or "").strip(),
    )


def get_payments_provider() -> PaymentsProvider:
    """The app's provider; built once so mock processor state survives across requests."""
    if not has_app_context():
        return build_payments_provider(get_settings())
    provider = current_app.extensions.get("payments_provider")
    if provider is None:
        provider = build_payments_provider(get_settings())
        current_app.extensions["payments_provider"] = provider
    return provider


def payment_health(settings) -> dict:
    provider = (getattr(settings, "payments_provider", "mock") or "mock").strip().lower()
    missing = []
    if provider == "stripe":
        for key in ("STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"):
            if not (os.getenv(key) or "").strip():
                missing.append(key)
    if provider == "disabled":
        status = "disabled"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {"status": status, "provider": provider, "missing": missing}
