from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app, has_app_context


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _env_int(name: str, default: int, *, minimum: int = 0, maximum: int = 10_000_000) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        value = int(default)
    else:
        try:
            value = int(raw)
        except Exception:
            value = int(default)
    if value < minimum:
        value = minimum
    if value > maximum:
        value = maximum
    return value


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except Exception:
        return float(default)


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def rate_to_bps(rate) -> int:
    bps = (Decimal(str(rate)) * Decimal("10000")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(0, min(10000, int(bps)))


def market_config_from_env() -> dict:
    """Market knobs read once at app creation; overridable through create_app()."""
    return {
        "PLATFORM_FEE_RATE": _env_float("PLATFORM_FEE_RATE", 0.15),
        "CURRENCY": _env_str("CURRENCY", "usd").lower(),
        "MIN_OFFER_AMOUNT_MINOR": _env_int("MIN_OFFER_AMOUNT_MINOR", 50, minimum=1),
        "MIN_WITHDRAWAL_MINOR": _env_int("MIN_WITHDRAWAL_MINOR", 500, minimum=1),
        "RESERVATION_HOURS": _env_int("RESERVATION_HOURS", 24, minimum=1, maximum=24 * 30),
        "OFFER_EXPIRY_DAYS": _env_int("OFFER_EXPIRY_DAYS", 7, minimum=1, maximum=365),
        "PENDING_PAYMENT_OFFER_MINUTES": _env_int("PENDING_PAYMENT_OFFER_MINUTES", 30, minimum=1, maximum=24 * 60),
        "DEFAULT_MAX_REVISIONS": _env_int("DEFAULT_MAX_REVISIONS", 3, minimum=0, maximum=50),
        "PAYMENTS_PROVIDER": _env_str("PAYMENTS_PROVIDER", "mock").lower(),
        "CHAT_PROVIDER": _env_str("CHAT_PROVIDER", "mock").lower(),
        "NOTIFY_PROVIDER": _env_str("NOTIFY_PROVIDER", "mock").lower(),
        "PAYMENT_WEBHOOK_QUEUE": _env_bool("PAYMENT_WEBHOOK_QUEUE", False),
        "NOTIFICATIONS_QUEUE": _env_bool("NOTIFICATIONS_QUEUE", False),
        "RESERVATION_SWEEP_INTERVAL_SECONDS": _env_int("RESERVATION_SWEEP_INTERVAL_SECONDS", 900, minimum=30, maximum=86400),
        "SENTRY_DSN": _env_str("SENTRY_DSN"),
        "SENTRY_TRACES_SAMPLE_RATE": _env_float("SENTRY_TRACES_SAMPLE_RATE", 0.0),
        "RELEASE": _env_str("GIT_SHA", "unknown"),
    }


@dataclass(frozen=True)
class MarketSettings:
    platform_fee_bps: int = 1500
    currency: str = "usd"
    min_offer_amount_minor: int = 50
    min_withdrawal_minor: int = 500
    reservation_hours: int = 24
    offer_expiry_days: int = 7
    pending_payment_offer_minutes: int = 30
    default_max_revisions: int = 3
    payments_provider: str = "mock"
    chat_provider: str = "mock"
    notify_provider: str = "mock"
    payment_webhook_queue: bool = False
    notifications_queue: bool = False

    @property
    def platform_fee_rate(self) -> float:
        return self.platform_fee_bps / 10000.0

    @classmethod
    def from_config(cls, config) -> "MarketSettings":
        return cls(
            platform_fee_bps=rate_to_bps(config.get("PLATFORM_FEE_RATE", 0.15)),
            currency=str(config.get("CURRENCY") or "usd").lower(),
            min_offer_amount_minor=int(config.get("MIN_OFFER_AMOUNT_MINOR", 50)),
            min_withdrawal_minor=int(config.get("MIN_WITHDRAWAL_MINOR", 500)),
            reservation_hours=int(config.get("RESERVATION_HOURS", 24)),
            offer_expiry_days=int(config.get("OFFER_EXPIRY_DAYS", 7)),
            pending_payment_offer_minutes=int(config.get("PENDING_PAYMENT_OFFER_MINUTES", 30)),
            default_max_revisions=int(config.get("DEFAULT_MAX_REVISIONS", 3)),
            payments_provider=str(config.get("PAYMENTS_PROVIDER") or "mock").lower(),
            chat_provider=str(config.get("CHAT_PROVIDER") or "mock").lower(),
            notify_provider=str(config.get("NOTIFY_PROVIDER") or "mock").lower(),
            payment_webhook_queue=bool(config.get("PAYMENT_WEBHOOK_QUEUE", False)),
            notifications_queue=bool(config.get("NOTIFICATIONS_QUEUE", False)),
        )


def get_settings() -> MarketSettings:
    if not has_app_context():
        return MarketSettings()
    settings = current_app.extensions.get("market_settings")
    if settings is None:
        settings = MarketSettings.from_config(current_app.config)
        current_app.extensions["market_settings"] = settings
    return settings
