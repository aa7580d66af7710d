from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP


def _clamp_minor(value: int | float | Decimal | None) -> int:
    try:
        parsed = int(value or 0)
    except Exception:
        parsed = 0
    return parsed if parsed > 0 else 0


def parse_major_amount(value) -> Decimal | None:
    """Parse a client-supplied major-unit amount; None when not a finite number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def money_major_to_minor(amount: float | Decimal | int | None) -> int:
    try:
        parsed = Decimal(str(amount or 0))
    except Exception:
        parsed = Decimal("0")
    minor = (parsed * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return _clamp_minor(int(minor))


def money_minor_to_major(minor: int | float | Decimal | None) -> float:
    try:
        parsed = Decimal(int(minor or 0))
    except Exception:
        parsed = Decimal("0")
    return float((parsed / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def bps_minor_half_up(amount_minor: int, bps: int) -> int:
    amt = Decimal(_clamp_minor(amount_minor))
    rate = Decimal(int(max(0, bps)))
    raw = (amt * rate) / Decimal("10000")
    return _clamp_minor(int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP)))


def split_platform_fee(amount_minor: int, fee_bps: int) -> tuple[int, int]:
    """Return (platform_fee_minor, seller_payout_minor); the parts always sum to amount."""
    total = _clamp_minor(amount_minor)
    if total <= 0:
        return 0, 0
    platform_minor = min(total, bps_minor_half_up(total, fee_bps))
    return int(platform_minor), int(total - platform_minor)
