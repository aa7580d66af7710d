from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func

from escrowmarket.config import get_settings
from escrowmarket.errors import (
    AuthorizationError,
    InsufficientBalanceError,
    NotFoundError,
    PaymentGatewayError,
    StateConflictError,
    ValidationError,
)
from escrowmarket.extensions import db
from escrowmarket.models import Order, User, Withdrawal
from escrowmarket.services.notification_service import notify
from escrowmarket.services.order_service import OrderStatus
from escrowmarket.services.payment_gateway import gateway_call, payments
from escrowmarket.utils.events import record_audit_event
from escrowmarket.utils.money import money_minor_to_major, split_platform_fee
from escrowmarket.utils.transactions import atomic, lock_row

logger = logging.getLogger(__name__)


class WithdrawalStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    IN_FLIGHT = (PENDING, PROCESSING)
    TERMINAL = {COMPLETED, FAILED, CANCELLED}

    # Manual settlement path for bank transfers.
    ADMIN_ALLOWED = {
        PENDING: {PROCESSING, FAILED},
        PROCESSING: {COMPLETED, FAILED},
    }


PAYMENT_METHODS = ("gateway", "bank_transfer")


def _sum_withdrawals(seller_id: int, statuses) -> int:
    total = (
        db.session.query(func.coalesce(func.sum(Withdrawal.amount_minor), 0))
        .filter(Withdrawal.seller_id == int(seller_id), Withdrawal.status.in_(tuple(statuses)))
        .scalar()
    )
    return int(total or 0)


def earnings_summary(seller_id: int) -> dict:
    """Recompute the seller's balances from orders and withdrawals; nothing is cached."""
    settings = get_settings()
    seller_id = int(seller_id)

    earned, completed_count = (
        db.session.query(func.coalesce(func.sum(Order.seller_payout_minor), 0), func.count(Order.id))
        .filter(
            Order.seller_id == seller_id,
            Order.status == OrderStatus.COMPLETED,
            Order.payment_released.is_(True),
        )
        .one()
    )
    total_earned = int(earned or 0)
    total_withdrawn = _sum_withdrawals(seller_id, (WithdrawalStatus.COMPLETED,))
    in_flight = _sum_withdrawals(seller_id, WithdrawalStatus.IN_FLIGHT)

    held_amounts = (
        db.session.query(Order.amount_minor)
        .filter(Order.seller_id == seller_id, Order.status.in_(tuple(OrderStatus.MONEY_HELD)))
        .all()
    )
    pending = sum(split_platform_fee(int(row[0] or 0), settings.platform_fee_bps)[1] for row in held_amounts)

    available = max(0, total_earned - total_withdrawn)
    withdrawable = max(0, available - in_flight)
    return {
        "seller_id": seller_id,
        "currency": settings.currency,
        "fee_rate": settings.platform_fee_rate,
        "available_minor": available,
        "pending_minor": int(pending),
        "total_earned_minor": total_earned,
        "total_withdrawn_minor": total_withdrawn,
        "in_flight_minor": in_flight,
        "withdrawable_minor": withdrawable,
        "available": money_minor_to_major(available),
        "pending": money_minor_to_major(pending),
        "withdrawable": money_minor_to_major(withdrawable),
        "completed_orders": int(completed_count or 0),
    }


def available_balance_minor(seller_id: int) -> int:
    return int(earnings_summary(seller_id)["withdrawable_minor"])


def request_withdrawal(
    seller: User,
    amount_minor: int,
    *,
    payment_method: str = "gateway",
    destination: str | None = None,
) -> Withdrawal:
    """Reserve funds as a pending withdrawal, then start the payout.

    The balance check and insert run under the seller's row lock so two
    concurrent requests cannot both spend the same balance.
    """
    settings = get_settings()
    payment_method = (payment_method or "gateway").strip().lower()
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
    try:
        amount_minor = int(amount_minor)
    except (TypeError, ValueError):
        raise ValidationError("amount is required")
    if amount_minor < settings.min_withdrawal_minor:
        raise ValidationError(
            "Withdrawal is below the minimum amount",
            details={"min_withdrawal_minor": settings.min_withdrawal_minor},
        )
    target = (destination or seller.payout_account_id or "").strip()
    if not target:
        raise ValidationError("Add a payout destination before withdrawing")

    rejected = None
    with atomic():
        locked = lock_row(User, seller.id)
        if locked is None:
            raise NotFoundError("User not found")
        summary = earnings_summary(locked.id)
        if amount_minor > summary["withdrawable_minor"]:
            rejected = summary
            record_audit_event(
                "withdrawal_rejected",
                actor_user_id=locked.id,
                subject_type="user",
                subject_id=locked.id,
                amount_minor=amount_minor,
                severity="WARN",
                metadata={"withdrawable_minor": summary["withdrawable_minor"], "payment_method": payment_method},
            )
        else:
            withdrawal = Withdrawal(
                seller_id=int(locked.id),
                amount_minor=amount_minor,
                currency=settings.currency,
                payment_method=payment_method,
                destination=target[:128],
                # Gateway payouts are in flight from the start and cannot be cancelled.
                status=WithdrawalStatus.PROCESSING if payment_method == "gateway" else WithdrawalStatus.PENDING,
            )
            db.session.add(withdrawal)
    if rejected is not None:
        raise InsufficientBalanceError(available_minor=rejected["withdrawable_minor"], requested_minor=amount_minor)

    logger.info("withdrawal_requested withdrawal_id=%s seller_id=%s method=%s", withdrawal.id, seller.id, payment_method)
    if payment_method == "gateway":
        _start_gateway_transfer(withdrawal)
    else:
        notify(seller.id, "withdrawal_requested", subject_type="withdrawal", subject_id=withdrawal.id, amount_minor=amount_minor, message="Withdrawal requested; bank transfers settle manually")
    return withdrawal


def _start_gateway_transfer(withdrawal: Withdrawal) -> None:
    try:
        result = gateway_call(
            "transfer",
            payments().transfer_to_seller,
            amount_minor=int(withdrawal.amount_minor),
            currency=withdrawal.currency,
            destination=withdrawal.destination,
            metadata={"withdrawal_id": int(withdrawal.id), "seller_id": int(withdrawal.seller_id)},
            public_message="Payout could not be started",
        )
    except PaymentGatewayError:
        with atomic():
            row = lock_row(Withdrawal, withdrawal.id)
            if row.status not in WithdrawalStatus.TERMINAL:
                _finish(row, False, "Payout could not be started")
        notify(withdrawal.seller_id, "withdrawal_failed", subject_type="withdrawal", subject_id=withdrawal.id, amount_minor=withdrawal.amount_minor, message="Your withdrawal failed; the funds are available again")
        raise

    now = datetime.utcnow()
    with atomic():
        row = lock_row(Withdrawal, withdrawal.id)
        row.transfer_ref = row.transfer_ref or result.reference
        row.processed_at = row.processed_at or now
        # A transfer webhook may have settled the row already.
        if row.status == WithdrawalStatus.PROCESSING and (result.status or "").lower() == "paid":
            _finish(row, True)
    notify(withdrawal.seller_id, f"withdrawal_{withdrawal.status}", subject_type="withdrawal", subject_id=withdrawal.id, amount_minor=withdrawal.amount_minor, message="Your withdrawal is on its way")


def cancel_withdrawal(seller: User, withdrawal_id: int) -> Withdrawal:
    with atomic():
        row = lock_row(Withdrawal, withdrawal_id)
        if row is None or int(row.seller_id) != int(seller.id):
            raise NotFoundError("Withdrawal not found")
        if row.status != WithdrawalStatus.PENDING:
            raise StateConflictError(
                f"Withdrawal is already {row.status}",
                current_status=row.status,
                allowed_next_statuses=[],
            )
        row.status = WithdrawalStatus.CANCELLED
        row.cancelled_at = datetime.utcnow()
    return row


def _finish(row: Withdrawal, succeeded: bool, reason: str = "") -> None:
    now = datetime.utcnow()
    if succeeded:
        row.status = WithdrawalStatus.COMPLETED
        row.completed_at = now
    else:
        row.status = WithdrawalStatus.FAILED
        row.failure_reason = (reason or "Payout failed")[:240]
        row.failed_at = now


def settle_transfer(transfer_ref: str, succeeded: bool, reason: str = "", *, withdrawal_id: int | None = None) -> Withdrawal | None:
    """Apply a processor's final word on a payout. Terminal withdrawals are left as they are.

    ``withdrawal_id`` (from the transfer metadata) finds a gateway withdrawal
    whose transfer reference has not been recorded yet.
    """
    ref = (transfer_ref or "").strip()
    snapshot = Withdrawal.query.filter_by(transfer_ref=ref).first() if ref else None
    if snapshot is None and ref and withdrawal_id:
        snapshot = Withdrawal.query.filter_by(id=int(withdrawal_id), payment_method="gateway", transfer_ref=None).first()
    if snapshot is None:
        return None
    with atomic():
        row = lock_row(Withdrawal, snapshot.id)
        row.transfer_ref = row.transfer_ref or ref[:128]
        if row.status in WithdrawalStatus.TERMINAL:
            return row
        _finish(row, succeeded, reason)
    logger.info("withdrawal_settled withdrawal_id=%s status=%s", row.id, row.status)
    notify(row.seller_id, f"withdrawal_{row.status}", subject_type="withdrawal", subject_id=row.id, amount_minor=row.amount_minor, message=f"Withdrawal {row.status}")
    return row


def admin_settle_withdrawal(withdrawal_id: int, admin: User, target: str, *, reason: str = "") -> Withdrawal:
    if admin is None or not admin.is_admin:
        raise AuthorizationError("Only an admin can settle withdrawals")
    target = (target or "").strip().lower()
    with atomic():
        row = lock_row(Withdrawal, withdrawal_id)
        if row is None:
            raise NotFoundError("Withdrawal not found")
        allowed = sorted(WithdrawalStatus.ADMIN_ALLOWED.get(row.status, set()))
        if target not in allowed:
            raise StateConflictError(
                f"Withdrawal cannot move from {row.status} to {target}",
                current_status=row.status,
                allowed_next_statuses=allowed,
            )
        if target == WithdrawalStatus.PROCESSING:
            row.status = WithdrawalStatus.PROCESSING
            row.processed_at = datetime.utcnow()
        else:
            _finish(row, target == WithdrawalStatus.COMPLETED, reason)
        record_audit_event(
            "withdrawal_settled_manually",
            actor_user_id=admin.id,
            subject_type="withdrawal",
            subject_id=row.id,
            amount_minor=row.amount_minor,
            metadata={"status": target, "reason": reason},
        )
    notify(row.seller_id, f"withdrawal_{row.status}", subject_type="withdrawal", subject_id=row.id, amount_minor=row.amount_minor, message=f"Withdrawal {row.status}")
    return row


def list_withdrawals(seller_id: int, *, limit: int = 100) -> list[Withdrawal]:
    return (
        Withdrawal.query.filter_by(seller_id=int(seller_id))
        .order_by(Withdrawal.created_at.desc(), Withdrawal.id.desc())
        .limit(int(limit))
        .all()
    )
