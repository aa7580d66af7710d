from __future__ import annotations

import logging

from escrowmarket.errors import PaymentGatewayError
from escrowmarket.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from escrowmarket.integrations.payments.base import GatewayError, PaymentsProvider
from escrowmarket.integrations.payments.factory import get_payments_provider

logger = logging.getLogger(__name__)


def payments() -> PaymentsProvider:
    try:
        return get_payments_provider()
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        logger.error("payments_provider_unavailable err=%s", e)
        raise PaymentGatewayError("Payments are temporarily unavailable", retryable=True) from e


def gateway_call(operation: str, fn, *args, public_message: str = "Payment processor error", **kwargs):
    """Run one processor call, translating provider failures for end users.

    The processor's own error code is logged here and never placed in the
    raised error.
    """
    try:
        return fn(*args, **kwargs)
    except GatewayError as e:
        logger.warning(
            "gateway_call_failed op=%s code=%s retryable=%s requires_action=%s",
            operation,
            e.code,
            e.retryable,
            e.requires_action,
        )
        raise PaymentGatewayError(public_message, retryable=e.retryable, requires_action=e.requires_action) from e
