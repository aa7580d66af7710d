from escrowmarket.models.user import User
from escrowmarket.models.listing import Listing
from escrowmarket.models.offer import Offer
from escrowmarket.models.order import Order, RevisionNote
from escrowmarket.models.order_transition import OrderTransition
from escrowmarket.models.delivery import Delivery
from escrowmarket.models.withdrawal import Withdrawal
from escrowmarket.models.webhook_event import WebhookEvent
from escrowmarket.models.audit_event import AuditEvent
from escrowmarket.models.idempotency_key import IdempotencyKey
from escrowmarket.models.job_run import JobRun
from escrowmarket.models.notification import Notification

__all__ = [
    "User",
    "Listing",
    "Offer",
    "Order",
    "RevisionNote",
    "OrderTransition",
    "Delivery",
    "Withdrawal",
    "WebhookEvent",
    "AuditEvent",
    "IdempotencyKey",
    "JobRun",
    "Notification",
]
