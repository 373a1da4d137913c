from handoff.models.user import User, Role, COURIER_ROLES
from handoff.models.product import Product
from handoff.models.order import Order, OrderItem, OrderEvent
from handoff.models.wallet import Wallet, WalletTransaction
from handoff.models.escrow_transition import EscrowTransition
from handoff.models.handoff_token import ExpirableId, HandoffToken
from handoff.models.delivery_tracking import DeliveryTracking, LocationReport
from handoff.models.webhook_event import WebhookEvent
from handoff.models.notification import Notification
from handoff.models.idempotency_key import IdempotencyKey
from handoff.models.job_run import JobRun
from handoff.models.reconciliation_report import ReconciliationReport

__all__ = [
    "User",
    "Role",
    "COURIER_ROLES",
    "Product",
    "Order",
    "OrderItem",
    "OrderEvent",
    "Wallet",
    "WalletTransaction",
    "EscrowTransition",
    "ExpirableId",
    "HandoffToken",
    "DeliveryTracking",
    "LocationReport",
    "WebhookEvent",
    "Notification",
    "IdempotencyKey",
    "JobRun",
    "ReconciliationReport",
]
