"""ORM models."""

from marketplace_engine.models.audit import AuditLog, LedgerEvent, SecurityAlert, WebhookLog
from marketplace_engine.models.base import Base, TimestampMixin, UpdatedAtMixin, utc_now
from marketplace_engine.models.orders import Order, OrderItem, OrderStatusHistory
from marketplace_engine.models.parties import Buyer, Event, Organizer, Seller
from marketplace_engine.models.payments import Payment
from marketplace_engine.models.payouts import Payout, WithdrawalRequest
from marketplace_engine.models.tickets import Ticket, TicketType

__all__ = [
    "AuditLog",
    "Base",
    "Buyer",
    "Event",
    "LedgerEvent",
    "Order",
    "OrderItem",
    "OrderStatusHistory",
    "Organizer",
    "Payment",
    "Payout",
    "SecurityAlert",
    "Seller",
    "Ticket",
    "TicketType",
    "TimestampMixin",
    "UpdatedAtMixin",
    "WebhookLog",
    "WithdrawalRequest",
    "utc_now",
]
