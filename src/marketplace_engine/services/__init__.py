"""Marketplace engine services."""

from marketplace_engine.services.balance_ledger import BalanceLedger
from marketplace_engine.services.dispatcher import SideEffectDispatcher
from marketplace_engine.services.order_service import OrderService
from marketplace_engine.services.reconciler import PaymentReconciler
from marketplace_engine.services.state_machine import (
    InvalidTransitionError,
    OrderStateMachine,
    OrderStatus,
    OrderTrigger,
)
from marketplace_engine.services.webhook_gate import WebhookIngestionGate

__all__ = [
    "BalanceLedger",
    "SideEffectDispatcher",
    "OrderService",
    "PaymentReconciler",
    "OrderStateMachine",
    "OrderStatus",
    "OrderTrigger",
    "InvalidTransitionError",
    "WebhookIngestionGate",
]
