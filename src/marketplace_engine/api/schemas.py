"""Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Common
# ============================================================================


class ErrorResponse(BaseModel):
    """Error response body."""

    detail: str
    code: str


# ============================================================================
# Payment schemas
# ============================================================================


class PaymentInitiateRequest(BaseModel):
    """Start a charge for an order or for event tickets."""

    payer_contact: str
    payer_email: str | None = None
    order_id: UUID | None = None
    ticket_type_id: UUID | None = None
    quantity: int = Field(default=1, ge=1)
    customer_name: str | None = None


class PaymentInitiateResponse(BaseModel):
    """Charge accepted by the provider."""

    payment_id: UUID
    invoice_id: str
    provider_reference: str
    provider_correlation_id: str


class PaymentStatusResponse(BaseModel):
    """Public payment status."""

    model_config = ConfigDict(from_attributes=True)

    correlation_id: str
    canonical_status: str
    amount: Decimal
    currency: str
    updated_at: datetime
    linked_ticket_id: UUID | None = None
    linked_order_id: UUID | None = None


class ReconcileResponse(BaseModel):
    """Outcome of a webhook delivery."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: UUID
    correlation_id: str
    previous_status: str
    status: str
    written: bool
    artifact_type: str | None = None
    artifact_id: UUID | None = None
    artifact_created: bool = False


# ============================================================================
# Withdrawal schemas
# ============================================================================


class WithdrawalCreate(BaseModel):
    """Withdrawal request."""

    holder_type: str = Field(pattern="^(seller|event|organizer)$")
    holder_id: UUID
    amount: Decimal = Field(gt=0)
    destination: str


class WithdrawalResponse(BaseModel):
    """Withdrawal request state."""

    model_config = ConfigDict(from_attributes=True)

    withdrawal_request_id: UUID
    holder_type: str
    holder_id: UUID
    amount: Decimal
    fee: Decimal
    net_amount: Decimal
    status: str
    provider_reference: str | None = None
    failure_reason: str | None = None


class PayoutCallback(BaseModel):
    """Provider payout result."""

    provider_reference: str = Field(min_length=1)
    status: str | None = None
    state: str | None = None
    reason: str | None = None


class PayoutCallbackResponse(BaseModel):
    """Outcome of a payout callback."""

    withdrawal_request_id: UUID
    previous_status: str
    status: str
    written: bool


# ============================================================================
# Order schemas
# ============================================================================


class OrderItemCreate(BaseModel):
    """Line item at checkout."""

    name: str
    price: Decimal = Field(gt=0)
    quantity: int = Field(default=1, gt=0)
    product_id: UUID | None = None
    product_type: str = "physical"


class OrderCreate(BaseModel):
    """Order placement request."""

    seller_id: UUID
    buyer_id: UUID | None = None
    items: list[OrderItemCreate] = Field(min_length=1)
    client_contact: str | None = None
    is_debt: bool = False
    is_seller_initiated: bool = False
    booking_date: datetime | None = None


class OrderItemResponse(BaseModel):
    """Order line item snapshot."""

    model_config = ConfigDict(from_attributes=True)

    order_item_id: UUID
    name: str
    product_type: str
    price: Decimal
    quantity: int
    subtotal: Decimal


class OrderHistoryResponse(BaseModel):
    """Order status history entry."""

    model_config = ConfigDict(from_attributes=True)

    status: str
    previous_status: str | None = None
    trigger: str | None = None
    note: str | None = None
    actor_id: str | None = None
    actor_type: str
    created_at: datetime


class OrderResponse(BaseModel):
    """Order with items and history."""

    model_config = ConfigDict(from_attributes=True)

    order_id: UUID
    order_number: str
    seller_id: UUID
    buyer_id: UUID | None = None
    total_amount: Decimal
    platform_fee_amount: Decimal
    seller_payout_amount: Decimal
    status: str
    payment_status: str
    fulfilment_type: str
    is_debt: bool
    is_seller_initiated: bool
    booking_date: datetime | None = None
    seller_dropoff_deadline: datetime | None = None
    buyer_pickup_deadline: datetime | None = None
    auto_cancelled_reason: str | None = None
    items: list[OrderItemResponse] = []
    history: list[OrderHistoryResponse] = []


class TransitionRequest(BaseModel):
    """Trigger to fire on an order."""

    trigger: str
    actor_id: str | None = None
    actor_type: str = "system"
    note: str | None = None


class TransitionResponse(BaseModel):
    """Applied transition."""

    order_id: UUID
    from_status: str
    to_status: str
    trigger: str
    payout_id: UUID | None = None
