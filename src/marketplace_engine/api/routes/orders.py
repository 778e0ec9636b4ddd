"""Order endpoints."""

from uuid import UUID

from fastapi import APIRouter, status
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from marketplace_engine.api.dependencies import Config, DbSession
from marketplace_engine.api.schemas import (
    ErrorResponse,
    OrderCreate,
    OrderResponse,
    TransitionRequest,
    TransitionResponse,
)
from marketplace_engine.errors import NotFoundError
from marketplace_engine.models import Order
from marketplace_engine.services.order_service import OrderItemInput, OrderService
from marketplace_engine.services.state_machine import InvalidTransitionError

router = APIRouter(prefix="/orders", tags=["orders"])


def _load_order(db: DbSession, order_id: UUID) -> Order:
    order = db.scalars(
        select(Order)
        .where(Order.order_id == order_id)
        .options(selectinload(Order.items), selectinload(Order.history))
        .execution_options(populate_existing=True)
    ).first()
    if order is None:
        raise NotFoundError("order", order_id)
    return order


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def create_order(payload: OrderCreate, db: DbSession, config: Config) -> OrderResponse:
    """Place an order with its items."""
    order = OrderService(db, config=config).create_order(
        seller_id=payload.seller_id,
        buyer_id=payload.buyer_id,
        items=[
            OrderItemInput(
                name=item.name,
                price=item.price,
                quantity=item.quantity,
                product_id=item.product_id,
                product_type=item.product_type,
            )
            for item in payload.items
        ],
        client_contact=payload.client_contact,
        is_debt=payload.is_debt,
        is_seller_initiated=payload.is_seller_initiated,
        booking_date=payload.booking_date,
    )
    db.commit()
    return OrderResponse.model_validate(_load_order(db, order.order_id))


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_order(order_id: UUID, db: DbSession) -> OrderResponse:
    """Get an order with its items and status history."""
    return OrderResponse.model_validate(_load_order(db, order_id))


@router.post(
    "/{order_id}/transitions",
    response_model=TransitionResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def fire_transition(
    order_id: UUID,
    payload: TransitionRequest,
    db: DbSession,
    config: Config,
) -> TransitionResponse:
    """Fire a trigger on an order.

    A rejected trigger returns 409; the rejection is still committed to
    the audit log.
    """
    service = OrderService(db, config=config)
    try:
        result = service.fire(
            order_id,
            payload.trigger,
            actor_id=payload.actor_id,
            actor_type=payload.actor_type,
            note=payload.note,
        )
    except InvalidTransitionError:
        db.commit()
        raise
    db.commit()

    dispatch = result.dispatch
    return TransitionResponse(
        order_id=result.order_id,
        from_status=result.from_status,
        to_status=result.to_status,
        trigger=result.trigger,
        payout_id=dispatch.artifact_id if dispatch and dispatch.artifact_type == "payout" else None,
    )
