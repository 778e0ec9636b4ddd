"""Payment endpoints."""

from fastapi import APIRouter, status
from sqlalchemy.orm import Session

from marketplace_engine.api.dependencies import Config, DbSession, Provider, SessionFactory
from marketplace_engine.api.schemas import (
    ErrorResponse,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentStatusResponse,
    WithdrawalCreate,
    WithdrawalResponse,
)
from marketplace_engine.database import run_in_transaction
from marketplace_engine.errors import ValidationError
from marketplace_engine.services.payment_service import PaymentService
from marketplace_engine.services.reconciler import PaymentReconciler
from marketplace_engine.services.withdrawal_service import WithdrawalService

router = APIRouter(tags=["payments"])


@router.post(
    "/payments",
    response_model=PaymentInitiateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def initiate_payment(
    payload: PaymentInitiateRequest,
    db: DbSession,
    provider: Provider,
) -> PaymentInitiateResponse:
    """Start a charge for an order or for event tickets."""
    service = PaymentService(db, provider)
    if payload.order_id is not None:
        outcome = service.initiate_order_payment(
            order_id=payload.order_id,
            payer_contact=payload.payer_contact,
            payer_email=payload.payer_email,
        )
    elif payload.ticket_type_id is not None:
        if not payload.payer_email:
            raise ValidationError("Ticket purchases need a payer email", field="payer_email")
        outcome = service.initiate_ticket_payment(
            ticket_type_id=payload.ticket_type_id,
            quantity=payload.quantity,
            payer_contact=payload.payer_contact,
            payer_email=payload.payer_email,
            customer_name=payload.customer_name,
        )
    else:
        raise ValidationError("Either order_id or ticket_type_id is required")
    db.commit()
    return PaymentInitiateResponse(
        payment_id=outcome.payment_id,
        invoice_id=outcome.invoice_id,
        provider_reference=outcome.provider_reference,
        provider_correlation_id=outcome.provider_correlation_id,
    )


@router.get(
    "/payments/{correlation_id}/status",
    response_model=PaymentStatusResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_payment_status(
    correlation_id: str,
    session_factory: SessionFactory,
    provider: Provider,
    config: Config,
) -> PaymentStatusResponse:
    """Current payment status; non-terminal payments are re-polled first."""

    def check(session: Session):
        return PaymentReconciler(session, provider, config=config).get_payment_status(
            correlation_id
        )

    view = run_in_transaction(check, session_factory=session_factory)
    return PaymentStatusResponse.model_validate(view)


@router.post(
    "/withdrawals",
    response_model=WithdrawalResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def request_withdrawal(
    payload: WithdrawalCreate,
    db: DbSession,
    provider: Provider,
    config: Config,
) -> WithdrawalResponse:
    """Withdraw from a seller, event or organizer balance."""
    withdrawal = WithdrawalService(db, provider, config=config).request_withdrawal(
        holder_type=payload.holder_type,
        holder_id=payload.holder_id,
        amount=payload.amount,
        destination=payload.destination,
    )
    db.commit()
    return WithdrawalResponse.model_validate(withdrawal)
