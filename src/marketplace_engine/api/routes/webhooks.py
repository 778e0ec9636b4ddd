"""Provider webhook endpoints."""

from typing import Annotated, Any

from fastapi import APIRouter, Body, status
from sqlalchemy.orm import Session

from marketplace_engine.api.dependencies import (
    Config,
    DbSession,
    Provider,
    SessionFactory,
    SourceAddress,
)
from marketplace_engine.api.schemas import (
    ErrorResponse,
    PayoutCallback,
    PayoutCallbackResponse,
    ReconcileResponse,
)
from marketplace_engine.database import run_in_transaction
from marketplace_engine.services.reconciler import PaymentReconciler
from marketplace_engine.services.webhook_gate import WebhookIngestionGate
from marketplace_engine.services.withdrawal_service import WithdrawalService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/payments",
    response_model=ReconcileResponse,
    status_code=status.HTTP_200_OK,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def payment_webhook(
    payload: Annotated[Any, Body()],
    db: DbSession,
    session_factory: SessionFactory,
    provider: Provider,
    config: Config,
    source: SourceAddress,
) -> ReconcileResponse:
    """Ingest a payment status webhook.

    The raw delivery is committed before reconciliation starts, so it is
    kept even when reconciliation fails.
    """
    envelope = WebhookIngestionGate(db, config=config).record(payload, source)
    db.commit()

    def reconcile(session: Session):
        reconciler = PaymentReconciler(session, provider, config=config)
        return WebhookIngestionGate(session, reconciler, config).forward(envelope)

    outcome = run_in_transaction(reconcile, session_factory=session_factory)
    dispatch = outcome.dispatch
    return ReconcileResponse(
        payment_id=outcome.payment_id,
        correlation_id=outcome.correlation_id,
        previous_status=outcome.previous_status,
        status=outcome.status,
        written=outcome.written,
        artifact_type=dispatch.artifact_type if dispatch else None,
        artifact_id=dispatch.artifact_id if dispatch else None,
        artifact_created=bool(dispatch and dispatch.is_new),
    )


@router.post(
    "/payouts",
    response_model=PayoutCallbackResponse,
    status_code=status.HTTP_200_OK,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def payout_webhook(
    payload: PayoutCallback,
    session_factory: SessionFactory,
    provider: Provider,
    config: Config,
) -> PayoutCallbackResponse:
    """Apply a provider payout result to its withdrawal request."""

    def apply(session: Session):
        return WithdrawalService(session, provider, config=config).handle_payout_callback(
            payload.provider_reference,
            payload.status or payload.state,
            reason=payload.reason,
        )

    outcome = run_in_transaction(apply, session_factory=session_factory)
    return PayoutCallbackResponse(
        withdrawal_request_id=outcome.withdrawal_request_id,
        previous_status=outcome.previous_status,
        status=outcome.status,
        written=outcome.written,
    )
