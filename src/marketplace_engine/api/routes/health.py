"""Health check endpoints."""

from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError

from marketplace_engine.api.dependencies import DbSession
from marketplace_engine.models import Payment, Payout, WithdrawalRequest

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: datetime
    database: str


class ReadinessResponse(BaseModel):
    """Readiness with the backlog the sweeps work through."""

    status: str
    open_payments: int
    pending_payouts: int
    processing_payouts: int
    flagged_withdrawals: int


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
)
def health_check(db: DbSession) -> HealthResponse:
    """Check API and database health."""
    db_status = "unhealthy"
    try:
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError:
        db_status = "unhealthy"

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        timestamp=datetime.now(timezone.utc),
        database=db_status,
    )


@router.get("/ready", response_model=ReadinessResponse, status_code=status.HTTP_200_OK)
def readiness_check(db: DbSession) -> ReadinessResponse:
    """Readiness check; 503 until the database answers."""

    def count(model, *conditions) -> int:
        return db.scalar(select(func.count()).select_from(model).where(*conditions))

    try:
        return ReadinessResponse(
            status="ready",
            open_payments=count(Payment, Payment.status.in_(("pending", "processing"))),
            pending_payouts=count(Payout, Payout.status == "pending"),
            processing_payouts=count(Payout, Payout.status == "processing"),
            flagged_withdrawals=count(
                WithdrawalRequest,
                WithdrawalRequest.status == "processing",
                WithdrawalRequest.reconciliation_flag.is_not(None),
            ),
        )
    except SQLAlchemyError as e:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, "database unavailable") from e


@router.get("/live", status_code=status.HTTP_200_OK)
def liveness_check() -> dict[str, str]:
    """Liveness check for container orchestration."""
    return {"status": "alive"}
