"""Pytest fixtures for marketplace engine tests."""

from __future__ import annotations

from collections.abc import Callable, Generator
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace_engine.config import EngineConfig
from marketplace_engine.models import (
    Base,
    Buyer,
    Event,
    Organizer,
    Payment,
    Seller,
    TicketType,
)
from marketplace_engine.providers.stub import StubProvider

# In-memory SQLite shared across sessions through a single connection.
# Row locks (FOR UPDATE) are no-ops here; use a test Postgres database
# to exercise real lock contention.
TEST_DATABASE_URL = "sqlite://"


def build_session_factory() -> sessionmaker[Session]:
    """Create a fresh in-memory database and return a session factory for it."""
    engine = create_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    """Session factory bound to a fresh in-memory database."""
    factory = build_session_factory()
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def fresh_database() -> Callable[[], sessionmaker[Session]]:
    """Factory for additional isolated databases (property tests)."""
    return build_session_factory


@pytest.fixture
def session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Create a database session for each test."""
    with session_factory() as session:
        yield session
        session.rollback()


@pytest.fixture
def config() -> EngineConfig:
    """Engine configuration with production defaults."""
    return EngineConfig()


@pytest.fixture
def provider() -> StubProvider:
    """Scriptable stub provider."""
    return StubProvider()


class MarketplaceTestData:
    """Builders for the rows most tests need."""

    def create_event(
        self, db: Session, ticket_price: Decimal = Decimal("500.00")
    ) -> tuple[Event, TicketType]:
        """Create an organizer, an event and one ticket type."""
        organizer = Organizer(organizer_id=uuid4(), name="Test Organizer")
        event = Event(event_id=uuid4(), organizer_id=organizer.organizer_id, title="Launch Night")
        ticket_type = TicketType(
            ticket_type_id=uuid4(),
            event_id=event.event_id,
            name="Regular",
            price=ticket_price,
        )
        db.add_all([organizer, event, ticket_type])
        db.flush()
        return event, ticket_type

    def create_ticket_payment(
        self,
        db: Session,
        event: Event,
        ticket_type: TicketType,
        *,
        invoice_id: str | None = None,
        amount: Decimal | None = None,
        payer_email: str | None = "buyer@example.com",
        status: str = "pending",
    ) -> Payment:
        """Create a payment funding one ticket."""
        payment = Payment(
            payment_id=uuid4(),
            invoice_id=invoice_id or f"INV-{uuid4().hex[:8].upper()}",
            amount=amount if amount is not None else ticket_type.price,
            currency="KES",
            status=status,
            payer_contact="254700000001",
            payer_email=payer_email,
            event_id=event.event_id,
            organizer_id=event.organizer_id,
            ticket_type_id=ticket_type.ticket_type_id,
            ticket_quantity=1,
            metadata_json={"customer_name": "Test Buyer"},
        )
        db.add(payment)
        db.flush()
        return payment

    def create_seller(self, db: Session, has_shop: bool = False) -> Seller:
        """Create a seller with a zero balance."""
        seller = Seller(seller_id=uuid4(), name="Test Seller", has_shop=has_shop)
        db.add(seller)
        db.flush()
        return seller

    def create_buyer(self, db: Session) -> Buyer:
        """Create a buyer."""
        buyer = Buyer(buyer_id=uuid4(), name="Test Buyer", email="buyer@example.com")
        db.add(buyer)
        db.flush()
        return buyer

    def create_order_payment(self, db: Session, order, invoice_id: str | None = None) -> Payment:
        """Create a pending payment funding an order."""
        payment = Payment(
            payment_id=uuid4(),
            invoice_id=invoice_id or f"INV-{uuid4().hex[:8].upper()}",
            amount=order.total_amount,
            currency=order.currency,
            status="pending",
            payer_contact="254700000002",
            order_id=order.order_id,
        )
        db.add(payment)
        db.flush()
        return payment


@pytest.fixture
def test_data() -> MarketplaceTestData:
    """Test data builders."""
    return MarketplaceTestData()
