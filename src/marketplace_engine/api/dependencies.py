"""FastAPI dependencies for dependency injection."""

from collections.abc import Callable, Generator
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from marketplace_engine.config import EngineConfig
from marketplace_engine.database import init_db
from marketplace_engine.providers.base import PaymentProvider


def get_session_factory(request: Request) -> Callable[[], Session]:
    """Session factory configured on the app, or the global one."""
    factory = getattr(request.app.state, "session_factory", None)
    if factory is None:
        _, factory = init_db()
        request.app.state.session_factory = factory
    return factory


def get_db_session(
    factory: Annotated[Callable[[], Session], Depends(get_session_factory)],
) -> Generator[Session, None, None]:
    """Get database session dependency. Routes commit explicitly."""
    session = factory()
    try:
        yield session
    finally:
        session.close()


def get_provider(request: Request) -> PaymentProvider:
    """Payment provider adapter configured on the app."""
    return request.app.state.provider


def get_engine_config(request: Request) -> EngineConfig:
    """Engine configuration configured on the app."""
    return request.app.state.engine_config


def get_source_address(
    request: Request,
    x_forwarded_for: Annotated[str | None, Header()] = None,
) -> str:
    """Caller address, preferring the first X-Forwarded-For hop."""
    if x_forwarded_for:
        return x_forwarded_for.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


# Type aliases for cleaner dependency injection
DbSession = Annotated[Session, Depends(get_db_session)]
SessionFactory = Annotated[Callable[[], Session], Depends(get_session_factory)]
Provider = Annotated[PaymentProvider, Depends(get_provider)]
Config = Annotated[EngineConfig, Depends(get_engine_config)]
SourceAddress = Annotated[str, Depends(get_source_address)]
