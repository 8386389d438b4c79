from contextlib import contextmanager
from typing import Iterator

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.errors import DependencyUnavailable
from app.models.tenant import Base


def build_engine(url: str, statement_timeout_ms: int | None = None) -> Engine:
    """
    Engine for the control plane or for a tenant database.

    PostgreSQL connections get a connect timeout and a statement timeout so an
    unreachable or stuck database fails the caller instead of hanging it.
    """
    timeout_ms = settings.db_statement_timeout_ms if statement_timeout_ms is None else statement_timeout_ms
    kwargs: dict = {"pool_pre_ping": True}
    if url.startswith("postgresql"):
        kwargs["pool_timeout"] = settings.db_pool_timeout
        kwargs["connect_args"] = {
            "connect_timeout": max(1, settings.db_pool_timeout),
            "options": f"-c statement_timeout={timeout_ms}",
        }
    elif url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@contextmanager
def dependency_guard(what: str) -> Iterator[None]:
    """Translate connectivity failures of an external store into DependencyUnavailable."""
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        raise DependencyUnavailable(f"{what} unavailable") from exc


def get_db(request: Request) -> Iterator[Session]:
    db = request.app.state.container.session_factory()
    try:
        yield db
    finally:
        db.close()


def ping(engine: Engine) -> bool:
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True
    except OperationalError:
        return False


def init_db(engine: Engine) -> None:
    # Create tables in dev/test without running Alembic
    if settings.env in {"dev", "test"}:
        Base.metadata.create_all(bind=engine)
