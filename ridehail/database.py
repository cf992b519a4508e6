from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Local runs and tests: one shared connection for in-memory databases
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            kwargs["poolclass"] = StaticPool
        return kwargs
    return {"pool_pre_ping": True, "pool_size": settings.DB_POOL_SIZE}


engine = create_engine(settings.DB_URL, future=True, **_engine_kwargs(settings.DB_URL))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True, expire_on_commit=False)


class SessionUnitOfWork:
    """Transaction boundary for writes that must land together."""

    def __init__(self, db):
        self.db = db

    @contextmanager
    def atomic(self):
        try:
            yield
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise


# Dialects that accept per-transaction statement/lock timeouts
BOUNDED_DIALECTS = ("postgresql",)


def apply_deadline(connection, deadline) -> None:
    remaining = deadline.remaining()
    if remaining is None:
        return
    ms = max(1, int(remaining * 1000))
    connection.exec_driver_sql(f"SET LOCAL statement_timeout = {ms}")
    connection.exec_driver_sql(f"SET LOCAL lock_timeout = {ms}")


def bound_to_deadline(db, deadline) -> None:
    """Cap every statement and lock wait in ``db``'s transactions by the request deadline."""
    if db.get_bind().dialect.name not in BOUNDED_DIALECTS:
        return

    @event.listens_for(db, "after_begin")
    def _bound(session, transaction, connection):
        apply_deadline(connection, deadline)
