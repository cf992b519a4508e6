import os

import pytest


os.environ.setdefault("ENV", "test")
os.environ.setdefault("DB_URL", "sqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret-0123456789abcdef0123456789")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("POLICY_CACHE_SECS", "0")
os.environ.setdefault("CANCELLATION_TIMEZONE", "UTC")

from ridehail.database import SessionLocal, engine  # noqa: E402
from ridehail.models import Base  # noqa: E402


Base.metadata.create_all(bind=engine)


@pytest.fixture(autouse=True)
def _clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
