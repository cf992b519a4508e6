import uuid

from fastapi import Depends
from sqlalchemy.orm import Session

from .auth import get_db
from .config import settings
from .database import SessionUnitOfWork
from .errors import BadRequest
from .gateway import SqlRideGateway
from .ledger import SqlLedgerStore
from .policy import CachedPolicySource, SqlPolicySource
from .service import CancellationService


policy_cache = CachedPolicySource(settings.POLICY_CACHE_SECS)


def get_service(db: Session = Depends(get_db)) -> CancellationService:
    return CancellationService(
        SqlLedgerStore(db),
        SqlRideGateway(db),
        policy_cache.bind(SqlPolicySource(db)),
        SessionUnitOfWork(db),
    )


def parse_uuid(raw: str, what: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except (ValueError, TypeError):
        raise BadRequest(f"invalid {what} id")
