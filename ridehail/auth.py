import datetime as dt
import hashlib
import secrets
import uuid

import jwt
from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from .config import settings
from .database import SessionLocal, bound_to_deadline
from .enums import UserRole
from .errors import Forbidden, Unauthorized
from .models import User
from .service import Deadline


bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user_id: str, role: str = UserRole.RIDER.value) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + settings.jwt_expires_delta).timestamp()),
    }
    # Sign with the current secret (first in list)
    return jwt.encode(payload, settings.JWT_SECRETS[0], algorithm="HS256")


def get_deadline() -> Deadline:
    return Deadline.after(settings.REQUEST_DEADLINE_SECS)


def get_db(deadline: Deadline = Depends(get_deadline)):
    db = SessionLocal()
    bound_to_deadline(db, deadline)
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _decode(token: str) -> dict:
    last_err: Exception | None = None
    # Try every configured HS256 secret (rotation)
    for sec in settings.JWT_SECRETS:
        try:
            return jwt.decode(token, sec, algorithms=["HS256"])
        except jwt.ExpiredSignatureError:
            raise Unauthorized("token expired")
        except jwt.InvalidTokenError as e:
            last_err = e
    raise Unauthorized("invalid token") from last_err


def _user_from_credentials(creds: HTTPAuthorizationCredentials | None, db: Session) -> User:
    if creds is None or not creds.credentials:
        raise Unauthorized("unauthorized")
    payload = _decode(creds.credentials)
    try:
        user_id = uuid.UUID(str(payload.get("sub") or ""))
    except ValueError:
        raise Unauthorized("invalid token payload")
    user = db.get(User, user_id)
    if user is None:
        raise Unauthorized("user not found")
    return user


def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    return _user_from_credentials(creds, db)


def _admin_token_ok(incoming: str) -> bool:
    if not incoming:
        return False
    for candidate in settings.admin_tokens:
        if secrets.compare_digest(incoming, candidate):
            return True
    # Hashed token support (SHA-256 hex digests)
    digest = hashlib.sha256(incoming.encode()).hexdigest().lower()
    return any(secrets.compare_digest(digest, h) for h in settings.admin_token_hashes)


def require_admin(
    request: Request,
    x_admin_token: str | None = Header(default=None, alias="X-Admin-Token"),
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> None:
    """Admin guard: an ``admin`` user's bearer token or a configured X-Admin-Token."""
    if x_admin_token:
        if not _admin_token_ok(x_admin_token):
            raise Unauthorized("admin token invalid")
    else:
        user = _user_from_credentials(creds, db)
        if user.role != UserRole.ADMIN.value:
            raise Forbidden("admin only")
    allow = settings.admin_ip_allowlist
    if allow:
        host = request.client.host if request.client else None
        if host and host not in allow:
            raise Forbidden("admin_ip_blocked")


def is_admin(user: User) -> bool:
    return user.role == UserRole.ADMIN.value
