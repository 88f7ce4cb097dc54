from __future__ import annotations

from collections.abc import Generator

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from .db import SessionLocal, User
from .errors import Forbidden, NotAuthenticated

# auto_error=False so a missing header becomes our own plain-text 401
security = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer token to a user."""
    if credentials is None or not credentials.credentials:
        raise NotAuthenticated()
    user = db.scalars(select(User).where(User.api_token == credentials.credentials)).first()
    if user is None:
        raise NotAuthenticated()
    return user


def privileged_user(user: User = Depends(current_user)) -> User:
    if not user.is_privileged:
        raise Forbidden("Not authorized. Privileged access required.")
    return user
