"""Request identity for the API.

Users log in once for a bearer token (HS256 JWT whose ``sub`` is the
username); every user-facing route resolves it back to a ``User`` row.
Job endpoints use a shared ``X-Cron-Secret`` instead.
"""
from __future__ import annotations

import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from mhealth_core.config import Settings
from mhealth_core.db import SessionLocal
from mhealth_core.models import User

logger = logging.getLogger("mhealth_core.auth")

_FALLBACK_KEY = "mhealth-dev-key"
SIGNING_KEY = os.getenv("SECRET_KEY") or _FALLBACK_KEY
if SIGNING_KEY == _FALLBACK_KEY:
    logger.warning("auth.key SECRET_KEY unset; tokens are signed with a development key")

TOKEN_ALGORITHM = "HS256"
TOKEN_TTL = timedelta(hours=12)

passwords = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer_token = OAuth2PasswordBearer(tokenUrl="users/login")


def hash_password(password: str) -> str:
    return passwords.hash(password)


def check_password(user: Optional[User], password: str) -> bool:
    if user is None or not user.password_hash:
        return False
    return passwords.verify(password, user.password_hash)


def issue_token(username: str, ttl: Optional[timedelta] = None) -> str:
    expires = datetime.now(timezone.utc) + (ttl if ttl is not None else TOKEN_TTL)
    return jwt.encode({"sub": username, "exp": expires}, SIGNING_KEY, algorithm=TOKEN_ALGORITHM)


def token_subject(token: str) -> Optional[str]:
    """Username carried by ``token``; None when it is expired, forged or malformed."""
    try:
        claims = jwt.decode(token, SIGNING_KEY, algorithms=[TOKEN_ALGORITHM])
    except JWTError as e:
        logger.info("auth.token rejected: %s", e.__class__.__name__)
        return None
    return claims.get("sub") or None


def get_db() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(token: str = Depends(bearer_token), db: Session = Depends(get_db)) -> User:
    username = token_subject(token)
    user = db.query(User).filter(User.username == username).first() if username else None
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_cron_secret(x_cron_secret: Optional[str] = Header(None)) -> None:
    """Job endpoints stay open until MHEALTH_CRON_SECRET is configured."""
    expected = Settings().cron_secret
    if not expected:
        return
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        logger.warning("auth.cron denied")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid cron secret")


__all__ = [
    "hash_password",
    "check_password",
    "issue_token",
    "token_subject",
    "get_db",
    "current_user",
    "require_cron_secret",
]
