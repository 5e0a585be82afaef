"""
Identity: password hashing, bearer tokens and the FastAPI dependencies that
resolve the caller. Route handlers trust the resolved Identity and never look
at credentials themselves.
"""

import logging
from datetime import timedelta
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pydantic import BaseModel

from errors import UnauthenticatedError, UnauthorizedError
from schemas import Role, User, utcnow

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

bearer_scheme = HTTPBearer(auto_error=False)


class Identity(BaseModel):
    user_id: str
    email: str
    role: Role = Role.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def create_token(user: User, secret: str, expires_minutes: int) -> str:
    now = utcnow()
    payload = {
        "sub": user.id,
        "email": user.email,
        "role": user.role.value,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_token(token: str, secret: str) -> Identity:
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.PyJWTError as exc:
        logger.debug("Rejected token: %s", exc)
        raise UnauthenticatedError() from exc
    return Identity(user_id=payload["sub"], email=payload["email"], role=payload.get("role", Role.CUSTOMER))


def current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Identity:
    if credentials is None:
        raise UnauthenticatedError("No token provided")
    return decode_token(credentials.credentials, request.app.state.settings.jwt_secret)


def optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[Identity]:
    """Attach the caller when a valid token is present; anonymous otherwise."""
    if credentials is None:
        return None
    try:
        return decode_token(credentials.credentials, request.app.state.settings.jwt_secret)
    except UnauthenticatedError:
        return None


def require_admin(user: Identity = Depends(current_user)) -> Identity:
    if not user.is_admin:
        raise UnauthorizedError("Admin access required")
    return user
