"""
Password hashing, bearer tokens and the request-scoped Actor.

Failures raise AuthenticationError (401) / AuthorizationError (403) so they
share the error body of every other endpoint.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from ..config import settings
from ..db import get_db
from ..errors import AuthenticationError, AuthorizationError
from ..logging import bind_actor
from ..models.models import User
from ..services.capabilities import Actor, Role, parse_role


TOKEN_TYPE = "access"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
bearer_scheme = HTTPBearer(auto_error=False)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        # Malformed or unknown hash format
        return False


def create_access_token(user_id: int, role: str) -> str:
    issued = datetime.now(tz=timezone.utc)
    claims = {
        "sub": str(user_id),
        "typ": TOKEN_TYPE,
        "role": role,  # informational; authorization reads the role from the database
        "iat": issued,
        "exp": issued + timedelta(seconds=settings.jwt_ttl_seconds),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise AuthenticationError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthenticationError("Invalid token") from e
    if claims.get("typ") != TOKEN_TYPE:
        raise AuthenticationError("Invalid token type")
    return claims


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if creds is None:
        raise AuthenticationError("Not authenticated")
    subject = decode_token(creds.credentials)["sub"]
    if not str(subject).isdigit():
        raise AuthenticationError("Invalid subject")
    user = db.get(User, int(subject))
    if user is None or not user.is_active:
        raise AuthenticationError("User not active")
    return user


async def get_actor(request: Request, user: User = Depends(get_current_user)) -> Actor:
    """
    Identity, role and request origin of the caller; role is read from the database, not the token.

    Async so the log binding lands in the request task, not a threadpool copy.
    """
    actor = Actor(
        user_id=user.id,
        username=user.username,
        role=parse_role(user.role),
        technician_id=user.technician_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    bind_actor(actor.user_id, actor.role.value)
    return actor


def require_roles(*required_roles: Role):
    def _dep(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in required_roles:
            raise AuthorizationError(f"Requires role: {', '.join(r.value for r in required_roles)}")
        return actor

    return _dep
