"""Bearer-token principals and access-control dependencies.

Identity lives with the surrounding platform; this service only verifies the
JWT it issued and reads the ``sub`` and ``role`` claims.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt

from lendledger.config import settings
from lendledger.services.lending_core import LendingCore
from lendledger.services.principal import Principal, Role

security = HTTPBearer()

ALGORITHM = "HS256"


# ── Token helpers ────────────────────────────────────────────


def create_access_token(
    subject: str,
    role: Role,
    expires_delta: Optional[timedelta] = None,
    secret_key: Optional[str] = None,
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = {
        "sub": subject,
        "role": role.value,
        "exp": expire,
        "type": "access",
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(to_encode, secret_key or settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and return the JWT payload. Raises JWTError on failure."""
    return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])


# ── Dependencies ─────────────────────────────────────────────


def get_core(request: Request) -> LendingCore:
    return request.app.state.core


async def get_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    """Decode the bearer token into the calling principal."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_token(credentials.credentials)
        subject = payload.get("sub")
        token_type = payload.get("type")
        if not subject or token_type != "access":
            raise credentials_exception
        role = Role(payload.get("role"))
    except (JWTError, ValueError, TypeError):
        raise credentials_exception
    return Principal(id=str(subject), role=role)


def require_roles(*roles: Role):
    """Dependency factory that checks the principal has one of *roles*."""
    async def role_checker(principal: Principal = Depends(get_principal)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal
    return role_checker
