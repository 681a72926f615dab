"""
API Dependencies

FastAPI dependency injection for authentication and the reconciliation engine.

Security: JWT tokens are verified with the HS256 shared secret. Never
decode without verification.
"""

import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from billing.config.settings import get_settings
from billing.domain.reconciliation import ReconciliationEngine, get_reconciliation_engine
from billing.domain.subscription import UserRole


logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


class Principal(BaseModel):
    """Authenticated caller."""
    user_id: str
    role: UserRole = UserRole.USER
    
    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
    
    def can_act_for(self, user_id: str) -> bool:
        return self.is_admin or self.user_id == user_id


def _decode_with_secret(token: str, secret: str, algorithm: str, audience: str) -> dict:
    """Verify JWT using the symmetric secret."""
    return jwt.decode(
        token,
        secret,
        algorithms=[algorithm],
        audience=audience,
        options={"require": ["exp", "sub"]},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """
    Extract and verify the caller from a bearer JWT.
    
    The ``role`` claim grants admin rights when it equals ``admin``.
    
    Raises:
        HTTPException 401: token missing, expired, or invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    
    settings = get_settings()
    if not settings.jwt_secret:
        logger.error("JWT secret is not configured; rejecting request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )
    
    try:
        payload = _decode_with_secret(
            credentials.credentials,
            settings.jwt_secret,
            settings.jwt_algorithm,
            settings.jwt_audience,
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
        )
    except jwt.InvalidTokenError as e:
        logger.warning("JWT verification failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or unverifiable token",
        )
    
    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user ID",
        )
    
    role = UserRole.ADMIN if payload.get("role") == UserRole.ADMIN.value else UserRole.USER
    return Principal(user_id=user_id, role=role)


async def require_admin(principal: Principal = Depends(get_current_user)) -> Principal:
    """Allow administrators only."""
    if not principal.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )
    return principal


def get_engine() -> ReconciliationEngine:
    """Engine provider; overridable in tests via dependency_overrides."""
    return get_reconciliation_engine()
