"""
JWT verification for tokens issued by the platform auth provider.
"""
from typing import Any

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from opsflow.core.config import settings
from opsflow.core.middleware import get_current_tenant_id

security_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLES = ("admin", "ops_supervisor")


def create_access_token(user_id: str, tenant_id: str, role: str, expires_in: int = 900) -> str:
    """Used by workers and tests; production tokens come from the auth provider."""
    import time

    now = int(time.time())
    payload = {
        "sub": user_id,
        "tenant_id": tenant_id,
        "role": role,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict[str, Any]:
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")


async def get_current_user(credentials: HTTPAuthorizationCredentials | None = Depends(security_scheme)) -> dict[str, Any]:
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authorization header missing")
    payload = decode_token(credentials.credentials)
    tenant_id = payload.get("tenant_id") or "default"
    header_tenant = get_current_tenant_id()
    if header_tenant and header_tenant != "default" and header_tenant != tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Tenant mismatch")
    return {
        "user_id": payload["sub"],
        "tenant_id": tenant_id,
        "role": payload.get("role", "viewer"),
    }


def require_role(*roles: str):
    """Admin roles always pass."""
    async def _check(user: dict = Depends(get_current_user)) -> dict:
        if user["role"] in ADMIN_ROLES or user["role"] in roles:
            return user
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Role required: {', '.join(roles) or 'admin'}")
    return _check
