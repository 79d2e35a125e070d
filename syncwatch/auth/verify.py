"""
verify.py
---------
Purpose:
    JWT verification for user and admin routes (HS256 shared secret).

Notes:
    - Provides `auth_dependency` for user routes.
    - Provides `admin_dependency` for the sync-health dashboard.
"""

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from syncwatch.config import settings

ADMIN_ROLE = "admin"

_security = HTTPBearer()


def verify_jwt(token: str) -> dict:
    if not settings.JWT_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication not configured",
        )
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUDIENCE,
            options={"verify_exp": True, "require": ["sub"]},
        )
    except jwt.PyJWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid authentication token: {e}",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def auth_dependency(credentials: HTTPAuthorizationCredentials = Depends(_security)) -> dict:
    token = credentials.credentials
    return verify_jwt(token)


def admin_dependency(claims: dict = Depends(auth_dependency)) -> dict:
    role = claims.get("role")
    roles = claims.get("app_metadata", {}).get("roles", [])
    if role != ADMIN_ROLE and ADMIN_ROLE not in roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return claims
