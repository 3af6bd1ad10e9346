"""
Authentication middleware for JWT verification.

This module provides secure authentication by:
1. Extracting and verifying Clerk session JWTs from Authorization headers
2. Looking up the user in our database by the token's subject (Clerk user id)
3. Returning a verified AuthContext that routes can trust

SECURITY: Never trust user_id from client query parameters or bodies.
Always use the AuthContext returned by these dependencies.
"""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

import httpx
from fastapi import Header, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy import select

from config import settings
from models.database import get_session
from models.user import User

logger = logging.getLogger(__name__)

# Cache for JWKS public keys
_jwks_cache: dict | None = None


@dataclass
class AuthContext:
    """
    Verified authentication context.

    Values come from a verified JWT and our users table.
    """
    user_id: UUID
    clerk_id: str
    email: str
    plan: str

    @property
    def user_id_str(self) -> str:
        """String representation of user_id for services that take string ids."""
        return str(self.user_id)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _extract_token(authorization: Optional[str]) -> str:
    """Return the token from a "Bearer <token>" header or raise 401."""
    if not authorization:
        raise _unauthorized("Missing Authorization header")

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _unauthorized("Invalid Authorization header format. Expected: Bearer <token>")

    return parts[1]


async def _get_jwks() -> dict:
    """Fetch and cache the Clerk instance's JWKS."""
    global _jwks_cache

    if _jwks_cache is not None:
        return _jwks_cache

    if not settings.CLERK_ISSUER:
        logger.error("CLERK_ISSUER not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication not configured",
        )

    jwks_url = f"{settings.CLERK_ISSUER.rstrip('/')}/.well-known/jwks.json"

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(jwks_url)
            response.raise_for_status()
            _jwks_cache = response.json()
            logger.info("Fetched JWKS from %s", jwks_url)
            return _jwks_cache
    except Exception as e:
        logger.error("Failed to fetch JWKS from %s: %s", jwks_url, e)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch authentication keys",
        )


def _get_signing_key(jwks: dict, token: str) -> dict:
    """Find the JWKS key matching the token's kid header."""
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError:
        raise _unauthorized("Invalid token header")

    if not kid:
        raise _unauthorized("Token missing key ID")

    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return key

    # Keys may have rotated - drop the cache so the next request refetches
    global _jwks_cache
    _jwks_cache = None
    raise _unauthorized("Token signed with unknown key")


async def _verify_jwt(token: str) -> dict:
    """
    Verify the JWT and return its payload.

    Supports:
    - RS256 - Clerk session tokens, verified against the instance JWKS
    - HS256 - local development tokens signed with AUTH_JWT_SECRET
    """
    try:
        alg = jwt.get_unverified_header(token).get("alg", "RS256")
    except JWTError as e:
        logger.warning("Failed to decode token header: %s", e)
        raise _unauthorized("Invalid token format")

    try:
        if alg == "RS256":
            jwks = await _get_jwks()
            signing_key = _get_signing_key(jwks, token)
            return jwt.decode(
                token,
                signing_key,
                algorithms=["RS256"],
                issuer=settings.CLERK_ISSUER,
                options={"verify_aud": False},  # Clerk session tokens carry no aud
            )

        if not settings.AUTH_JWT_SECRET:
            logger.error("AUTH_JWT_SECRET not configured for %s token", alg)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Authentication not configured",
            )
        return jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_aud": False},
        )
    except JWTError as e:
        logger.warning("JWT verification failed: %s", e)
        raise _unauthorized("Invalid or expired token")


async def _get_user_from_token(payload: dict) -> User:
    """Look up the user by the token's subject (the Clerk user id)."""
    sub = payload.get("sub")
    if not sub:
        raise _unauthorized("Invalid token: missing subject")

    async with get_session() as session:
        result = await session.execute(select(User).where(User.clerk_id == sub))
        user = result.scalar_one_or_none()

    if not user:
        logger.warning("User not found for JWT subject: %s", sub)
        raise _unauthorized("User not found")
    return user


async def get_current_auth(
    authorization: Optional[str] = Header(None, alias="Authorization"),
) -> AuthContext:
    """
    FastAPI dependency that verifies the JWT and returns AuthContext.

    Usage:
        @router.get("/protected")
        async def protected_route(auth: AuthContext = Depends(get_current_auth)):
            ...
    """
    token = _extract_token(authorization)
    payload = await _verify_jwt(token)
    user = await _get_user_from_token(payload)

    return AuthContext(
        user_id=user.id,
        clerk_id=user.clerk_id,
        email=user.email,
        plan=user.plan or "trial",
    )


async def require_admin_key(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> None:
    """
    Require the shared admin key for operational endpoints.

    Usage:
        @router.post("/recovery", dependencies=[Depends(require_admin_key)])
    """
    if not settings.ADMIN_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access not configured",
        )
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.ADMIN_KEY):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
