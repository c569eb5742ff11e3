"""
JWT Verification & Scope Enforcement

This module is responsible for:

1. Verifying JWTs issued by the platform (dashboard, widget backend).
2. Enforcing scope-based authorization rules.
3. Producing a validated `CallerContext` for downstream routes.

Security Model
--------------
- Tokens are short-lived and must carry issuer, audience, `tenant_id`
  and scope claims.
- The tenant a request operates on is taken from the verified token only.
"""

from __future__ import annotations

from typing import Callable

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import Settings
from ..core.errors import InvalidTenantError
from .models import CallerContext


# ---------------------------------------------------------------------
# Security Scheme
# ---------------------------------------------------------------------

security = HTTPBearer(auto_error=True)

SCOPE_INDEXING = "indexing"
SCOPE_RETRIEVAL = "retrieval"


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class JWTVerificationError(RuntimeError):
    """Raised internally when token verification fails before converting to HTTP errors."""


# ---------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------

def get_request_settings(request: Request) -> Settings:
    return request.app.state.settings


def _decode_token(token: str, settings: Settings) -> dict:
    """
    Decode and validate a platform JWT.

    Raises
    ------
    JWTVerificationError
        If verification is not configured.
    Various JWT-related exceptions, which the public wrapper handles.
    """
    if settings.jwt_secret is None:
        raise JWTVerificationError("Missing jwt_secret in configuration.")
    if not settings.jwt_algo:
        raise JWTVerificationError("Missing jwt_algo in configuration.")

    return jwt.decode(
        token,
        settings.jwt_secret.get_secret_value(),
        algorithms=[settings.jwt_algo],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
        options={
            "require": ["iss", "aud", "iat", "exp", "sub", "tenant_id", "scope"],
        },
    )


# ---------------------------------------------------------------------
# Public Authentication Dependency
# ---------------------------------------------------------------------

def verify_platform_jwt(
    creds: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_request_settings),
) -> CallerContext:
    """
    Verify a platform JWT and construct a CallerContext.

    Expected claims:
      - iss / aud: configured issuer and audience
      - sub: caller identity
      - tenant_id: tenant the caller acts for
      - scope: list of granted operations

    Raises
    ------
    HTTPException(401) for invalid or expired tokens.
    """
    try:
        payload = _decode_token(creds.credentials, settings)
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired.",
        )
    except jwt.InvalidAudienceError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token audience.",
        )
    except jwt.InvalidIssuerError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token issuer.",
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or malformed token.",
        )
    except JWTVerificationError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="JWT verification configuration error.",
        )

    scopes = payload.get("scope")
    if not isinstance(scopes, list):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="'scope' claim must be a list.",
        )

    try:
        return CallerContext(
            tenant_id=payload.get("tenant_id"),
            subject=str(payload.get("sub")),
            scopes=[str(s) for s in scopes],
            client_id=str(payload.get("client_id", "platform")),
        )
    except InvalidTenantError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token carries an invalid 'tenant_id' claim.",
        )


# ---------------------------------------------------------------------
# Scope enforcement helper
# ---------------------------------------------------------------------

def require_scopes(*required_scopes: str) -> Callable:
    """
    Create a FastAPI dependency that enforces scope-based access control.

    Example:
        @router.post("/collections/{collection_id}/retrieve")
        async def retrieve(caller = Depends(require_scopes("retrieval"))):
            ...
    """

    def check_scopes(
        caller: CallerContext = Depends(verify_platform_jwt),
    ) -> CallerContext:

        missing = [s for s in required_scopes if s not in caller.scopes]

        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scope(s): {', '.join(missing)}",
            )

        return caller

    return check_scopes
