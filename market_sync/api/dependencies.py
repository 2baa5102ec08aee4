"""
Authentication dependencies for the Market Sync API.

User-facing routes validate RS256 access tokens issued by the Auth Service
with its public key. Cron triggers authenticate with a shared secret.
"""
import hmac
import logging
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from market_sync.core.config import get_settings
from market_sync.core.exceptions import AuthenticationError

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=True)


def _get_public_key_for_verify() -> str:
    """Return normalized PEM public key for jwt.decode."""
    return get_settings().jwt_public_key_pem


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """
    Validate JWT from Authorization: Bearer <token>.

    Verifies the RS256 signature, expiration, and that the token is an
    access token.

    Returns:
        user_id (str): `sub` claim

    Raises:
        HTTPException 401: Token invalid, expired or of the wrong type
        HTTPException 503: JWT public key not configured
    """
    token = credentials.credentials
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        settings = get_settings()
        payload = jwt.decode(
            token,
            _get_public_key_for_verify(),
            algorithms=[settings.JWT_ALGORITHM or "RS256"],
            options={
                "verify_signature": True,
                "verify_exp": True,
                "require": ["exp", "sub", "type"],
            },
        )
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired. Please refresh your token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid JWT token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except ValueError as e:
        logger.error(f"JWT key configuration error: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service configuration error",
        )

    if payload.get("type") != "access":
        logger.warning(f"Invalid token type: {payload.get('type')}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type. Access token required.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user identifier",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return str(user_id)


async def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """
    Check `Authorization: Bearer <CRON_SECRET>` on cron-triggered routes.

    Raises:
        HTTPException 503: CRON_SECRET not configured
        AuthenticationError: Header missing or secret mismatch
    """
    secret = get_settings().CRON_SECRET
    if not secret:
        logger.error("Cron endpoint called but CRON_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron secret not configured",
        )

    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        logger.warning("Rejected cron request with invalid secret")
        raise AuthenticationError("Invalid cron secret")
