"""
Bearer-token authentication.

Tokens are issued by the account service; this module only checks them
(signature + expiry) and extracts the user id from the `sub` claim.
Known users are upserted so billing always has a users row to attach
the gateway customer id to.
"""
from typing import Optional
import logging

import jwt
from fastapi import Request

from cryptowatch.core.config import settings
from cryptowatch.core.errors import UnauthorizedError

logger = logging.getLogger(__name__)


def verify_bearer_token(token: str, secret: Optional[str] = None, algorithms: Optional[list[str]] = None) -> dict:
    """
    Verify a bearer JWT and return its claims.

    Raises:
        UnauthorizedError: missing secret, bad signature, expired token or no `sub`
    """
    key = secret or settings.AUTH_JWT_SECRET
    if not key:
        raise UnauthorizedError("Authentication is not configured")
    algs = algorithms or [a.strip() for a in settings.AUTH_JWT_ALGORITHMS.split(",") if a.strip()]

    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=algs,
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthorizedError("Invalid token")

    if not claims.get("sub"):
        raise UnauthorizedError("Invalid token")
    return claims


def get_current_user_id(request: Request) -> str:
    """
    FastAPI dependency: authenticated user id from `Authorization: Bearer <jwt>`.

    Raises:
        UnauthorizedError (401): header missing or token invalid
    """
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise UnauthorizedError("Missing Authorization (Bearer JWT) header")

    claims = verify_bearer_token(auth_header[7:])
    user_id = str(claims["sub"])

    from cryptowatch.features.billing.store import ensure_user
    ensure_user(user_id, email=claims.get("email"))

    request.state.user_id = user_id
    return user_id
