"""
FastAPI dependencies (shared across routes).
"""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from auth.tokens import InvalidTokenError, verify_token
from core.services import Services


def get_services(request: Request) -> Services:
    """The ``Services`` container built at startup."""
    return request.app.state.services


async def get_current_user_id(
    authorization: str = Header(..., alias="Authorization"),
) -> str:
    """
    Extract and verify the Bearer token from the Authorization header.
    Returns the authenticated user_id (UUID string).
    """
    if not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer token",
        )
    try:
        return verify_token(authorization[7:])
    except InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from None
