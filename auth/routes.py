"""
Auth API routes — register, login.

Route prefix: /api/v1/auth
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from api.dependencies import get_services
from auth.password import hash_password, verify_password
from auth.tokens import create_token
from core.services import Services
from database import repository

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


# ── Request / response schemas ─────────────────────────────────────────


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=5, max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    display_name: str | None = Field(None, max_length=128)


class LoginRequest(BaseModel):
    email: str
    password: str


class AuthResponse(BaseModel):
    user_id: str
    email: str
    display_name: str | None
    token: str


def _auth_response(user) -> Dict[str, Any]:
    return {
        "user_id": str(user.user_id),
        "email": user.email,
        "display_name": user.display_name,
        "token": create_token(str(user.user_id)),
    }


# ── Endpoints ──────────────────────────────────────────────────────────


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    req: RegisterRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Create an account; emails are stored lower-cased."""
    email = req.email.strip().lower()
    password_hash = hash_password(req.password, services.settings.password_hash_rounds)

    async with services.session_factory() as session:
        if await repository.get_user_by_email(session, email) is not None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Email already registered",
            )
        try:
            user = await repository.create_user(session, email, password_hash, req.display_name)
            await session.commit()
        except IntegrityError:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Email already registered",
            ) from None

    logger.info("Registered user %s", user.user_id)
    return _auth_response(user)


@router.post("/login", response_model=AuthResponse)
async def login(
    req: LoginRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Login with email + password."""
    async with services.session_factory() as session:
        user = await repository.get_user_by_email(session, req.email.strip().lower())

    if user is None or not verify_password(req.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )

    logger.info("Login: %s", user.user_id)
    return _auth_response(user)
