"""
REST API routes — golden records and health.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from api.dependencies import get_current_user_id, get_services
from core.errors import NotFoundError
from core.services import Services
from database import repository

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/contacts")
async def list_contacts(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    """The authenticated user's golden records."""
    async with services.session_factory() as session:
        return await repository.list_golden_records(session, user_id)


@router.get("/contacts/{golden_record_id}")
async def get_contact(
    golden_record_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """A golden record with the source contacts and interactions behind it."""
    async with services.session_factory() as session:
        detail = await repository.get_golden_record_detail(session, golden_record_id, user_id)
    if detail is None:
        raise NotFoundError("Contact not found")
    return detail


@router.get("/health")
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return {
        "status": "ok",
        "providers": [p.provider for p in services.registry.list_providers()],
    }
