"""
Connector API routes — OAuth connect/callback, list connections,
disconnect, manual sync.

Route prefix: /api/v1/connectors
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse

from api.dependencies import get_current_user_id, get_services
from auth.tokens import InvalidTokenError, verify_state
from connectors.schemas import ConnectionInfo, ProviderInfo
from core.errors import SyncEngineError
from core.services import Services
from database import repository

logger = logging.getLogger(__name__)

router = APIRouter(tags=["connectors"])


def _frontend_redirect(services: Services, **params: str) -> RedirectResponse:
    url = f"{services.settings.frontend_url.rstrip('/')}/connections?{urlencode(params)}"
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/providers")
async def list_providers(services: Services = Depends(get_services)) -> List[ProviderInfo]:
    """
    List the configured providers.
    No auth required — used by frontend to show available connectors.
    """
    return services.registry.list_providers()


@router.get("/connections")
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> List[ConnectionInfo]:
    """List all connections for the authenticated user."""
    return await services.connections.list(user_id)


@router.get("/{provider}/auth-url")
async def get_auth_url(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> Dict[str, str]:
    """
    Get the OAuth authorization URL for a provider.

    Frontend should redirect the browser (or a popup) to this URL.
    """
    auth_url = services.connections.get_auth_url(provider, user_id)
    return {"auth_url": auth_url, "provider": provider}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    services: Services = Depends(get_services),
) -> RedirectResponse:
    """
    OAuth callback — the provider redirects here after consent.

    Never raises past this boundary: every outcome is a redirect back to
    the frontend, with ``connected=<provider>`` or ``error=<code>``.
    """
    if error:
        logger.info("OAuth consent for %s returned error: %s", provider, error)
        return _frontend_redirect(services, error=error, provider=provider)
    if not code or not state:
        return _frontend_redirect(services, error="missing_code_or_state", provider=provider)

    # 1. Verify state → get user_id
    try:
        user_id = verify_state(state)
    except InvalidTokenError as exc:
        logger.warning("Rejected OAuth callback for %s: %s", provider, exc)
        return _frontend_redirect(services, error="invalid_state", provider=provider)

    # 2. Exchange code, store the connection
    try:
        async with services.session_factory() as session:
            await repository.ensure_user_exists(session, user_id)
            await session.commit()
        await services.connections.complete_oauth(provider, code, user_id)
    except SyncEngineError as exc:
        logger.error("OAuth callback failed for %s: %s", provider, exc.message)
        return _frontend_redirect(services, error=exc.code, provider=provider)
    except httpx.HTTPError as exc:
        logger.error("OAuth callback failed for %s: %s", provider, exc)
        return _frontend_redirect(services, error="provider_unreachable", provider=provider)

    return _frontend_redirect(services, connected=provider)


@router.delete("/connections/{connection_id}")
async def delete_connection(
    connection_id: uuid.UUID,
    soft: bool = Query(False),
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Revoke and remove a connection (``soft=true`` keeps synced data)."""
    await services.connections.disconnect(connection_id, user_id, soft=soft)
    return {"status": "deactivated" if soft else "disconnected", "connection_id": str(connection_id)}


@router.post("/connections/{connection_id}/sync")
async def sync_connection(
    connection_id: uuid.UUID,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Queue a sync; a sync already running for this connection wins."""
    await services.connections.get(connection_id, user_id)
    job_id = await services.jobs.enqueue_sync(str(connection_id))
    return {
        "job_id": job_id,
        "status": "queued" if job_id else "already_running",
        "connection_id": str(connection_id),
    }
