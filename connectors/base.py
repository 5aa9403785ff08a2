"""
BaseProvider — abstract interface for all CRM / helpdesk providers.

Every provider (HubSpot, Pipedrive, Zendesk, …) subclasses this and
implements the OAuth flow, the paginated fetches and the field
normalisation.  Callers never see a provider's paging protocol:
``fetch_contacts`` / ``fetch_interactions`` are async generators that
start from the first page on every call and stop when the provider says
there is nothing left.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import ValidationError

from auth.tokens import create_state
from config.settings import Settings, config
from connectors.schemas import (
    ContactInput,
    OAuthTokens,
    ProviderCredentials,
    ProviderInfo,
    RawContact,
    RawInteraction,
    SourceContactData,
    SourceInteractionData,
)
from core.errors import ProviderAPIError

logger = logging.getLogger(__name__)


class BaseProvider(ABC):
    """Abstract base for all provider adapters."""

    default_expires_in: int = 3600

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or config
        self._transport = transport

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug: 'hubspot', 'pipedrive', 'zendesk'."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    def scopes(self) -> List[str]:
        return []

    def is_configured(self) -> bool:
        """
        Return True if this provider has all required config
        (client id, secret, …).
        """
        return True

    def info(self) -> ProviderInfo:
        return ProviderInfo(
            provider=self.provider_name,
            display_name=self.display_name,
            scopes=self.scopes,
        )

    # ── OAuth flow ──────────────────────────────────────────────────────

    def get_auth_url(self, user_id: str) -> str:
        """
        Build the provider's authorization URL.

        The ``state`` parameter carries ``user_id`` (signed) so the
        callback can attribute the connection without a session.
        """
        return self.build_auth_url(create_state(str(user_id)))

    @abstractmethod
    def build_auth_url(self, state: str) -> str:
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange the authorization code for tokens."""
        ...

    @abstractmethod
    async def refresh(self, credentials: ProviderCredentials) -> OAuthTokens:
        """Obtain a new token set using the stored refresh token."""
        ...

    @abstractmethod
    async def revoke(self, credentials: ProviderCredentials) -> None:
        """
        Revoke the grant at the provider.  A 404 means "already revoked"
        and is not an error; anything else non-2xx raises.
        """
        ...

    # ── Data ────────────────────────────────────────────────────────────

    @abstractmethod
    def fetch_contacts(self, credentials: ProviderCredentials) -> AsyncIterator[RawContact]:
        ...

    @abstractmethod
    def normalize_contact(self, raw: RawContact) -> SourceContactData:
        ...

    @abstractmethod
    def fetch_interactions(
        self, credentials: ProviderCredentials
    ) -> AsyncIterator[RawInteraction]:
        ...

    @abstractmethod
    def normalize_interaction(self, raw: RawInteraction) -> SourceInteractionData:
        ...

    # ── Not supported yet ───────────────────────────────────────────────

    async def handle_webhook(self, event_type: str, payload: Any) -> None:
        raise NotImplementedError(f"{self.display_name} webhooks not implemented")

    async def create_contact(
        self, credentials: ProviderCredentials, contact: ContactInput
    ) -> RawContact:
        raise NotImplementedError(f"{self.display_name} create_contact not implemented")

    async def update_contact(
        self,
        credentials: ProviderCredentials,
        provider_contact_id: str,
        contact: ContactInput,
    ) -> RawContact:
        raise NotImplementedError(f"{self.display_name} update_contact not implemented")

    # ── Helpers ─────────────────────────────────────────────────────────

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self.settings.provider_http_timeout,
        )

    def _raise_for_status(self, resp: httpx.Response, operation: str) -> None:
        if resp.is_success:
            return
        raise ProviderAPIError(self.provider_name, operation, resp.status_code, resp.text)

    def _json(self, resp: httpx.Response, operation: str) -> Dict[str, Any]:
        """Decode a 2xx body; anything but a JSON object is a provider error."""
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderAPIError(
                self.provider_name, operation, resp.status_code, "response body is not JSON"
            ) from exc
        if not isinstance(data, dict):
            raise ProviderAPIError(
                self.provider_name,
                operation,
                resp.status_code,
                f"expected a JSON object, got {type(data).__name__}",
            )
        return data

    def _parse_tokens(self, resp: httpx.Response, operation: str) -> OAuthTokens:
        self._raise_for_status(resp, operation)
        data = self._json(resp, operation)
        if data.get("expires_in") is None:
            data["expires_in"] = self.default_expires_in
        try:
            return OAuthTokens.model_validate(data)
        except ValidationError as exc:
            raise ProviderAPIError(
                self.provider_name,
                operation,
                resp.status_code,
                f"malformed token response: {exc.error_count()} error(s)",
            ) from exc

    async def _get_page(
        self,
        client: httpx.AsyncClient,
        url: str,
        credentials: ProviderCredentials,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        resp = await client.get(
            url,
            params=params,
            headers={"Authorization": f"Bearer {credentials.access_token}"},
        )
        self._raise_for_status(resp, operation)
        return self._json(resp, operation)

    def _revoked(self, resp: httpx.Response, operation: str) -> None:
        if resp.status_code == 404:
            logger.info("%s grant already revoked (404)", self.provider_name)
            return
        self._raise_for_status(resp, operation)
