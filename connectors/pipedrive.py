"""
PipedriveProvider — OAuth2 + API v2.

Contacts are persons (``/v2/persons``), interactions are deals
(``/v2/deals``) linked through ``person_id``.  Both page with
``additional_data.next_cursor``.  The token endpoint authenticates the
client with HTTP Basic auth.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional
from urllib.parse import urlencode

from connectors.base import BaseProvider
from connectors.schemas import (
    OAuthTokens,
    ProviderCredentials,
    RawContact,
    RawInteraction,
    SourceContactData,
    SourceInteractionData,
    clean_str,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

_PD_AUTH_URL = "https://oauth.pipedrive.com/oauth/authorize"
_PD_TOKEN_URL = "https://oauth.pipedrive.com/oauth/token"
_PD_REVOKE_URL = "https://oauth.pipedrive.com/oauth/revoke"
_PD_API = "https://api.pipedrive.com/v2"


def _first_value(items: Any) -> Optional[str]:
    """Pick the primary entry of a Pipedrive ``[{value, primary}]`` list."""
    if not isinstance(items, list) or not items:
        return None
    primary = next((i for i in items if isinstance(i, dict) and i.get("primary")), None)
    chosen = primary or items[0]
    if isinstance(chosen, dict):
        return clean_str(chosen.get("value"))
    return clean_str(chosen)


class PipedriveProvider(BaseProvider):
    """OAuth2 adapter for Pipedrive."""

    @property
    def provider_name(self) -> str:
        return "pipedrive"

    @property
    def display_name(self) -> str:
        return "Pipedrive"

    def is_configured(self) -> bool:
        return bool(
            self.settings.pipedrive_client_id and self.settings.pipedrive_client_secret
        )

    def _basic_auth(self) -> tuple:
        return (self.settings.pipedrive_client_id, self.settings.pipedrive_client_secret)

    def build_auth_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.pipedrive_client_id,
            "redirect_uri": self.settings.pipedrive_redirect_uri,
            "state": state,
        }
        return f"{_PD_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        async with self._client() as client:
            resp = await client.post(
                _PD_TOKEN_URL,
                auth=self._basic_auth(),
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": self.settings.pipedrive_redirect_uri,
                },
            )
        return self._parse_tokens(resp, "token exchange")

    async def refresh(self, credentials: ProviderCredentials) -> OAuthTokens:
        async with self._client() as client:
            resp = await client.post(
                _PD_TOKEN_URL,
                auth=self._basic_auth(),
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": credentials.refresh_token or "",
                },
            )
        return self._parse_tokens(resp, "token refresh")

    async def revoke(self, credentials: ProviderCredentials) -> None:
        async with self._client() as client:
            resp = await client.post(
                _PD_REVOKE_URL,
                auth=self._basic_auth(),
                data={
                    "token": credentials.access_token,
                    "token_type_hint": "access_token",
                },
            )
        self._revoked(resp, "token revocation")

    async def _paginate(
        self, credentials: ProviderCredentials, path: str, operation: str
    ) -> AsyncIterator[dict]:
        cursor = None
        async with self._client() as client:
            while True:
                params = {"limit": self.settings.provider_page_size}
                if cursor:
                    params["cursor"] = cursor
                data = await self._get_page(
                    client, f"{_PD_API}{path}", credentials, operation, params
                )
                for item in data.get("data") or []:
                    yield item
                cursor = (data.get("additional_data") or {}).get("next_cursor")
                if not cursor:
                    break

    async def fetch_contacts(
        self, credentials: ProviderCredentials
    ) -> AsyncIterator[RawContact]:
        async for person in self._paginate(credentials, "/persons", "fetch contacts"):
            yield RawContact(id=str(person["id"]), properties=person)

    def normalize_contact(self, raw: RawContact) -> SourceContactData:
        p = raw.properties
        return SourceContactData(
            provider_contact_id=raw.id,
            provider=self.provider_name,
            email=_first_value(p.get("emails")),
            first_name=clean_str(p.get("first_name")),
            last_name=clean_str(p.get("last_name")),
            phone=_first_value(p.get("phones")),
            company_name=clean_str(p.get("org_name")),
            job_title=clean_str(p.get("job_title")),
            raw=dict(p),
            source_updated_at=parse_timestamp(p.get("update_time")),
        )

    async def fetch_interactions(
        self, credentials: ProviderCredentials
    ) -> AsyncIterator[RawInteraction]:
        async for deal in self._paginate(credentials, "/deals", "fetch interactions"):
            yield RawInteraction(id=str(deal["id"]), properties=deal)

    def normalize_interaction(self, raw: RawInteraction) -> SourceInteractionData:
        p = raw.properties
        person_id = p.get("person_id")
        return SourceInteractionData(
            interaction_id=raw.id,
            provider_contact_id=str(person_id) if person_id else None,
            entity_type="deal",
            content_text=clean_str(p.get("title")),
            raw=dict(p),
            source_updated_at=parse_timestamp(p.get("update_time")),
        )
