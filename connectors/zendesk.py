"""
ZendeskProvider — OAuth2 for a single Zendesk Support subdomain.

Contacts are end users (``/api/v2/users.json``), interactions are tickets
(``/api/v2/tickets.json``) linked through ``requester_id``.  Both use
cursor pagination: follow ``links.next`` while ``meta.has_more`` is true.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, List, Optional, Tuple
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


def _split_name(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """'Ada King Lovelace' → ('Ada', 'King Lovelace')."""
    name = clean_str(name)
    if not name:
        return None, None
    first, _, rest = name.partition(" ")
    return first, clean_str(rest)


class ZendeskProvider(BaseProvider):
    """OAuth2 adapter for Zendesk Support."""

    default_expires_in = 7200

    @property
    def provider_name(self) -> str:
        return "zendesk"

    @property
    def display_name(self) -> str:
        return "Zendesk"

    @property
    def scopes(self) -> List[str]:
        return ["users:read", "tickets:read"]

    def is_configured(self) -> bool:
        return bool(
            self.settings.zendesk_client_id
            and self.settings.zendesk_client_secret
            and self.settings.zendesk_subdomain
        )

    @property
    def _base(self) -> str:
        return f"https://{self.settings.zendesk_subdomain}.zendesk.com"

    def build_auth_url(self, state: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.settings.zendesk_client_id,
            "redirect_uri": self.settings.zendesk_redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{self._base}/oauth/authorizations/new?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        async with self._client() as client:
            resp = await client.post(
                f"{self._base}/oauth/tokens",
                json={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self.settings.zendesk_client_id,
                    "client_secret": self.settings.zendesk_client_secret,
                    "redirect_uri": self.settings.zendesk_redirect_uri,
                    "scope": " ".join(self.scopes),
                },
            )
        return self._parse_tokens(resp, "token exchange")

    async def refresh(self, credentials: ProviderCredentials) -> OAuthTokens:
        async with self._client() as client:
            resp = await client.post(
                f"{self._base}/oauth/tokens",
                json={
                    "grant_type": "refresh_token",
                    "refresh_token": credentials.refresh_token or "",
                    "client_id": self.settings.zendesk_client_id,
                    "client_secret": self.settings.zendesk_client_secret,
                },
            )
        return self._parse_tokens(resp, "token refresh")

    async def revoke(self, credentials: ProviderCredentials) -> None:
        async with self._client() as client:
            resp = await client.delete(
                f"{self._base}/api/v2/oauth/tokens/current.json",
                headers={"Authorization": f"Bearer {credentials.access_token}"},
            )
        self._revoked(resp, "token revocation")

    async def _paginate(
        self, credentials: ProviderCredentials, path: str, key: str, operation: str
    ) -> AsyncIterator[dict]:
        url: Optional[str] = f"{self._base}/api/v2/{path}"
        params: Optional[dict] = {"page[size]": self.settings.provider_page_size}
        async with self._client() as client:
            while url:
                data = await self._get_page(client, url, credentials, operation, params)
                for item in data.get(key) or []:
                    yield item
                has_more = (data.get("meta") or {}).get("has_more")
                url = (data.get("links") or {}).get("next") if has_more else None
                # ``links.next`` already carries the cursor and page size
                params = None

    async def fetch_contacts(
        self, credentials: ProviderCredentials
    ) -> AsyncIterator[RawContact]:
        async for user in self._paginate(credentials, "users.json", "users", "fetch contacts"):
            yield RawContact(id=str(user["id"]), properties=user)

    def normalize_contact(self, raw: RawContact) -> SourceContactData:
        p = raw.properties
        first_name, last_name = _split_name(p.get("name"))
        return SourceContactData(
            provider_contact_id=raw.id,
            provider=self.provider_name,
            email=clean_str(p.get("email")),
            first_name=first_name,
            last_name=last_name,
            phone=clean_str(p.get("phone")),
            company_name=None,
            job_title=None,
            raw=dict(p),
            source_updated_at=parse_timestamp(p.get("updated_at")),
        )

    async def fetch_interactions(
        self, credentials: ProviderCredentials
    ) -> AsyncIterator[RawInteraction]:
        async for ticket in self._paginate(
            credentials, "tickets.json", "tickets", "fetch interactions"
        ):
            yield RawInteraction(id=str(ticket["id"]), properties=ticket)

    def normalize_interaction(self, raw: RawInteraction) -> SourceInteractionData:
        p = raw.properties
        requester_id = p.get("requester_id")
        return SourceInteractionData(
            interaction_id=raw.id,
            provider_contact_id=str(requester_id) if requester_id else None,
            entity_type="ticket",
            content_text=clean_str(p.get("subject")) or clean_str(p.get("description")),
            raw=dict(p),
            source_updated_at=parse_timestamp(p.get("updated_at")),
        )
