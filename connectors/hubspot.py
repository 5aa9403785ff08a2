"""
HubSpotProvider — OAuth2 + CRM v3 objects API.

Contacts come from ``/crm/v3/objects/contacts``; interactions are deals
(``/crm/v3/objects/deals``) linked to contacts through associations.
Both endpoints page with ``paging.next.after``.
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, List
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

# HubSpot OAuth2 endpoints
_HS_AUTH_URL = "https://app.hubspot.com/oauth/authorize"
_HS_TOKEN_URL = "https://api.hubapi.com/oauth/v1/token"
_HS_API = "https://api.hubapi.com"

_CONTACT_PROPERTIES = "firstname,lastname,email,phone,company,jobtitle,lastmodifieddate"
_DEAL_PROPERTIES = "dealname,amount,dealstage,closedate,pipeline,hs_lastmodifieddate"


class HubSpotProvider(BaseProvider):
    """OAuth2 adapter for HubSpot CRM."""

    default_expires_in = 1800

    @property
    def provider_name(self) -> str:
        return "hubspot"

    @property
    def display_name(self) -> str:
        return "HubSpot"

    @property
    def scopes(self) -> List[str]:
        return [
            "crm.objects.contacts.read",
            "crm.objects.companies.read",
            "crm.objects.deals.read",
            "crm.schemas.contacts.read",
        ]

    def is_configured(self) -> bool:
        return bool(self.settings.hubspot_client_id and self.settings.hubspot_client_secret)

    def build_auth_url(self, state: str) -> str:
        params = {
            "client_id": self.settings.hubspot_client_id,
            "redirect_uri": self.settings.hubspot_redirect_uri,
            "scope": " ".join(self.scopes),
            "state": state,
        }
        return f"{_HS_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        async with self._client() as client:
            resp = await client.post(
                _HS_TOKEN_URL,
                data={
                    "grant_type": "authorization_code",
                    "client_id": self.settings.hubspot_client_id,
                    "client_secret": self.settings.hubspot_client_secret,
                    "redirect_uri": self.settings.hubspot_redirect_uri,
                    "code": code,
                },
            )
        return self._parse_tokens(resp, "token exchange")

    async def refresh(self, credentials: ProviderCredentials) -> OAuthTokens:
        async with self._client() as client:
            resp = await client.post(
                _HS_TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self.settings.hubspot_client_id,
                    "client_secret": self.settings.hubspot_client_secret,
                    "refresh_token": credentials.refresh_token or "",
                },
            )
        return self._parse_tokens(resp, "token refresh")

    async def revoke(self, credentials: ProviderCredentials) -> None:
        # HubSpot revokes by refresh token; there is nothing to revoke without one.
        if not credentials.refresh_token:
            return
        async with self._client() as client:
            resp = await client.delete(
                f"{_HS_API}/oauth/v1/refresh-tokens/{credentials.refresh_token}"
            )
        self._revoked(resp, "token revocation")

    async def fetch_contacts(
        self, credentials: ProviderCredentials
    ) -> AsyncIterator[RawContact]:
        after = None
        async with self._client() as client:
            while True:
                params = {
                    "limit": self.settings.provider_page_size,
                    "properties": _CONTACT_PROPERTIES,
                }
                if after:
                    params["after"] = after
                data = await self._get_page(
                    client,
                    f"{_HS_API}/crm/v3/objects/contacts",
                    credentials,
                    "fetch contacts",
                    params,
                )
                for result in data.get("results") or []:
                    yield RawContact(
                        id=str(result["id"]),
                        properties=result.get("properties") or {},
                    )
                after = ((data.get("paging") or {}).get("next") or {}).get("after")
                if not after:
                    break

    def normalize_contact(self, raw: RawContact) -> SourceContactData:
        p = raw.properties
        return SourceContactData(
            provider_contact_id=raw.id,
            provider=self.provider_name,
            email=clean_str(p.get("email")),
            first_name=clean_str(p.get("firstname")),
            last_name=clean_str(p.get("lastname")),
            phone=clean_str(p.get("phone")),
            company_name=clean_str(p.get("company")),
            job_title=clean_str(p.get("jobtitle")),
            raw=dict(p),
            source_updated_at=parse_timestamp(p.get("lastmodifieddate")),
        )

    async def fetch_interactions(
        self, credentials: ProviderCredentials
    ) -> AsyncIterator[RawInteraction]:
        after = None
        async with self._client() as client:
            while True:
                params = {
                    "limit": self.settings.provider_page_size,
                    "properties": _DEAL_PROPERTIES,
                    "associations": "contacts",
                }
                if after:
                    params["after"] = after
                data = await self._get_page(
                    client,
                    f"{_HS_API}/crm/v3/objects/deals",
                    credentials,
                    "fetch interactions",
                    params,
                )
                for result in data.get("results") or []:
                    yield RawInteraction(
                        id=str(result["id"]),
                        properties=result.get("properties") or {},
                        associations=result.get("associations"),
                    )
                after = ((data.get("paging") or {}).get("next") or {}).get("after")
                if not after:
                    break

    def normalize_interaction(self, raw: RawInteraction) -> SourceInteractionData:
        p = raw.properties
        contacts = ((raw.associations or {}).get("contacts") or {}).get("results") or []
        contact_id = str(contacts[0]["id"]) if contacts else None
        payload = dict(p)
        if raw.associations is not None:
            payload["associations"] = raw.associations
        return SourceInteractionData(
            interaction_id=raw.id,
            provider_contact_id=contact_id,
            entity_type="deal",
            content_text=clean_str(p.get("dealname")),
            raw=payload,
            source_updated_at=parse_timestamp(p.get("hs_lastmodifieddate")),
        )
