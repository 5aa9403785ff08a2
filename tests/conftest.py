"""
Shared fixtures: in-memory SQLite database, vault, fake provider, services.
"""

import uuid
from typing import AsyncIterator, List, Optional

import pytest
import pytest_asyncio

from config.settings import Settings
from connectors.base import BaseProvider
from connectors.encryption import TokenVault
from connectors.registry import ProviderRegistry
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
from core.errors import ProviderAPIError
from core.services import build_services
from database import repository
from database.session import build_engine, build_session_factory, init_models
from jobs.queue import LocalJobQueue
from jobs.worker import register_jobs

TEST_KEY = bytes(range(32))


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite+aiosqlite:///:memory:",
        token_encryption_key=TEST_KEY.hex(),
        hubspot_client_id="hs-id",
        hubspot_client_secret="hs-secret",
        pipedrive_client_id="pd-id",
        pipedrive_client_secret="pd-secret",
        zendesk_client_id="zd-id",
        zendesk_client_secret="zd-secret",
        zendesk_subdomain="acme",
        provider_page_size=2,
        password_hash_rounds=4,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def raw_contact(
    contact_id: str,
    email: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    phone: Optional[str] = None,
    updated_at: Optional[str] = None,
) -> RawContact:
    """Helper: build a RawContact in the fake provider's shape."""
    return RawContact(
        id=contact_id,
        properties={
            "email": email,
            "first_name": first_name,
            "last_name": last_name,
            "phone": phone,
            "updated_at": updated_at,
        },
    )


def raw_interaction(interaction_id: str, contact_id: Optional[str], subject: str) -> RawInteraction:
    return RawInteraction(
        id=interaction_id,
        properties={"contact_id": contact_id, "subject": subject},
    )


class FakeProvider(BaseProvider):
    """In-memory provider: serves whatever contacts / interactions the test sets."""

    def __init__(
        self,
        name: str = "fake",
        contacts: Optional[List[RawContact]] = None,
        interactions: Optional[List[RawInteraction]] = None,
    ) -> None:
        super().__init__(make_settings())
        self._name = name
        self.contacts = list(contacts or [])
        self.interactions = list(interactions or [])
        self.fail_contacts_after: Optional[int] = None
        self.token_expires_in = 3600
        self.refresh_calls = 0
        self.refresh_error: Optional[Exception] = None
        self.revoke_calls = 0
        self.revoke_error: Optional[Exception] = None
        self.seen_access_tokens: List[str] = []
        self.events: List[str] = []

    @property
    def provider_name(self) -> str:
        return self._name

    @property
    def display_name(self) -> str:
        return self._name.title()

    def build_auth_url(self, state: str) -> str:
        return f"https://{self._name}.example/authorize?state={state}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        return OAuthTokens(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            expires_in=self.token_expires_in,
        )

    async def refresh(self, credentials: ProviderCredentials) -> OAuthTokens:
        self.refresh_calls += 1
        self.events.append("refresh")
        if self.refresh_error is not None:
            raise self.refresh_error
        return OAuthTokens(access_token=f"refreshed-{self.refresh_calls}", expires_in=3600)

    async def revoke(self, credentials: ProviderCredentials) -> None:
        self.revoke_calls += 1
        if self.revoke_error is not None:
            raise self.revoke_error

    async def fetch_contacts(self, credentials: ProviderCredentials) -> AsyncIterator[RawContact]:
        self.events.append("fetch_contacts")
        self.seen_access_tokens.append(credentials.access_token)
        for index, contact in enumerate(self.contacts):
            if self.fail_contacts_after is not None and index >= self.fail_contacts_after:
                raise ProviderAPIError(self._name, "fetch contacts", 500, "upstream error")
            yield contact

    def normalize_contact(self, raw: RawContact) -> SourceContactData:
        p = raw.properties
        return SourceContactData(
            provider_contact_id=raw.id,
            provider=self._name,
            email=clean_str(p.get("email")),
            first_name=clean_str(p.get("first_name")),
            last_name=clean_str(p.get("last_name")),
            phone=clean_str(p.get("phone")),
            raw=dict(p),
            source_updated_at=parse_timestamp(p.get("updated_at")),
        )

    async def fetch_interactions(
        self, credentials: ProviderCredentials
    ) -> AsyncIterator[RawInteraction]:
        self.events.append("fetch_interactions")
        for interaction in self.interactions:
            yield interaction

    def normalize_interaction(self, raw: RawInteraction) -> SourceInteractionData:
        p = raw.properties
        return SourceInteractionData(
            interaction_id=raw.id,
            provider_contact_id=p.get("contact_id"),
            entity_type="ticket",
            content_text=p.get("subject"),
            raw=dict(p),
        )


# ── Fixtures ───────────────────────────────────────────────────────────


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def vault() -> TokenVault:
    return TokenVault(TEST_KEY)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider("fake")


@pytest.fixture
def other_provider() -> FakeProvider:
    return FakeProvider("other")


@pytest.fixture
def registry(fake_provider, other_provider) -> ProviderRegistry:
    reg = ProviderRegistry()
    reg.register(fake_provider)
    reg.register(other_provider)
    return reg.freeze()


@pytest_asyncio.fixture
async def engine():
    eng = build_engine("sqlite+aiosqlite:///:memory:")
    await init_models(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def queue() -> LocalJobQueue:
    return LocalJobQueue()


@pytest_asyncio.fixture
async def services(session_factory, queue, settings, registry, vault):
    svc = build_services(session_factory, queue, settings, registry=registry, vault=vault)
    await register_jobs(queue, svc.jobs, settings)
    return svc


async def create_user(session_factory) -> uuid.UUID:
    user_id = uuid.uuid4()
    async with session_factory() as session:
        await repository.ensure_user_exists(session, user_id)
        await session.commit()
    return user_id


@pytest_asyncio.fixture
async def user_id(session_factory) -> uuid.UUID:
    return await create_user(session_factory)


@pytest_asyncio.fixture
async def other_user_id(session_factory) -> uuid.UUID:
    return await create_user(session_factory)
