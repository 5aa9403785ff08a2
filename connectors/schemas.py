"""
Pydantic schemas shared by the provider adapters, the connection manager
and the sync orchestrator.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth
# ═══════════════════════════════════════════════════════════════════════════════


class OAuthTokens(BaseModel):
    """Token set returned by a code exchange or a refresh."""

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_in: int = 3600


class ProviderCredentials(BaseModel):
    """Decrypted snapshot of a connection, handed to adapters.

    Lives only in process memory; tokens are excluded from ``repr``.
    """

    connection_id: uuid.UUID
    user_id: uuid.UUID
    provider: str
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    token_expires_at: Optional[datetime] = None


class ConnectionInfo(BaseModel):
    """Public view of a connection (no token material)."""

    connection_id: uuid.UUID
    provider: str
    status: str
    token_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ═══════════════════════════════════════════════════════════════════════════════
# Provider records
# ═══════════════════════════════════════════════════════════════════════════════


class RawContact(BaseModel):
    id: str
    properties: Dict[str, Any] = Field(default_factory=dict)


class RawInteraction(BaseModel):
    id: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    associations: Optional[Dict[str, Any]] = None


class SourceContactData(BaseModel):
    """Canonical contact shape.  Missing values are ``None``, never ``""``."""

    provider_contact_id: str
    provider: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    job_title: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
    source_updated_at: Optional[datetime] = None


class SourceInteractionData(BaseModel):
    interaction_id: str
    provider_contact_id: Optional[str] = None  # None when the record has no linked contact
    entity_type: str
    content_text: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
    source_updated_at: Optional[datetime] = None


class ContactInput(BaseModel):
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    job_title: Optional[str] = None


class ProviderInfo(BaseModel):
    provider: str
    display_name: str
    scopes: List[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# Normalisation helpers
# ═══════════════════════════════════════════════════════════════════════════════


def clean_str(value: Any) -> Optional[str]:
    """Return a stripped string, or ``None`` for missing / blank values."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite returns them naive)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a provider timestamp into an aware UTC ``datetime``.

    Accepts ISO-8601 strings (with or without ``Z``) and epoch numbers
    (milliseconds when large enough, seconds otherwise).
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable provider timestamp %r, treating as missing", value)
            return None
    return as_utc(parsed)
