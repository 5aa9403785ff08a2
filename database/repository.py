"""
Data-model operations — idempotent upserts and user-scoped reads.

Every function takes the caller's ``AsyncSession`` and only flushes; the
caller owns the transaction.  Upserts go through the dialect's
``INSERT … ON CONFLICT DO UPDATE`` so a repeated write overwrites the row
instead of duplicating it.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.schemas import SourceContactData, SourceInteractionData
from database.models import (
    Connection,
    ConnectionStatus,
    GoldenRecord,
    IdentityMap,
    SourceContact,
    SourceInteraction,
    User,
)

logger = logging.getLogger(__name__)


def _to_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return uuid.UUID(value) if isinstance(value, str) else value


def _insert(session: AsyncSession, model):
    """Dialect-specific ``insert`` that supports ``on_conflict_do_*``."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


async def ensure_user_exists(
    session: AsyncSession, user_id: str | uuid.UUID, email: Optional[str] = None
) -> None:
    """Create a ``User`` row if one does not already exist (idempotent)."""
    uid = _to_uuid(user_id)
    stmt = (
        _insert(session, User)
        .values(
            user_id=uid,
            email=email or f"{uid}@contacts.local",
            display_name=f"User {str(uid)[:8]}",
        )
        .on_conflict_do_nothing(index_elements=["user_id"])
    )
    await session.execute(stmt)
    await session.flush()


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[User]:
    result = await session.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    email: str,
    password_hash: str,
    display_name: Optional[str] = None,
) -> User:
    user = User(
        user_id=uuid.uuid4(),
        email=email,
        display_name=display_name or email.split("@", 1)[0],
        password_hash=password_hash,
    )
    session.add(user)
    await session.flush()
    return user


# ── Connections ──────────────────────────────────────────────────────


async def upsert_connection(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    provider: str,
    access_token_encrypted: str,
    refresh_token_encrypted: Optional[str],
    token_expires_at: datetime,
) -> Connection:
    """Insert or replace the (user, provider) connection; always ends ``active``."""
    uid = _to_uuid(user_id)
    now = datetime.now(timezone.utc)
    values = {
        "access_token_encrypted": access_token_encrypted,
        "refresh_token_encrypted": refresh_token_encrypted,
        "token_expires_at": token_expires_at,
        "status": ConnectionStatus.ACTIVE,
        "updated_at": now,
    }
    stmt = (
        _insert(session, Connection)
        .values(
            connection_id=uuid.uuid4(),
            user_id=uid,
            provider=provider,
            created_at=now,
            **values,
        )
        .on_conflict_do_update(index_elements=["user_id", "provider"], set_=values)
    )
    await session.execute(stmt)
    await session.flush()

    result = await session.execute(
        select(Connection)
        .where(Connection.user_id == uid, Connection.provider == provider)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def get_connection(
    session: AsyncSession,
    connection_id: str | uuid.UUID,
    user_id: str | uuid.UUID | None = None,
) -> Optional[Connection]:
    """Load one connection; when ``user_id`` is given the row must belong to it."""
    stmt = select(Connection).where(Connection.connection_id == _to_uuid(connection_id))
    if user_id is not None:
        stmt = stmt.where(Connection.user_id == _to_uuid(user_id))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_connections(session: AsyncSession, user_id: str | uuid.UUID) -> List[Connection]:
    result = await session.execute(
        select(Connection)
        .where(Connection.user_id == _to_uuid(user_id))
        .order_by(Connection.created_at)
    )
    return list(result.scalars().all())


async def update_connection_tokens(
    session: AsyncSession,
    connection_id: str | uuid.UUID,
    access_token_encrypted: str,
    refresh_token_encrypted: Optional[str],
    token_expires_at: datetime,
) -> None:
    await session.execute(
        update(Connection)
        .where(Connection.connection_id == _to_uuid(connection_id))
        .values(
            access_token_encrypted=access_token_encrypted,
            refresh_token_encrypted=refresh_token_encrypted,
            token_expires_at=token_expires_at,
            updated_at=datetime.now(timezone.utc),
        )
    )
    await session.flush()


async def deactivate_connection(session: AsyncSession, connection_id: str | uuid.UUID) -> None:
    """Soft-disable: keep the row (and its synced data) but drop the credentials."""
    await session.execute(
        update(Connection)
        .where(Connection.connection_id == _to_uuid(connection_id))
        .values(
            status=ConnectionStatus.INACTIVE,
            access_token_encrypted=None,
            refresh_token_encrypted=None,
            token_expires_at=None,
            updated_at=datetime.now(timezone.utc),
        )
    )
    await session.flush()


async def delete_connection(session: AsyncSession, connection_id: str | uuid.UUID) -> None:
    await session.execute(delete(Connection).where(Connection.connection_id == _to_uuid(connection_id)))
    await session.flush()


async def active_connection_ids(session: AsyncSession) -> List[uuid.UUID]:
    result = await session.execute(
        select(Connection.connection_id).where(Connection.status == ConnectionStatus.ACTIVE)
    )
    return list(result.scalars().all())


async def expiring_connection_ids(session: AsyncSession, cutoff: datetime) -> List[uuid.UUID]:
    """Active connections whose token expires before ``cutoff``."""
    result = await session.execute(
        select(Connection.connection_id).where(
            Connection.status == ConnectionStatus.ACTIVE,
            Connection.token_expires_at.is_not(None),
            Connection.token_expires_at < cutoff,
        )
    )
    return list(result.scalars().all())


# ── Source records ───────────────────────────────────────────────────


async def upsert_source_contact(
    session: AsyncSession,
    connection_id: uuid.UUID,
    contact: SourceContactData,
) -> None:
    """Write the provider's snapshot; a repeat overwrites every mutable field."""
    values = {
        "provider": contact.provider,
        "email": contact.email,
        "phone": contact.phone,
        "first_name": contact.first_name,
        "last_name": contact.last_name,
        "company_name": contact.company_name,
        "job_title": contact.job_title,
        "raw": contact.raw,
        "source_updated_at": contact.source_updated_at,
        "system_updated_at": datetime.now(timezone.utc),
    }
    stmt = (
        _insert(session, SourceContact)
        .values(
            connection_id=connection_id,
            provider_contact_id=contact.provider_contact_id,
            **values,
        )
        .on_conflict_do_update(
            index_elements=["connection_id", "provider_contact_id"],
            set_=values,
        )
    )
    await session.execute(stmt)
    await session.flush()


async def upsert_source_interaction(
    session: AsyncSession,
    connection_id: uuid.UUID,
    interaction: SourceInteractionData,
) -> None:
    values = {
        "provider_contact_id": interaction.provider_contact_id,
        "entity_type": interaction.entity_type,
        "content_text": interaction.content_text,
        "raw": interaction.raw,
        "source_updated_at": interaction.source_updated_at,
        "system_updated_at": datetime.now(timezone.utc),
    }
    stmt = (
        _insert(session, SourceInteraction)
        .values(
            connection_id=connection_id,
            interaction_id=interaction.interaction_id,
            **values,
        )
        .on_conflict_do_update(
            index_elements=["connection_id", "interaction_id"],
            set_=values,
        )
    )
    await session.execute(stmt)
    await session.flush()


# ── Golden record views ──────────────────────────────────────────────


def _golden_dict(record: GoldenRecord) -> Dict[str, Any]:
    return {
        "golden_record_id": str(record.golden_record_id),
        "email": record.email,
        "first_name": record.first_name,
        "last_name": record.last_name,
        "phone": record.phone,
        "source_updated_at": record.source_updated_at.isoformat() if record.source_updated_at else None,
        "system_updated_at": record.system_updated_at.isoformat() if record.system_updated_at else None,
    }


async def list_golden_records(session: AsyncSession, user_id: str | uuid.UUID) -> List[Dict[str, Any]]:
    result = await session.execute(
        select(GoldenRecord)
        .where(GoldenRecord.user_id == _to_uuid(user_id))
        .order_by(GoldenRecord.last_name, GoldenRecord.first_name)
    )
    return [_golden_dict(r) for r in result.scalars().all()]


async def get_golden_record_detail(
    session: AsyncSession,
    golden_record_id: str | uuid.UUID,
    user_id: str | uuid.UUID,
) -> Optional[Dict[str, Any]]:
    """
    Golden record plus the source contacts and interactions it was built from.

    Sources are restricted to the user's own connections and matched on
    (provider, provider_contact_id) through the identity map.
    """
    uid = _to_uuid(user_id)
    result = await session.execute(
        select(GoldenRecord).where(
            GoldenRecord.golden_record_id == _to_uuid(golden_record_id),
            GoldenRecord.user_id == uid,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        return None

    detail = _golden_dict(record)
    detail["sources"] = []
    detail["interactions"] = []

    mappings = (
        await session.execute(
            select(IdentityMap.provider, IdentityMap.provider_contact_id).where(
                IdentityMap.golden_record_id == record.golden_record_id,
                IdentityMap.user_id == uid,
            )
        )
    ).all()
    if not mappings:
        return detail

    def mapped(contact_id_col):
        return or_(
            *[
                and_(Connection.provider == provider, contact_id_col == provider_contact_id)
                for provider, provider_contact_id in mappings
            ]
        )

    sources = (
        await session.execute(
            select(SourceContact, Connection.provider)
            .join(Connection, Connection.connection_id == SourceContact.connection_id)
            .where(Connection.user_id == uid, mapped(SourceContact.provider_contact_id))
        )
    ).all()
    interactions = (
        await session.execute(
            select(SourceInteraction, Connection.provider)
            .join(Connection, Connection.connection_id == SourceInteraction.connection_id)
            .where(Connection.user_id == uid, mapped(SourceInteraction.provider_contact_id))
            .order_by(SourceInteraction.source_updated_at.desc())
        )
    ).all()

    detail["sources"] = [
        {
            "provider": provider,
            "provider_contact_id": s.provider_contact_id,
            "email": s.email,
            "first_name": s.first_name,
            "last_name": s.last_name,
            "phone": s.phone,
            "company_name": s.company_name,
            "job_title": s.job_title,
            "source_updated_at": s.source_updated_at.isoformat() if s.source_updated_at else None,
        }
        for s, provider in sources
    ]
    detail["interactions"] = [
        {
            "provider": provider,
            "interaction_id": i.interaction_id,
            "provider_contact_id": i.provider_contact_id,
            "entity_type": i.entity_type,
            "content_text": i.content_text,
            "source_updated_at": i.source_updated_at.isoformat() if i.source_updated_at else None,
        }
        for i, provider in interactions
    ]
    return detail
