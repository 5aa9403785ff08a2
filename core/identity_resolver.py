"""
Identity resolver — folds normalized source contacts into golden records.

Resolution order for one contact of one user:

1. an identity-map row for (provider, provider_contact_id) already exists
2. exact, case-insensitive email match among the user's golden records
3. otherwise a new golden record seeded from the contact

Steps 1 and 2 finish with update-if-newer.  Matching never crosses users
and is not transitive: only an identity-map row or an equal email merges.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.schemas import SourceContactData, as_utc
from database.models import GoldenRecord, IdentityMap

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Golden-record fields a source contact may improve
MERGE_FIELDS = ("email", "first_name", "last_name", "phone")


class ResolutionOutcome:
    CREATED = "created"
    MATCHED_IDENTITY = "matched_identity"
    MATCHED_EMAIL = "matched_email"


@dataclass(frozen=True)
class Resolution:
    golden_record_id: uuid.UUID
    outcome: str
    applied: bool = True


def merge_if_newer(
    record: GoldenRecord,
    contact: SourceContactData,
    now: Optional[datetime] = None,
) -> bool:
    """
    Apply ``contact`` to ``record`` unless it is strictly older.

    Missing timestamps on either side count as the epoch, so equal (or
    both missing) timestamps apply.  Only non-null incoming fields are
    written; a later sync can fill a field in but never blank it.

    Returns
    -------
    True when the record was updated, False when the contact was stale.
    """
    incoming = as_utc(contact.source_updated_at) or _EPOCH
    stored = as_utc(record.source_updated_at) or _EPOCH
    if incoming < stored:
        return False

    if contact.source_updated_at is not None:
        record.source_updated_at = contact.source_updated_at
    for field in MERGE_FIELDS:
        value = getattr(contact, field)
        if value is not None:
            setattr(record, field, value)
    record.system_updated_at = now or datetime.now(timezone.utc)
    return True


class IdentityResolver:
    """Stateless; every call works inside the caller's session."""

    async def resolve(
        self,
        session: AsyncSession,
        user_id: uuid.UUID,
        contact: SourceContactData,
    ) -> Resolution:
        record = await self._find_by_identity(session, user_id, contact)
        if record is not None:
            applied = merge_if_newer(record, contact)
            await session.flush()
            if not applied:
                logger.debug(
                    "Stale %s contact %s ignored for golden record %s",
                    contact.provider,
                    contact.provider_contact_id,
                    record.golden_record_id,
                )
            return Resolution(record.golden_record_id, ResolutionOutcome.MATCHED_IDENTITY, applied)

        if contact.email:
            record = await self._find_by_email(session, user_id, contact.email)
            if record is not None:
                await self._link(session, record, user_id, contact)
                applied = merge_if_newer(record, contact)
                await session.flush()
                logger.info(
                    "Linked %s contact %s to golden record %s by email",
                    contact.provider,
                    contact.provider_contact_id,
                    record.golden_record_id,
                )
                return Resolution(record.golden_record_id, ResolutionOutcome.MATCHED_EMAIL, applied)

        record = GoldenRecord(
            golden_record_id=uuid.uuid4(),
            user_id=user_id,
            email=contact.email,
            first_name=contact.first_name,
            last_name=contact.last_name,
            phone=contact.phone,
            source_updated_at=contact.source_updated_at,
            system_updated_at=datetime.now(timezone.utc),
        )
        session.add(record)
        await session.flush()
        await self._link(session, record, user_id, contact)
        return Resolution(record.golden_record_id, ResolutionOutcome.CREATED)

    # ── lookups ─────────────────────────────────────────────────────────

    async def _find_by_identity(
        self, session: AsyncSession, user_id: uuid.UUID, contact: SourceContactData
    ) -> Optional[GoldenRecord]:
        result = await session.execute(
            select(GoldenRecord)
            .join(IdentityMap, IdentityMap.golden_record_id == GoldenRecord.golden_record_id)
            .where(
                IdentityMap.user_id == user_id,
                IdentityMap.provider == contact.provider,
                IdentityMap.provider_contact_id == contact.provider_contact_id,
            )
        )
        return result.scalar_one_or_none()

    async def _find_by_email(
        self, session: AsyncSession, user_id: uuid.UUID, email: str
    ) -> Optional[GoldenRecord]:
        result = await session.execute(
            select(GoldenRecord)
            .where(
                GoldenRecord.user_id == user_id,
                func.lower(GoldenRecord.email) == email.lower(),
            )
            .order_by(GoldenRecord.system_updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _link(
        self,
        session: AsyncSession,
        record: GoldenRecord,
        user_id: uuid.UUID,
        contact: SourceContactData,
    ) -> None:
        session.add(
            IdentityMap(
                golden_record_id=record.golden_record_id,
                user_id=user_id,
                provider=contact.provider,
                provider_contact_id=contact.provider_contact_id,
            )
        )
        await session.flush()
