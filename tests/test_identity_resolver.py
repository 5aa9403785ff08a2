"""
Tests for the IdentityResolver and the update-if-newer merge policy.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from connectors.schemas import SourceContactData
from core.identity_resolver import IdentityResolver, ResolutionOutcome, merge_if_newer
from database.models import GoldenRecord, IdentityMap

T1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
T2 = T1 + timedelta(days=1)


def _contact(contact_id="c1", provider="fake", **fields) -> SourceContactData:
    return SourceContactData(provider_contact_id=contact_id, provider=provider, **fields)


async def _resolve(session_factory, user_id, contact):
    async with session_factory() as session:
        resolution = await IdentityResolver().resolve(session, user_id, contact)
        await session.commit()
    return resolution


async def _golden(session_factory, golden_record_id) -> GoldenRecord:
    async with session_factory() as session:
        return await session.get(GoldenRecord, golden_record_id)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestMergeIfNewer:
    def test_newer_overwrites_non_null_fields(self):
        record = GoldenRecord(email="a@example.com", first_name="Ada", source_updated_at=T1)
        applied = merge_if_newer(record, _contact(first_name="Augusta", last_name="King", source_updated_at=T2))
        assert applied
        assert record.first_name == "Augusta"
        assert record.last_name == "King"
        assert record.email == "a@example.com"
        assert record.source_updated_at == T2

    def test_older_is_rejected(self):
        record = GoldenRecord(first_name="Ada", source_updated_at=T2)
        assert not merge_if_newer(record, _contact(first_name="Old", source_updated_at=T1))
        assert record.first_name == "Ada"
        assert record.source_updated_at == T2

    def test_equal_timestamp_applies(self):
        record = GoldenRecord(first_name="Ada", source_updated_at=T1)
        assert merge_if_newer(record, _contact(first_name="Ada L.", source_updated_at=T1))
        assert record.first_name == "Ada L."

    def test_missing_incoming_timestamp_is_epoch(self):
        record = GoldenRecord(first_name="Ada", source_updated_at=T1)
        assert not merge_if_newer(record, _contact(first_name="Nope"))
        assert record.first_name == "Ada"

    def test_both_missing_applies_and_keeps_timestamp_empty(self):
        record = GoldenRecord(first_name="Ada")
        assert merge_if_newer(record, _contact(first_name="Ada B."))
        assert record.first_name == "Ada B."
        assert record.source_updated_at is None

    def test_naive_stored_timestamp_is_utc(self):
        record = GoldenRecord(first_name="Ada", source_updated_at=T2.replace(tzinfo=None))
        assert not merge_if_newer(record, _contact(first_name="Old", source_updated_at=T1))

    def test_system_updated_at_bumped(self):
        now = datetime(2025, 5, 5, tzinfo=timezone.utc)
        record = GoldenRecord(source_updated_at=T1)
        merge_if_newer(record, _contact(source_updated_at=T1), now=now)
        assert record.system_updated_at == now


class TestResolve:
    @pytest.mark.asyncio
    async def test_new_contact_creates_golden_record(self, session_factory, user_id):
        resolution = await _resolve(
            session_factory, user_id,
            _contact(email="ada@example.com", first_name="Ada", source_updated_at=T1),
        )

        assert resolution.outcome == ResolutionOutcome.CREATED
        golden = await _golden(session_factory, resolution.golden_record_id)
        assert golden.email == "ada@example.com"
        assert golden.first_name == "Ada"
        assert golden.user_id == user_id
        assert await _count(session_factory, IdentityMap) == 1

    @pytest.mark.asyncio
    async def test_existing_mapping_wins(self, session_factory, user_id):
        first = await _resolve(session_factory, user_id, _contact(email="ada@example.com", source_updated_at=T1))
        # same provider id, new email: still the same person
        second = await _resolve(session_factory, user_id, _contact(email="ada@new.example", source_updated_at=T2))

        assert second.outcome == ResolutionOutcome.MATCHED_IDENTITY
        assert second.golden_record_id == first.golden_record_id
        golden = await _golden(session_factory, first.golden_record_id)
        assert golden.email == "ada@new.example"

    @pytest.mark.asyncio
    async def test_email_match_is_case_insensitive(self, session_factory, user_id):
        first = await _resolve(session_factory, user_id, _contact(email="Ada@Example.com", source_updated_at=T1))
        second = await _resolve(
            session_factory, user_id,
            _contact("z9", provider="other", email="ada@example.COM", phone="+1 555", source_updated_at=T2),
        )

        assert second.outcome == ResolutionOutcome.MATCHED_EMAIL
        assert second.golden_record_id == first.golden_record_id
        assert await _count(session_factory, GoldenRecord) == 1
        assert await _count(session_factory, IdentityMap) == 2
        golden = await _golden(session_factory, first.golden_record_id)
        assert golden.phone == "+1 555"

    @pytest.mark.asyncio
    async def test_email_match_does_not_cross_users(self, session_factory, user_id, other_user_id):
        mine = await _resolve(session_factory, user_id, _contact(email="ada@example.com"))
        theirs = await _resolve(session_factory, other_user_id, _contact("c2", email="ada@example.com"))

        assert theirs.outcome == ResolutionOutcome.CREATED
        assert theirs.golden_record_id != mine.golden_record_id
        assert await _count(session_factory, GoldenRecord) == 2

    @pytest.mark.asyncio
    async def test_same_provider_id_for_two_users_stays_separate(self, session_factory, user_id, other_user_id):
        mine = await _resolve(session_factory, user_id, _contact("shared", first_name="Mine"))
        theirs = await _resolve(session_factory, other_user_id, _contact("shared", first_name="Theirs"))

        assert theirs.outcome == ResolutionOutcome.CREATED
        assert (await _golden(session_factory, mine.golden_record_id)).first_name == "Mine"

    @pytest.mark.asyncio
    async def test_contact_without_email_never_email_matches(self, session_factory, user_id):
        await _resolve(session_factory, user_id, _contact("c1", first_name="Ada"))
        second = await _resolve(session_factory, user_id, _contact("c2", provider="other", first_name="Ada"))
        assert second.outcome == ResolutionOutcome.CREATED
        assert await _count(session_factory, GoldenRecord) == 2

    @pytest.mark.asyncio
    async def test_shared_email_links_most_recently_updated_record(self, session_factory, user_id):
        now = datetime.now(timezone.utc)
        stale_id, fresh_id = uuid.uuid4(), uuid.uuid4()
        async with session_factory() as session:
            session.add(GoldenRecord(
                golden_record_id=stale_id, user_id=user_id, email="dup@example.com",
                system_updated_at=now - timedelta(days=5),
            ))
            session.add(GoldenRecord(
                golden_record_id=fresh_id, user_id=user_id, email="dup@example.com",
                system_updated_at=now,
            ))
            await session.commit()

        resolution = await _resolve(session_factory, user_id, _contact("z1", provider="other", email="DUP@example.com"))

        assert resolution.outcome == ResolutionOutcome.MATCHED_EMAIL
        assert resolution.golden_record_id == fresh_id

    @pytest.mark.asyncio
    async def test_different_emails_never_merge(self, session_factory, user_id):
        a = await _resolve(session_factory, user_id, _contact("c1", email="ada@example.com"))
        b = await _resolve(session_factory, user_id, _contact("c2", provider="other", email="ada@elsewhere.example"))
        assert a.golden_record_id != b.golden_record_id


class TestMergeProperties:
    @pytest.mark.asyncio
    async def test_newer_then_older_keeps_newer(self, session_factory, user_id):
        newer = _contact(email="ada@example.com", first_name="Augusta", source_updated_at=T2)
        older = _contact(email="ada@old.example", first_name="Ada", source_updated_at=T1)

        first = await _resolve(session_factory, user_id, newer)
        stale = await _resolve(session_factory, user_id, older)

        assert not stale.applied
        golden = await _golden(session_factory, first.golden_record_id)
        assert golden.first_name == "Augusta"
        assert golden.email == "ada@example.com"

    @pytest.mark.asyncio
    async def test_older_then_newer_converges_to_newer(self, session_factory, user_id):
        first = await _resolve(session_factory, user_id, _contact(first_name="Ada", source_updated_at=T1))
        await _resolve(session_factory, user_id, _contact(first_name="Augusta", source_updated_at=T2))

        golden = await _golden(session_factory, first.golden_record_id)
        assert golden.first_name == "Augusta"

    @pytest.mark.asyncio
    async def test_null_email_does_not_erase(self, session_factory, user_id):
        first = await _resolve(session_factory, user_id, _contact(email="ada@example.com", source_updated_at=T1))
        await _resolve(session_factory, user_id, _contact(email=None, last_name="Lovelace", source_updated_at=T2))

        golden = await _golden(session_factory, first.golden_record_id)
        assert golden.email == "ada@example.com"
        assert golden.last_name == "Lovelace"

    @pytest.mark.asyncio
    async def test_identity_map_rejects_second_row_for_same_provider_id(self, session_factory, user_id):
        resolution = await _resolve(session_factory, user_id, _contact("c1"))
        other_golden = uuid.uuid4()

        with pytest.raises(IntegrityError):
            async with session_factory() as session:
                session.add(GoldenRecord(golden_record_id=other_golden, user_id=user_id))
                await session.flush()
                session.add(IdentityMap(
                    golden_record_id=other_golden,
                    user_id=user_id,
                    provider="fake",
                    provider_contact_id="c1",
                ))
                await session.commit()

        assert await _count(session_factory, IdentityMap) == 1
        assert resolution.outcome == ResolutionOutcome.CREATED
