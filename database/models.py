"""
SQLAlchemy ORM models for users, provider connections, source records and
golden records.

Column types are portable (``Uuid``, ``JSON`` with a JSONB variant) so the
same metadata runs on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

JsonType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ConnectionStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"


class User(Base):
    __tablename__ = "users"

    user_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(128))
    password_hash = Column(String(255))
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    connections = relationship("Connection", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    golden_records = relationship("GoldenRecord", cascade="all, delete-orphan", passive_deletes=True)


class Connection(Base):
    __tablename__ = "connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_connections_user_provider"),
        Index("ix_connections_status_expiry", "status", "token_expires_at"),
    )

    connection_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(50), nullable=False)
    access_token_encrypted = Column(Text)
    refresh_token_encrypted = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    status = Column(String(20), nullable=False, default=ConnectionStatus.ACTIVE)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    user = relationship("User", back_populates="connections")


class SourceContact(Base):
    __tablename__ = "source_contacts"
    __table_args__ = (
        PrimaryKeyConstraint("connection_id", "provider_contact_id"),
    )

    connection_id = Column(Uuid, ForeignKey("connections.connection_id", ondelete="CASCADE"), nullable=False)
    provider_contact_id = Column(String(255), nullable=False)
    provider = Column(String(50), nullable=False)
    email = Column(String(255))
    phone = Column(String(50))
    first_name = Column(String(100))
    last_name = Column(String(100))
    company_name = Column(String(255))
    job_title = Column(String(255))
    raw = Column(JsonType)
    source_updated_at = Column(DateTime(timezone=True))
    system_updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SourceInteraction(Base):
    __tablename__ = "source_interactions"
    __table_args__ = (
        PrimaryKeyConstraint("connection_id", "interaction_id"),
        Index("ix_source_interactions_contact", "connection_id", "provider_contact_id"),
    )

    connection_id = Column(Uuid, ForeignKey("connections.connection_id", ondelete="CASCADE"), nullable=False)
    interaction_id = Column(String(255), nullable=False)
    provider_contact_id = Column(String(255))
    entity_type = Column(String(50))
    content_text = Column(Text)
    raw = Column(JsonType)
    source_updated_at = Column(DateTime(timezone=True))
    system_updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class GoldenRecord(Base):
    __tablename__ = "golden_records"
    __table_args__ = (
        Index("ix_golden_records_user_email", "user_id", "email"),
    )

    golden_record_id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    email = Column(String(255))
    first_name = Column(String(100))
    last_name = Column(String(100))
    phone = Column(String(50))
    source_updated_at = Column(DateTime(timezone=True))
    system_updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    identities = relationship("IdentityMap", back_populates="golden_record", cascade="all, delete-orphan", passive_deletes=True)


class IdentityMap(Base):
    """(provider, provider_contact_id) → golden record, one row per user at most."""

    __tablename__ = "identity_map"
    __table_args__ = (
        PrimaryKeyConstraint("golden_record_id", "provider", "provider_contact_id"),
        UniqueConstraint("user_id", "provider", "provider_contact_id", name="uq_identity_map_user_provider_contact"),
    )

    golden_record_id = Column(Uuid, ForeignKey("golden_records.golden_record_id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Uuid, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(50), nullable=False)
    provider_contact_id = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    golden_record = relationship("GoldenRecord", back_populates="identities")
