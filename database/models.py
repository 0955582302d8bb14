"""
SQLAlchemy ORM models for integrations, connections and the audit log.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class IntegrationRow(Base):
    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("tenant_id", "provider_name", name="uq_integrations_tenant_provider"),
        Index("ix_integrations_tenant", "tenant_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    tenant_id = Column(String(64), nullable=False)
    provider_name = Column(String(32), nullable=False)
    category = Column(String(32), nullable=False)
    access_token = Column(Text)            # AES-256-GCM ciphertext (hex)
    refresh_token = Column(Text)           # AES-256-GCM ciphertext (hex)
    token_expires_at = Column(DateTime(timezone=True))
    scope = Column(Text)
    config = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    last_sync_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    connections = relationship(
        "ConnectionRow", back_populates="integration", cascade="all, delete-orphan"
    )
    logs = relationship(
        "IntegrationLogRow", back_populates="integration", cascade="all, delete-orphan"
    )


class ConnectionRow(Base):
    __tablename__ = "integration_connections"
    __table_args__ = (
        UniqueConstraint(
            "record_id", "integration_id", "external_id", name="uq_connections_record_target"
        ),
        Index("ix_connections_record", "record_id"),
        Index("ix_connections_integration", "integration_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    record_id = Column(String(64), nullable=False)
    integration_id = Column(
        String(36), ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False
    )
    external_id = Column(String(256), nullable=False)
    config = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    last_posted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    integration = relationship("IntegrationRow", back_populates="connections")


class IntegrationLogRow(Base):
    __tablename__ = "integration_logs"
    __table_args__ = (
        Index("ix_integration_logs_integration", "integration_id"),
        Index("ix_integration_logs_created_at", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    integration_id = Column(
        String(36), ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False
    )
    action = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False)
    request_data = Column(JSONType)
    response_data = Column(JSONType)
    error_message = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    integration = relationship("IntegrationRow", back_populates="logs")
