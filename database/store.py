"""
SQLAlchemy implementation of ``IntegrationStore``.

Every method opens its own session from the factory and commits before
returning, so callers never share a transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.errors import (
    ConnectionNotFoundError,
    DuplicateConnectionError,
    IntegrationNotFoundError,
    ValidationError,
)
from connectors.schemas import (
    Connection,
    Integration,
    IntegrationLogEntry,
    LogStatus,
    ProviderCategory,
)
from connectors.store import IntegrationStore
from database.models import ConnectionRow, IntegrationLogRow, IntegrationRow

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands datetimes back without tzinfo; everything is stored as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _plain(value: Any) -> Any:
    if isinstance(value, (ProviderCategory, LogStatus)):
        return value.value
    return value


def _to_integration(row: IntegrationRow) -> Integration:
    return Integration(
        id=row.id,
        tenant_id=row.tenant_id,
        provider_name=row.provider_name,
        category=ProviderCategory(row.category),
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_expires_at=_aware(row.token_expires_at),
        scope=row.scope,
        config=row.config or {},
        is_active=row.is_active,
        last_sync_at=_aware(row.last_sync_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _to_connection(row: ConnectionRow) -> Connection:
    return Connection(
        id=row.id,
        record_id=row.record_id,
        integration_id=row.integration_id,
        external_id=row.external_id,
        config=row.config or {},
        is_active=row.is_active,
        last_posted_at=_aware(row.last_posted_at),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _to_log(row: IntegrationLogRow) -> IntegrationLogEntry:
    return IntegrationLogEntry(
        action=row.action,
        status=LogStatus(row.status),
        request_data=row.request_data,
        response_data=row.response_data,
        error_message=row.error_message,
        timestamp=_aware(row.created_at),
    )


class SqlAlchemyIntegrationStore(IntegrationStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Integrations ────────────────────────────────────────────────────

    async def create_integration(self, integration: Integration) -> Integration:
        row = IntegrationRow(
            **{k: _plain(v) for k, v in integration.model_dump().items()}
        )
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ValidationError(
                    f"Tenant {integration.tenant_id} already has a "
                    f"{integration.provider_name} integration"
                ) from exc
            return _to_integration(row)

    async def get_integration(self, integration_id: str) -> Optional[Integration]:
        async with self._session_factory() as session:
            row = await session.get(IntegrationRow, integration_id)
            return _to_integration(row) if row else None

    async def find_integration(self, tenant_id: str, provider_name: str) -> Optional[Integration]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IntegrationRow).where(
                    IntegrationRow.tenant_id == tenant_id,
                    IntegrationRow.provider_name == provider_name,
                )
            )
            row = result.scalar_one_or_none()
            return _to_integration(row) if row else None

    async def list_integrations(
        self, tenant_id: str, category: Optional[ProviderCategory] = None
    ) -> List[Integration]:
        stmt = select(IntegrationRow).where(IntegrationRow.tenant_id == tenant_id)
        if category is not None:
            stmt = stmt.where(IntegrationRow.category == category.value)
        stmt = stmt.order_by(IntegrationRow.created_at.desc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_integration(r) for r in result.scalars().all()]

    async def update_integration(self, integration_id: str, **changes: Any) -> Integration:
        async with self._session_factory() as session:
            row = await session.get(IntegrationRow, integration_id)
            if row is None:
                raise IntegrationNotFoundError(integration_id)
            for key, value in changes.items():
                setattr(row, key, _plain(value))
            row.updated_at = datetime.now(timezone.utc)
            await session.commit()
            return _to_integration(row)

    async def delete_integration(self, integration_id: str) -> bool:
        async with self._session_factory() as session:
            await session.execute(
                delete(ConnectionRow).where(ConnectionRow.integration_id == integration_id)
            )
            await session.execute(
                delete(IntegrationLogRow).where(IntegrationLogRow.integration_id == integration_id)
            )
            result = await session.execute(
                delete(IntegrationRow).where(IntegrationRow.id == integration_id)
            )
            await session.commit()
            return result.rowcount > 0

    # ── Connections ─────────────────────────────────────────────────────

    async def create_connection(self, connection: Connection) -> Connection:
        row = ConnectionRow(**connection.model_dump())
        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateConnectionError(
                    "Record is already connected to this channel"
                ) from exc
            return _to_connection(row)

    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        async with self._session_factory() as session:
            row = await session.get(ConnectionRow, connection_id)
            return _to_connection(row) if row else None

    async def list_connections(
        self,
        *,
        record_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Connection]:
        stmt = select(ConnectionRow)
        if record_id is not None:
            stmt = stmt.where(ConnectionRow.record_id == record_id)
        if integration_id is not None:
            stmt = stmt.where(ConnectionRow.integration_id == integration_id)
        if active_only:
            stmt = stmt.where(ConnectionRow.is_active.is_(True))
        stmt = stmt.order_by(ConnectionRow.created_at.desc())
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_connection(r) for r in result.scalars().all()]

    async def update_connection(self, connection_id: str, **changes: Any) -> Connection:
        async with self._session_factory() as session:
            row = await session.get(ConnectionRow, connection_id)
            if row is None:
                raise ConnectionNotFoundError(connection_id)
            for key, value in changes.items():
                setattr(row, key, value)
            row.updated_at = datetime.now(timezone.utc)
            await session.commit()
            return _to_connection(row)

    async def delete_connection(self, connection_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ConnectionRow).where(ConnectionRow.id == connection_id)
            )
            await session.commit()
            return result.rowcount > 0

    async def delete_connections_for_integration(self, integration_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ConnectionRow).where(ConnectionRow.integration_id == integration_id)
            )
            await session.commit()
            return result.rowcount

    # ── Audit log ───────────────────────────────────────────────────────

    async def append_log(self, integration_id: str, entry: IntegrationLogEntry) -> None:
        async with self._session_factory() as session:
            session.add(
                IntegrationLogRow(
                    integration_id=integration_id,
                    action=entry.action,
                    status=entry.status.value,
                    request_data=entry.request_data,
                    response_data=entry.response_data,
                    error_message=entry.error_message,
                    created_at=entry.timestamp,
                )
            )
            await session.commit()

    @staticmethod
    def _log_filters(
        integration_id: str,
        since: Optional[datetime],
        status: Optional[LogStatus],
    ) -> list:
        filters = [IntegrationLogRow.integration_id == integration_id]
        if since is not None:
            filters.append(IntegrationLogRow.created_at >= since)
        if status is not None:
            filters.append(IntegrationLogRow.status == status.value)
        return filters

    async def list_logs(
        self,
        integration_id: str,
        *,
        since: Optional[datetime] = None,
        status: Optional[LogStatus] = None,
        limit: Optional[int] = None,
    ) -> List[IntegrationLogEntry]:
        stmt = (
            select(IntegrationLogRow)
            .where(*self._log_filters(integration_id, since, status))
            .order_by(IntegrationLogRow.created_at.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_log(r) for r in result.scalars().all()]

    async def count_logs(
        self,
        integration_id: str,
        *,
        since: Optional[datetime] = None,
        status: Optional[LogStatus] = None,
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(IntegrationLogRow)
            .where(*self._log_filters(integration_id, since, status))
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())
