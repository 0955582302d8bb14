"""
Persistence seams used by the managers.

``IntegrationStore`` is the CRUD surface over the three integration record
kinds; ``RecordDirectory`` answers the two questions the fan-out needs
about the host application's own data (the changed record and the actor).
The SQLAlchemy implementation lives in ``database/store.py``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional

from connectors.schemas import (
    ActorSnapshot,
    Connection,
    Integration,
    IntegrationLogEntry,
    LogStatus,
    ProviderCategory,
    RecordSnapshot,
)


class IntegrationStore(ABC):

    # ── Integrations ────────────────────────────────────────────────────

    @abstractmethod
    async def create_integration(self, integration: Integration) -> Integration:
        ...

    @abstractmethod
    async def get_integration(self, integration_id: str) -> Optional[Integration]:
        ...

    @abstractmethod
    async def find_integration(self, tenant_id: str, provider_name: str) -> Optional[Integration]:
        ...

    @abstractmethod
    async def list_integrations(
        self, tenant_id: str, category: Optional[ProviderCategory] = None
    ) -> List[Integration]:
        ...

    @abstractmethod
    async def update_integration(self, integration_id: str, **changes: Any) -> Integration:
        """Apply ``changes`` and bump ``updated_at``. Raises IntegrationNotFoundError."""
        ...

    @abstractmethod
    async def delete_integration(self, integration_id: str) -> bool:
        """Hard delete, cascading to connections and logs."""
        ...

    # ── Connections ─────────────────────────────────────────────────────

    @abstractmethod
    async def create_connection(self, connection: Connection) -> Connection:
        ...

    @abstractmethod
    async def get_connection(self, connection_id: str) -> Optional[Connection]:
        ...

    @abstractmethod
    async def list_connections(
        self,
        *,
        record_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[Connection]:
        ...

    @abstractmethod
    async def update_connection(self, connection_id: str, **changes: Any) -> Connection:
        ...

    @abstractmethod
    async def delete_connection(self, connection_id: str) -> bool:
        ...

    @abstractmethod
    async def delete_connections_for_integration(self, integration_id: str) -> int:
        ...

    # ── Audit log ───────────────────────────────────────────────────────

    @abstractmethod
    async def append_log(self, integration_id: str, entry: IntegrationLogEntry) -> None:
        ...

    @abstractmethod
    async def list_logs(
        self,
        integration_id: str,
        *,
        since: Optional[datetime] = None,
        status: Optional[LogStatus] = None,
        limit: Optional[int] = None,
    ) -> List[IntegrationLogEntry]:
        """Newest first."""
        ...

    @abstractmethod
    async def count_logs(
        self,
        integration_id: str,
        *,
        since: Optional[datetime] = None,
        status: Optional[LogStatus] = None,
    ) -> int:
        ...


class RecordDirectory(ABC):

    @abstractmethod
    async def get_record(self, record_id: str) -> Optional[RecordSnapshot]:
        ...

    @abstractmethod
    async def get_actor(self, actor_id: str) -> Optional[ActorSnapshot]:
        ...
