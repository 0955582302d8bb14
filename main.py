"""
Tenant integrations service — application factory.

The host application owns records and actors, so it passes its own
``RecordDirectory`` in; everything else (database, providers, token
lifecycle) is wired here at startup.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine

from config.logging_config import configure_logging
from config.settings import Settings, config
from connectors.context import build_context
from connectors.routes import get_current_tenant_id
from connectors.routes import router as integrations_router
from connectors.store import RecordDirectory
from database.session import create_engine, create_session_factory, create_tables
from database.store import SqlAlchemyIntegrationStore

logger = logging.getLogger(__name__)


def create_app(
    records: RecordDirectory,
    settings: Settings = config,
    engine: Optional[AsyncEngine] = None,
    tenant_resolver: Optional[Callable[..., Awaitable[str]]] = None,
) -> FastAPI:
    """
    Build the service.  ``tenant_resolver`` is the host's authentication
    dependency; it replaces ``get_current_tenant_id`` on every
    tenant-scoped route.
    """
    configure_logging(settings)

    app = FastAPI(
        title="Tenant Integrations",
        version="0.1.0",
        description="OAuth credential lifecycle and record fan-out for third-party tools.",
    )
    app.include_router(integrations_router, prefix="/api/v1")
    if tenant_resolver is not None:
        app.dependency_overrides[get_current_tenant_id] = tenant_resolver

    db_engine = engine or create_engine(settings.database_url)

    @app.on_event("startup")
    async def on_startup():
        logger.info("Creating integration tables…")
        await create_tables(db_engine)

        store = SqlAlchemyIntegrationStore(create_session_factory(db_engine))
        app.state.integrations = build_context(store, records, settings)
        logger.info(
            "Integrations ready: %s",
            [p["provider"] for p in app.state.integrations.registry.list_providers()],
        )

    @app.on_event("shutdown")
    async def on_shutdown():
        await db_engine.dispose()

    return app
