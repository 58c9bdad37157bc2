"""FastAPI server exposing run history and on-demand runs."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from infrahealth import __version__
from infrahealth.api.routes import router
from infrahealth.checks.catalog import CheckCatalog
from infrahealth.config import Settings
from infrahealth.discovery.inventory import InventoryFileDiscovery
from infrahealth.orchestrator.pipeline import Orchestrator
from infrahealth.storage.store import SQLiteRunStore

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the store and wire the orchestrator on startup."""
        store = SQLiteRunStore(settings.db_path)
        app.state.settings = settings
        app.state.store = store
        app.state.orchestrator = Orchestrator(
            settings,
            discovery=InventoryFileDiscovery(settings.inventory_path),
            catalog=CheckCatalog(settings.definitions_path, strict=settings.strict_definitions),
            store=store,
        )
        logger.info("API ready (db=%s, definitions=%s)", settings.db_path, settings.definitions_path)
        yield
        store.close()

    app = FastAPI(title="infrahealth", version=__version__, lifespan=lifespan)
    app.include_router(router)
    return app
