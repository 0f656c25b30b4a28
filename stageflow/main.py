"""
Stageflow service entry point.

Builds the FastAPI application around one EntityStore. Tests pass their own
store; the service process builds a file-backed one from configuration.
"""

import logging
from typing import Optional

from fastapi import FastAPI

from . import __version__, config
from .api import router
from .audit_trail import AuditTrail
from .channel_service import ChannelService
from .entity_store import EntityStore
from .storage_port import FileKeyValueStore
from .task_service import TaskService
from .transition_engine import StageTransitionEngine

logger = logging.getLogger("stageflow")


def build_store() -> EntityStore:
    """File-backed store rooted at STAGEFLOW_STORAGE_DIR."""
    return EntityStore(FileKeyValueStore(config.STORAGE_DIR), seed_file=config.SEED_FILE)


def create_app(store: Optional[EntityStore] = None) -> FastAPI:
    app = FastAPI(
        title="Stageflow - Content Pipeline Stage Engine",
        description="Stage transitions, mandatory-field validation and audit trail for content channels",
        version=__version__,
    )

    store = store if store is not None else build_store()
    audit = AuditTrail(store)
    app.state.store = store
    app.state.audit = audit
    app.state.engine = StageTransitionEngine(store, audit=audit)
    app.state.task_service = TaskService(store)
    app.state.channel_service = ChannelService(store)

    app.include_router(router)

    @app.get("/")
    async def root():
        return {
            "service": "Stageflow",
            "status": "running",
            "version": __version__,
        }

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            f"Stageflow {__version__} starting: {len(store.channels)} channels, "
            f"{len(store.tasks)} active tasks"
        )

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Stageflow shutting down...")

    return app


# -----------------------------------------------------------------------------
# Main Entry Point (for development)
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn

    config.configure_logging()
    uvicorn.run(create_app(), host=config.HOST, port=config.PORT)
