"""FastAPI Application Entry Point.

Configures the app, lifespan, CORS, and includes all route modules.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware

from graphflow.agents.platform_client import (
    PlatformClient,
    PlatformSessionLauncher,
    PlatformTaskCreator,
)
from graphflow.config import CORS_ORIGINS, RECOVER_ON_STARTUP
from graphflow.engine.manager import RunManager
from graphflow.logging_config import get_engine_logger
from graphflow.nodes import list_node_types, list_node_types_by_category

from .database import close_db, init_db
from .event_bus import bridge_manager, get_event_bus
from .store import SqlRunStore

logger = get_engine_logger()


def build_manager(platform: Optional[PlatformClient] = None) -> RunManager:
    """RunManager wired to the database and the agent platform."""
    platform = platform or PlatformClient()
    manager = RunManager(
        store=SqlRunStore(),
        launcher=PlatformSessionLauncher(platform),
        task_creator=PlatformTaskCreator(platform),
    )
    bridge_manager(manager, get_event_bus())
    return manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage database, run manager and platform client lifecycle."""
    await init_db()

    platform = PlatformClient()
    manager = build_manager(platform)
    app.state.manager = manager
    await manager.start()

    if RECOVER_ON_STARTUP:
        restored = await manager.recover()
        logger.info(f"Startup recovery restored {restored} run(s)")

    yield

    await manager.stop()
    await platform.close()
    await close_db()


app = FastAPI(title="graphflow API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
from .routes.workflows import router as workflows_router  # noqa: E402
from .routes.runs import router as runs_router  # noqa: E402
from .routes.webhooks import router as webhooks_router  # noqa: E402

app.include_router(workflows_router)
app.include_router(runs_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health_check():
    """Health check endpoint for container orchestration."""
    return {"status": "ok"}


@app.get("/api/node-types")
async def get_node_types(category: Optional[str] = Query(None)):
    """Registered node types with their config and output schemas."""
    definitions = list_node_types_by_category(category) if category else list_node_types()
    return [d.to_dict() for d in definitions]
