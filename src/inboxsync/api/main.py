"""FastAPI application factory."""
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from sqlmodel import SQLModel

from inboxsync.db.engine import get_engine
from inboxsync.api.routes import records, sync as sync_routes


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    engine = get_engine()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(engine)
        # One connection pool for every Gmail call made by this process
        async with httpx.AsyncClient(timeout=30.0) as client:
            app.state.http_client = client
            yield

    app = FastAPI(
        title="inboxsync API",
        description="Incremental mailbox sync into derived records",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])
    app.include_router(records.router, prefix="/records", tags=["records"])

    return app


# Module-level app instance for uvicorn
app = create_app()
