"""FastAPI application exposing a remote record store over HTTP."""

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from ..config import Config
from ..errors import RemoteConflict, RemoteError
from ..sync.remote import RemoteDatabase, RemoteRecord

logger = logging.getLogger(__name__)


class RecordBody(BaseModel):
    """Request body for saving a record."""

    values: dict[str, Any] = Field(alias="fields")


def create_app(config: Config, database: RemoteDatabase) -> FastAPI:
    """Create the remote store application.

    Args:
        config: Application configuration.
        database: Storage backing every zone.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="changesync remote",
        description="Zone-scoped changeset record store with change cursors",
        version="0.1.0",
    )

    # Store references for route handlers
    app.state.config = config
    app.state.database = database

    @app.put("/api/zones/{zone}/records/{record_id}")
    async def save_record(zone: str, record_id: str, body: RecordBody) -> dict[str, Any]:
        """Store a record; 409 if the key holds different content."""
        try:
            stored = database.save(zone, RemoteRecord(record_id, body.values))
        except RemoteConflict as e:
            logger.warning(f"Conflict saving {record_id} in zone {zone}")
            raise HTTPException(status_code=409, detail=str(e))

        return {"record_id": record_id, "stored": stored}

    @app.get("/api/zones/{zone}/changes")
    async def list_changes(
        zone: str,
        since: str | None = None,
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> dict[str, Any]:
        """Page through records changed after the ``since`` cursor."""
        try:
            page = database.changes(zone, since, limit)
        except RemoteError as e:
            raise HTTPException(status_code=e.status_code or 400, detail=str(e))
        return page.to_dict()

    @app.delete("/api/zones/{zone}")
    async def delete_zone(zone: str) -> dict[str, Any]:
        """Drop every record in a zone."""
        deleted = database.delete_zone(zone)
        return {"zone": zone, "deleted": deleted}

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers."""
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
        }
        try:
            health["store"] = database.get_stats()
        except Exception as e:
            health["status"] = "degraded"
            health["store_error"] = str(e)
        return health

    return app
