"""FastAPI application for the replication endpoint."""

import logging
import sqlite3
from datetime import datetime
from typing import Annotated, Any

import jwt
from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config import Config
from .replica_store import ReplicaStore
from .schemas import PullResponse, PushRequest, PushResponse

logger = logging.getLogger(__name__)

security_scheme = HTTPBearer(auto_error=False)


def create_app(config: Config, store: ReplicaStore | None = None) -> FastAPI:
    """Create the replication endpoint application.

    Args:
        config: Application configuration; ``server.jwt_secret`` is required.
        store: Optional ReplicaStore; built from ``server.db_path`` if omitted.

    Returns:
        Configured FastAPI application.
    """
    if not config.server.jwt_secret:
        raise ValueError("server.jwt_secret must be configured")

    if store is None:
        store = ReplicaStore(
            config.server.db_path,
            default_page_size=config.server.default_page_size,
            max_page_size=config.server.max_page_size,
        )
        store.connect()

    app = FastAPI(
        title="nephsync",
        description="End-to-end encrypted record replication endpoint",
        version="0.1.0",
    )

    # Store references for route handlers
    app.state.config = config
    app.state.store = store

    def current_user(
        credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security_scheme)],
    ) -> str:
        """Validate the bearer token and return the user id it names."""
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required.",
            )

        try:
            payload = jwt.decode(
                credentials.credentials,
                config.server.jwt_secret,
                algorithms=[config.server.jwt_algorithm],
            )
        except jwt.PyJWTError:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid authentication token.",
            )

        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Token has no subject.",
            )
        return str(user_id)

    # ==================== Sync Routes ====================

    @app.post("/api/sync/push", response_model=PushResponse)
    def sync_push(
        body: PushRequest,
        user_id: Annotated[str, Depends(current_user)],
    ) -> PushResponse:
        """Apply a batch with last-writer-wins upserts, all or nothing."""
        entries = [entry.model_dump(by_alias=True) for entry in body.entries]
        try:
            result = store.push(user_id, entries)
        except sqlite3.Error as e:
            logger.error(f"Push batch for {user_id} rolled back: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Batch rolled back.",
            )

        return PushResponse(
            accepted_ids=result.accepted_ids,
            skipped_ids=result.skipped_ids,
        )

    @app.get("/api/sync/pull", response_model=PullResponse)
    def sync_pull(
        user_id: Annotated[str, Depends(current_user)],
        since: Annotated[int, Query(ge=0)] = 0,
        limit: Annotated[int, Query(ge=1)] = config.server.default_page_size,
    ) -> PullResponse:
        """Return changes received after the cursor, oldest first."""
        page = store.pull(user_id, since=since, limit=limit)
        return PullResponse(
            entries=page.entries,
            next_cursor=page.next_cursor,
            server_time=page.server_time,
        )

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers.

        Always returns 200 OK; a store failure is reported in the body.
        """
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "components": {"store": True},
        }
        try:
            health["components"].update(store.get_stats())
        except sqlite3.Error as e:
            health["status"] = "degraded"
            health["components"]["store"] = False
            health["components"]["store_error"] = str(e)
        return health

    return app
