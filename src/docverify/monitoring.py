"""
Monitoring HTTP routes for polling sessions.

This module exposes the session store over FastAPI so operators can inspect
running verifications, start tracking a document and clean up sessions.
"""

from typing import Any

import structlog
from fastapi import APIRouter, HTTPException, Request

from .polling.scheduler import PollingScheduler
from .polling.store import PollingStateStore
from .schemas import StartPollingRequest

logger = structlog.get_logger(__name__)


class MonitoringRouter:
    """
    Polling session monitoring endpoints.

    The store and scheduler are looked up on ``request.app.state`` so the
    router can be mounted before the application lifespan wires them.
    """

    def __init__(self) -> None:
        """Initialize the monitoring router."""
        self.router = APIRouter()
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Set up monitoring routes."""
        self.router.get("/sessions")(self.list_sessions)
        self.router.get("/sessions/{document_id}")(self.get_session)
        self.router.post("/sessions/{document_id}", status_code=201)(
            self.start_session
        )
        self.router.delete("/sessions/{document_id}")(self.cleanup_session)
        self.router.get("/statistics")(self.get_statistics)

    def _get_store(self, request: Request) -> PollingStateStore:
        store = getattr(request.app.state, "polling_store", None)
        if store is None:
            raise HTTPException(status_code=503, detail="Polling store not ready")
        return store

    def _get_scheduler(self, request: Request) -> PollingScheduler:
        scheduler = getattr(request.app.state, "polling_scheduler", None)
        if scheduler is None:
            raise HTTPException(status_code=503, detail="Polling scheduler not ready")
        return scheduler

    async def list_sessions(self, request: Request) -> dict[str, Any]:
        """List every polling session in the store."""
        store = self._get_store(request)
        sessions = store.get_all_polling_sessions()
        return {
            "count": len(sessions),
            "active_documents": store.get_active_polling_documents(),
            "sessions": [session.to_dict() for session in sessions],
        }

    async def get_session(self, request: Request, document_id: str) -> dict[str, Any]:
        """
        Get the status snapshot of one document.

        Args:
            request: FastAPI request object
            document_id: Document to look up

        Returns:
            Activity flag, request count, duration and the session record
        """
        status = self._get_store(request).query_polling_status(document_id)
        if status.session is None:
            raise HTTPException(
                status_code=404, detail=f"No polling session for {document_id}"
            )

        return {
            "document_id": document_id,
            "is_active": status.is_active,
            "request_count": status.request_count,
            "duration_ms": round(status.duration_ms),
            "session": status.session.to_dict(),
        }

    async def start_session(
        self, request: Request, document_id: str, body: StartPollingRequest
    ) -> dict[str, Any]:
        """Start tracking a document; returns the active session id."""
        scheduler = self._get_scheduler(request)
        session_id = scheduler.start(document_id, body.document_type)

        logger.info(
            "Polling started via monitoring API",
            document_id=document_id,
            session_id=session_id,
        )
        return {"document_id": document_id, "session_id": session_id}

    async def cleanup_session(
        self, request: Request, document_id: str
    ) -> dict[str, Any]:
        store = self._get_store(request)
        if store.get_polling_session(document_id) is None:
            raise HTTPException(
                status_code=404, detail=f"No polling session for {document_id}"
            )

        store.cleanup_polling_resources(document_id)
        return {"document_id": document_id, "status": "cancelled"}

    async def get_statistics(self, request: Request) -> dict[str, Any]:
        return self._get_store(request).get_polling_statistics().to_dict()
