"""REST API for chatrelay.

Endpoints:
  POST /chat                      - Start a turn; streams text/event-stream
  POST /chat/stop                 - Stop the active turn of a conversation
  GET  /chat/{context_id}/turns   - Persisted turns of a conversation
  GET  /models/usage              - Per-model turn counters
  GET  /health                    - Health check (DB connectivity)
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import text
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.routing import Route

from chatrelay.chat.capabilities import ModelCatalog
from chatrelay.chat.orchestrator import TurnOrchestrator
from chatrelay.chat.schemas import TurnRequest
from chatrelay.storage.database import Database
from chatrelay.storage.history import HistoryStore

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: TurnOrchestrator,
    store: HistoryStore,
    catalog: ModelCatalog,
    database: Database,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def chat(request: Request) -> Response:
        """POST /chat - Start a turn and stream the reply."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        try:
            turn_request = TurnRequest.model_validate(body)
        except ValidationError as e:
            return JSONResponse({"error": f"Invalid chat request: {e.errors()}"}, status_code=400)

        result = await orchestrator.chat(turn_request)
        if isinstance(result, str):
            # Pre-stream failures are shown to the user like a reply
            return PlainTextResponse(result)

        return StreamingResponse(
            result,
            media_type="text/event-stream;charset=utf-8",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    async def stop_chat(request: Request) -> JSONResponse:
        """POST /chat/stop - Request cancellation of the active turn."""
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        context_id = body.get("context_id") if isinstance(body, dict) else None
        if not context_id:
            return JSONResponse({"error": "Missing required field: context_id"}, status_code=400)

        stopped = orchestrator.stop(context_id)
        return JSONResponse({"status": "stopping" if stopped else "idle", "context_id": context_id})

    async def list_turns(request: Request) -> JSONResponse:
        """GET /chat/{context_id}/turns - Stored transcript."""
        context_id = request.path_params["context_id"]
        try:
            turns = await store.list_turns(context_id)
            return JSONResponse({"turns": [t.model_dump(mode="json") for t in turns]})
        except Exception as e:
            logger.error("List turns error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    async def model_usage(request: Request) -> JSONResponse:
        """GET /models/usage - Turn counters per supplier and model."""
        return JSONResponse({"usage": catalog.usage_totals()})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            return JSONResponse({"status": "healthy"})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/chat", chat, methods=["POST"]),
        Route("/chat/stop", stop_chat, methods=["POST"]),
        Route("/chat/{context_id}/turns", list_turns),
        Route("/models/usage", model_usage),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
