"""
HTTP surface: FastAPI application factory.

POST /api/chat streams server-sent events, one `data: {json}` line per
StreamEvent and a final `data: [DONE]`. Image models answer with a single
JSON message instead. Errors detected before the first model call are plain
JSON responses with the status carried by the ChatError.

Authentication is handled upstream: the user id arrives in the body
(`userId`) or in the X-User-Id header.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from venuschat import __version__
from venuschat.cache import create_context_cache
from venuschat.chat.errors import ChatError, UnauthorizedError
from venuschat.chat.messages import ChatRequest
from venuschat.chat.service import ChatService, PreparedChat
from venuschat.config.logging import get_logger, setup_logging
from venuschat.config.settings import Settings, get_settings
from venuschat.db.session import Database

logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def build_service(settings: Settings) -> ChatService:
    db = Database.from_settings(settings.database)
    db.create_all()
    return ChatService(settings, db, create_context_cache(settings.cache))


async def _sse(service: ChatService, prepared: PreparedChat) -> AsyncIterator[str]:
    abort_event = asyncio.Event()
    try:
        async for event in service.stream(prepared, abort_event):
            yield f"data: {json.dumps(event.to_payload(), ensure_ascii=False)}\n\n"
        yield "data: [DONE]\n\n"
    finally:
        # Client went away or the stream ended: stop any in-flight step
        abort_event.set()


def create_app(settings: Settings | None = None, service: ChatService | None = None) -> FastAPI:
    s = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is None:
            setup_logging(s)
            app.state.service = build_service(s)
        else:
            app.state.service = service
        yield
        await app.state.service.close()

    app = FastAPI(title="venuschat", version=__version__, lifespan=lifespan)

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": json.loads(json.dumps(exc.errors(), default=str))},
        )

    async def _handle_chat(request: Request, body: ChatRequest, x_user_id: str | None, lightweight: bool):
        chat_service: ChatService = request.app.state.service
        prepared = await chat_service.prepare(body.user_id or x_user_id, body, lightweight=lightweight)

        if prepared.is_image:
            return JSONResponse(await chat_service.generate_image(prepared))

        return StreamingResponse(
            _sse(chat_service, prepared),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/api/chat")
    async def chat(request: Request, body: ChatRequest, x_user_id: str | None = Header(default=None)):
        return await _handle_chat(request, body, x_user_id, lightweight=False)

    @app.post("/api/chat/quick")
    async def chat_quick(request: Request, body: ChatRequest, x_user_id: str | None = Header(default=None)):
        """Single-step variant for lightweight call sites."""
        return await _handle_chat(request, body, x_user_id, lightweight=True)

    @app.get("/api/billing/info")
    async def billing_info(request: Request, x_user_id: str | None = Header(default=None)):
        if not x_user_id:
            raise UnauthorizedError()
        snapshot = await request.app.state.service.billing.get_billing(x_user_id)
        return snapshot.to_payload()

    @app.get("/api/billing/usage")
    async def billing_usage(request: Request, days: int = 30, x_user_id: str | None = Header(default=None)):
        if not x_user_id:
            raise UnauthorizedError()
        rows = await request.app.state.service.billing.usage_summary(x_user_id, days=days)
        return {
            "days": days,
            "usage": [
                {
                    "provider": row.provider,
                    "modelName": row.model_name,
                    "requests": row.requests,
                    "inputTokens": row.input_tokens,
                    "outputTokens": row.output_tokens,
                    "totalTokens": row.total_tokens,
                    "totalCost": float(row.total_cost),
                }
                for row in rows
            ],
        }

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app
