"""FastAPI-маршруты SSE-транспорта MCP."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from toolbox.tools.completion import maybe_await
from toolbox.transports.sse import MESSAGES_PATH, SseServerTransport, SseTransportRegistry

logger = logging.getLogger("toolbox.api.routes")

ConnectHandler = Callable[[SseServerTransport, Any], Awaitable[Any]]
AuthenticateHook = Callable[[Request], Any]


def create_sse_router(
    *,
    on_connect: ConnectHandler,
    authenticate: Optional[AuthenticateHook] = None,
    endpoint: str = "/sse",
    transports: Optional[SseTransportRegistry] = None,
) -> APIRouter:
    """Собирает роутер: поток событий на `endpoint` и приём сообщений на `/messages`.

    `on_connect(transport, auth)` вызывается фоновой задачей для каждого нового потока,
    потому что согласование сессии требует, чтобы пир уже получил адрес `/messages`.
    """
    router = APIRouter()
    registry = transports if transports is not None else SseTransportRegistry()
    connecting: Set["asyncio.Task[Any]"] = set()

    @router.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @router.get(endpoint)
    async def open_stream(request: Request):
        auth = None
        if authenticate is not None:
            try:
                auth = await maybe_await(authenticate(request))
            except Exception as exc:
                logger.warning("SSE authentication failed: %s", exc)
                return JSONResponse(status_code=401, content={"error": "Unauthorized"})

        transport = SseServerTransport()
        registry.add(transport)
        task = asyncio.create_task(on_connect(transport, auth))
        connecting.add(task)
        task.add_done_callback(connecting.discard)
        logger.info("SSE stream %s opened", transport.session_id)

        async def frames():
            try:
                async for frame in transport.events():
                    yield frame
            finally:
                # Обрыв потока закрывает транспорт, сессия увидит EOF.
                registry.remove(transport.session_id)
                await transport.close()
                logger.info("SSE stream %s closed", transport.session_id)

        return StreamingResponse(
            frames(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @router.post(MESSAGES_PATH)
    async def post_message(request: Request, sessionId: Optional[str] = None):
        if not sessionId:
            return JSONResponse(status_code=400, content={"error": "Missing sessionId"})
        transport = registry.get(sessionId)
        if transport is None:
            return JSONResponse(status_code=404, content={"error": f"Unknown sessionId '{sessionId}'"})
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "Invalid JSON"})
        if not isinstance(payload, dict):
            return JSONResponse(status_code=400, content={"error": "Expected a JSON-RPC object"})
        try:
            transport.deliver(payload)
        except ConnectionError:
            registry.remove(sessionId)
            return JSONResponse(status_code=404, content={"error": f"Unknown sessionId '{sessionId}'"})
        return JSONResponse(status_code=202, content={"status": "accepted"})

    return router


def create_sse_app(
    *,
    on_connect: ConnectHandler,
    authenticate: Optional[AuthenticateHook] = None,
    endpoint: str = "/sse",
    transports: Optional[SseTransportRegistry] = None,
    title: str = "toolbox",
    version: str = "1.0.0",
) -> FastAPI:
    app = FastAPI(title=title, version=version)
    app.include_router(
        create_sse_router(
            on_connect=on_connect,
            authenticate=authenticate,
            endpoint=endpoint,
            transports=transports,
        )
    )
    return app


__all__ = ["create_sse_app", "create_sse_router"]
