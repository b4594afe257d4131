"""ToolBox: реестр возможностей и набор живых сессий поверх выбранного транспорта."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import uvicorn

from toolbox.api.routes import AuthenticateHook, create_sse_app
from toolbox.core.config import PORT, SessionSettings, get_session_settings
from toolbox.core.events import EventHub, Listener
from toolbox.core.session import SessionState, ToolboxSession
from toolbox.tools.registry import CapabilityRegistry, PromptSpec, ResourceSpec, ResourceTemplateSpec, ToolSpec
from toolbox.transports.base import Transport
from toolbox.transports.stdio import StdioTransport

logger = logging.getLogger("toolbox.core.server")

_SEMVER = re.compile(r"^\d+\.\d+\.\d+$")


@dataclass
class SseOptions:
    endpoint: str = "/sse"
    host: str = "127.0.0.1"
    port: int = PORT


class ToolBox:
    """Точка входа сервера: регистрация инструментов, ресурсов и промптов, запуск транспорта.

    Каждая сессия получает снимок реестра на момент подключения, поэтому
    регистрации после `connect` видны только новым сессиям.
    """

    def __init__(
        self,
        *,
        name: str,
        version: str,
        authenticate: Optional[AuthenticateHook] = None,
        settings: Optional[SessionSettings] = None,
    ) -> None:
        if not _SEMVER.match(version):
            raise ValueError(f"Invalid version {version!r}: expected MAJOR.MINOR.PATCH")
        self.name = name
        self.version = version
        self.registry = CapabilityRegistry()
        self.events = EventHub()
        self._authenticate = authenticate
        self._settings = settings
        self._sessions: List[ToolboxSession] = []
        self._sse_server: Optional[uvicorn.Server] = None
        self._sse_task: Optional["asyncio.Task[None]"] = None

    @property
    def sessions(self) -> List[ToolboxSession]:
        return list(self._sessions)

    def on(self, event: str, listener: Listener) -> Listener:
        return self.events.on(event, listener)

    # --- регистрация ---

    def add_tool(self, tool: Optional[ToolSpec] = None, **fields: Any) -> ToolSpec:
        return self.registry.add_tool(tool if tool is not None else ToolSpec(**fields))

    def add_resource(self, resource: Optional[ResourceSpec] = None, **fields: Any) -> ResourceSpec:
        return self.registry.add_resource(resource if resource is not None else ResourceSpec(**fields))

    def add_resource_template(
        self, template: Optional[ResourceTemplateSpec] = None, **fields: Any
    ) -> ResourceTemplateSpec:
        return self.registry.add_resource_template(
            template if template is not None else ResourceTemplateSpec(**fields)
        )

    def add_prompt(self, prompt: Optional[PromptSpec] = None, **fields: Any) -> PromptSpec:
        return self.registry.add_prompt(prompt if prompt is not None else PromptSpec(**fields))

    # --- подключения ---

    async def connect(self, transport: Transport, auth: Any = None) -> ToolboxSession:
        session = ToolboxSession(
            name=self.name,
            version=self.version,
            snapshot=self.registry.snapshot(),
            auth=auth,
            settings=self._settings,
        )
        self._sessions.append(session)
        session.on("close", self._forget_session(session))
        await session.connect(transport)
        if session.state is not SessionState.CLOSED:
            self.events.emit("connect", {"session": session})
        return session

    def _forget_session(self, session: ToolboxSession) -> Callable[[Any], None]:
        def on_close(_payload: Any) -> None:
            if session in self._sessions:
                self._sessions.remove(session)
            self.events.emit("disconnect", {"session": session})

        return on_close

    async def start(self, transport_type: str = "stdio", *, sse: Optional[SseOptions] = None) -> None:
        if transport_type == "stdio":
            settings = self._settings or get_session_settings()
            await self.connect(StdioTransport(limit=settings.stdio_line_limit))
        elif transport_type == "sse":
            await self._start_sse(sse or SseOptions())
        else:
            raise ValueError("Invalid transport type")

    async def activate(self, transport_type: str = "stdio", *, sse: Optional[SseOptions] = None) -> None:
        await self.start(transport_type, sse=sse)
        logger.info("%s server is running on %s", self.name, transport_type)

    async def _start_sse(self, options: SseOptions) -> None:
        if self._sse_server is not None:
            raise RuntimeError("SSE server is already running")
        app = create_sse_app(
            on_connect=self.connect,
            authenticate=self._authenticate,
            endpoint=options.endpoint,
            title=self.name,
            version=self.version,
        )
        config = uvicorn.Config(app, host=options.host, port=options.port, log_level="info")
        self._sse_server = uvicorn.Server(config)
        self._sse_task = asyncio.create_task(self._sse_server.serve())
        logger.info("SSE endpoint %s listening on %s:%s", options.endpoint, options.host, options.port)

    async def stop(self) -> None:
        if self._sse_server is not None:
            self._sse_server.should_exit = True
            if self._sse_task is not None:
                await asyncio.wait([self._sse_task])
            self._sse_server = None
            self._sse_task = None
        for session in list(self._sessions):
            await session.close()


__all__ = ["SseOptions", "ToolBox"]
