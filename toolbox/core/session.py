"""MCP-сессия: согласование возможностей, диспетчеризация запросов пира и heartbeat.

Одна сессия обслуживает ровно один транспорт. Жизненный цикл:
CONNECTING → NEGOTIATING → ACTIVE → CLOSING → CLOSED, без возвратов.

Входящие запросы обрабатываются независимыми задачами, поэтому долгий вызов
инструмента не блокирует остальные; ответы сопоставляются по JSON-RPC `id`.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4

from pydantic import ValidationError

from toolbox.core.config import PROTOCOL_VERSION, SessionSettings, get_session_settings
from toolbox.core.errors import ErrorCode, McpError, UnexpectedStateError, UserError
from toolbox.core.events import EventHub, Listener
from toolbox.models.content import LOGGING_LEVELS, Root, SamplingResponse, coerce_resource_body
from toolbox.models.json_rpc import (
    InitializeParams,
    JsonRpcNotification,
    JsonRpcRequest,
    error_message,
    result_message,
)
from toolbox.tools.completion import CompletionResolver, maybe_await
from toolbox.tools.content import normalise_tool_result, tool_error
from toolbox.tools.registry import RegistrySnapshot
from toolbox.transports.base import Message, Transport

logger = logging.getLogger("toolbox.core.session")

Handler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

# После стольких подряд ошибок чтения транспорт считается потерянным.
MAX_CONSECUTIVE_RECEIVE_ERRORS = 3


class SessionState(str, enum.Enum):
    CONNECTING = "connecting"
    NEGOTIATING = "negotiating"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


class ToolLog:
    """Логгер, доступный инструменту: записи уходят пиру как `notifications/message`."""

    def __init__(self, session: "ToolboxSession") -> None:
        self._session = session

    def debug(self, message: str, data: Any = None) -> None:
        self._session.send_log_message("debug", message, data)

    def info(self, message: str, data: Any = None) -> None:
        self._session.send_log_message("info", message, data)

    def warn(self, message: str, data: Any = None) -> None:
        self._session.send_log_message("warning", message, data)

    def error(self, message: str, data: Any = None) -> None:
        self._session.send_log_message("error", message, data)


class ToolContext:
    """Контекст исполнения инструмента."""

    def __init__(
        self,
        *,
        session: Any,
        report_progress: Callable[..., Awaitable[None]],
        log: ToolLog,
    ) -> None:
        self.session = session
        self.report_progress = report_progress
        self.log = log


class ToolboxSession:
    """Состояние одного подключённого пира поверх снимка реестра."""

    def __init__(
        self,
        *,
        name: str,
        version: str,
        snapshot: RegistrySnapshot,
        auth: Any = None,
        settings: Optional[SessionSettings] = None,
    ) -> None:
        self.id = uuid4().hex
        self.events = EventHub()
        self.state = SessionState.CONNECTING
        self._server_info = {"name": name, "version": version}
        self._snapshot = snapshot
        self._auth = auth
        self._settings = settings or get_session_settings()

        self._transport: Optional[Transport] = None
        self._client_capabilities: Optional[Dict[str, Any]] = None
        self._client_info: Dict[str, Any] = {}
        self._protocol_version: Optional[str] = None
        self._logging_level = "info"
        self._roots: List[Root] = []

        self._reader_task: Optional["asyncio.Task[None]"] = None
        self._heartbeat_task: Optional["asyncio.Task[None]"] = None
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._pending: Dict[Any, "asyncio.Future[Any]"] = {}
        self._request_ids = itertools.count(1)

        self._prompt_resolvers = {prompt.name: CompletionResolver.for_prompt(prompt) for prompt in snapshot.prompts}
        self._template_resolvers = {
            template.uriTemplate: CompletionResolver.for_resource_template(template)
            for template in snapshot.resource_templates
        }
        self._compiled_templates = [(template, template.compiled()) for template in snapshot.resource_templates]
        self._capabilities = self._build_capabilities()
        self._handlers = self._build_handlers()

    # --- публичное состояние ---

    @property
    def auth(self) -> Any:
        return self._auth

    @property
    def capabilities(self) -> Dict[str, Any]:
        return self._capabilities

    @property
    def client_capabilities(self) -> Optional[Dict[str, Any]]:
        return self._client_capabilities

    @property
    def client_info(self) -> Dict[str, Any]:
        return self._client_info

    @property
    def logging_level(self) -> str:
        return self._logging_level

    @property
    def roots(self) -> List[Root]:
        return list(self._roots)

    def on(self, event: str, listener: Listener) -> Listener:
        return self.events.on(event, listener)

    # --- жизненный цикл ---

    async def connect(self, transport: Transport) -> None:
        if self._transport is not None:
            raise UnexpectedStateError("Server is already connected")
        self._transport = transport
        await transport.start()
        self._reader_task = asyncio.create_task(self._read_loop(), name=f"toolbox-session-{self.id}-reader")
        self.state = SessionState.NEGOTIATING

        # Фиксированное число попыток с постоянной паузой: пир должен прислать initialize.
        for _ in range(self._settings.negotiation_attempts):
            if self._client_capabilities is not None or self.state is not SessionState.NEGOTIATING:
                break
            await asyncio.sleep(self._settings.negotiation_delay)

        if self.state is not SessionState.NEGOTIATING:
            return
        if self._client_capabilities is None:
            logger.warning(
                "Session %s could not infer client capabilities after %d attempts",
                self.id,
                self._settings.negotiation_attempts,
            )
        self.state = SessionState.ACTIVE

        if self._client_capabilities and self._client_capabilities.get("roots"):
            try:
                await self._refresh_roots(emit=False)
            except Exception as exc:
                logger.warning("Session %s failed to list roots: %s", self.id, exc)
                self._emit_error(exc)

        self._heartbeat_task = asyncio.create_task(self._heartbeat(), name=f"toolbox-session-{self.id}-heartbeat")

    async def close(self) -> None:
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.state = SessionState.CLOSING

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.wait([self._heartbeat_task])

        if self._transport is not None:
            try:
                await self._transport.close()
            except Exception as exc:
                logger.error("[MCP Error] could not close transport for session %s: %s", self.id, exc)

        reader = self._reader_task
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
            await asyncio.wait([reader])

        for future in self._pending.values():
            if not future.done():
                future.set_exception(McpError("Connection closed", code=ErrorCode.CONNECTION_CLOSED))
        self._pending.clear()

        self.state = SessionState.CLOSED
        logger.info("Session %s closed", self.id)
        self.events.emit("close", {"session": self})

    # --- исходящие запросы к пиру ---

    async def request(self, method: str, params: Optional[Dict[str, Any]] = None, *, timeout: Optional[float] = None) -> Any:
        if self._transport is None or self.state in (SessionState.CLOSING, SessionState.CLOSED):
            raise McpError("Connection closed", code=ErrorCode.CONNECTION_CLOSED)
        request_id = next(self._request_ids)
        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._transport.send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})
            return await asyncio.wait_for(future, timeout or self._settings.request_timeout)
        except asyncio.TimeoutError:
            raise McpError(f"Request timed out: {method}", code=ErrorCode.REQUEST_TIMEOUT) from None
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        if self._transport is None or self.state in (SessionState.CLOSING, SessionState.CLOSED):
            raise McpError("Connection closed", code=ErrorCode.CONNECTION_CLOSED)
        message = JsonRpcNotification(method=method, params=params).model_dump(
            exclude={"params"} if params is None else None
        )
        await self._transport.send(message)

    async def ping(self) -> None:
        await self.request("ping", {}, timeout=self._settings.request_timeout)

    async def list_roots(self) -> List[Root]:
        return await self._refresh_roots(emit=False)

    async def request_sampling(self, params: Dict[str, Any]) -> SamplingResponse:
        result = await self.request("sampling/createMessage", params)
        return SamplingResponse.model_validate(result)

    def send_log_message(self, level: str, message: str, data: Any = None) -> None:
        """Отправляет запись лога пиру, если уровень не ниже текущего уровня сессии."""
        if LOGGING_LEVELS.index(level) < LOGGING_LEVELS.index(self._logging_level):
            return
        payload: Dict[str, Any] = {"message": message}
        if data is not None:
            payload["context"] = data
        self._spawn(self.notify("notifications/message", {"level": level, "data": payload}))

    # --- внутренние циклы ---

    async def _read_loop(self) -> None:
        assert self._transport is not None
        failures = 0
        while True:
            try:
                message = await self._transport.receive()
            except ConnectionError:
                break
            except Exception as exc:
                failures += 1
                logger.exception("Transport error in session %s", self.id)
                self._emit_error(exc)
                if failures >= MAX_CONSECUTIVE_RECEIVE_ERRORS:
                    break
                continue
            failures = 0
            if message is None:
                break
            self._dispatch(message)

        if self.state not in (SessionState.CLOSING, SessionState.CLOSED):
            logger.info("Transport for session %s closed by peer", self.id)
            self._spawn(self.close())

    async def _heartbeat(self) -> None:
        while self.state is SessionState.ACTIVE:
            await asyncio.sleep(self._settings.heartbeat_interval)
            if self.state is not SessionState.ACTIVE:
                break
            try:
                await self.ping()
            except Exception as exc:
                logger.warning("Heartbeat ping failed for session %s: %s", self.id, exc)
                self._emit_error(exc)

    def _spawn(self, coro: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background task in session %s failed: %s", self.id, exc)

    def _emit_error(self, error: BaseException) -> None:
        self.events.emit("error", {"error": error})

    # --- входящие сообщения ---

    def _dispatch(self, message: Message) -> None:
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            logger.debug("Session %s dropping message after close", self.id)
            return
        if "method" in message:
            if message.get("id") is None:
                self._spawn(self._handle_notification(message))
                return
            try:
                request = JsonRpcRequest.model_validate(message)
            except ValidationError as exc:
                self._spawn(
                    self._send(
                        error_message(
                            ErrorCode.INVALID_REQUEST,
                            "Invalid Request",
                            data=exc.errors(include_url=False, include_context=False),
                            request_id=message.get("id"),
                        )
                    )
                )
                return
            self._spawn(self._handle_request(request))
            return
        if "id" in message and ("result" in message or "error" in message):
            self._handle_response(message)
            return
        logger.warning("Session %s ignoring malformed message: %s", self.id, message)

    def _handle_response(self, message: Message) -> None:
        future = self._pending.get(message.get("id"))
        if future is None or future.done():
            logger.debug("Session %s got response for unknown request id %r", self.id, message.get("id"))
            return
        error = message.get("error")
        if isinstance(error, dict):
            future.set_exception(McpError.from_dict(error))
        else:
            future.set_result(message.get("result"))

    async def _handle_request(self, request: JsonRpcRequest) -> None:
        handler = self._handlers.get(request.method)
        try:
            if handler is None:
                raise McpError("Method not found", code=ErrorCode.METHOD_NOT_FOUND, data={"method": request.method})
            response = result_message(await handler(request.params or {}), request.id)
        except McpError as exc:
            response = error_message(exc.code, exc.message, data=exc.data, request_id=request.id)
        except Exception as exc:
            logger.exception("Unhandled MCP error in %s", request.method)
            response = error_message(ErrorCode.INTERNAL_ERROR, "Internal error", data=str(exc), request_id=request.id)

        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            # Незавершённая работа не отменяется при закрытии, её результат просто отбрасывается.
            logger.debug("Session %s discarding response to %s: session closed", self.id, request.method)
            return
        await self._send(response)

    async def _send(self, message: Message) -> None:
        assert self._transport is not None
        try:
            await self._transport.send(message)
        except Exception as exc:
            logger.warning("Session %s failed to send message: %s", self.id, exc)
            self._emit_error(exc)

    async def _handle_notification(self, message: Message) -> None:
        method = message.get("method")
        if method == "notifications/roots/list_changed":
            try:
                await self._refresh_roots(emit=True)
            except Exception as exc:
                logger.warning("Session %s failed to refresh roots: %s", self.id, exc)
                self._emit_error(exc)
        elif method == "notifications/cancelled":
            logger.info("Session %s: peer cancelled request %s", self.id, (message.get("params") or {}).get("requestId"))
        else:
            logger.debug("Session %s ignoring notification %s", self.id, method)

    async def _refresh_roots(self, *, emit: bool) -> List[Root]:
        result = await self.request("roots/list", {})
        items = result.get("roots") if isinstance(result, dict) else None
        self._roots = [Root.model_validate(item) for item in items or []]
        if emit:
            self.events.emit("roots_changed", {"roots": list(self._roots)})
        return list(self._roots)

    # --- обработчики методов ---

    def _build_capabilities(self) -> Dict[str, Any]:
        capabilities: Dict[str, Any] = {}
        if self._snapshot.tools:
            capabilities["tools"] = {}
        if self._snapshot.resources or self._snapshot.resource_templates:
            capabilities["resources"] = {}
        if self._snapshot.prompts:
            capabilities["prompts"] = {}
        capabilities["logging"] = {}
        return capabilities

    def _build_handlers(self) -> Dict[str, Handler]:
        handlers: Dict[str, Handler] = {
            "initialize": self._handle_initialize,
            "ping": self._handle_ping,
            "logging/setLevel": self._handle_set_level,
            "completion/complete": self._handle_complete,
        }
        if self._snapshot.tools:
            handlers["tools/list"] = self._handle_tools_list
            handlers["tools/call"] = self._handle_tools_call
        if self._snapshot.resources or self._snapshot.resource_templates:
            handlers["resources/list"] = self._handle_resources_list
            handlers["resources/read"] = self._handle_resources_read
            handlers["resources/templates/list"] = self._handle_resource_templates_list
        if self._snapshot.prompts:
            handlers["prompts/list"] = self._handle_prompts_list
            handlers["prompts/get"] = self._handle_prompts_get
        return handlers

    async def _handle_initialize(self, params: Dict[str, Any]) -> Dict[str, Any]:
        try:
            parsed = InitializeParams.model_validate(params)
        except ValidationError as exc:
            raise McpError(
                "Invalid initialize params",
                code=ErrorCode.INVALID_PARAMS,
                data=exc.errors(include_url=False, include_context=False),
            ) from exc
        self._client_info = parsed.clientInfo
        self._protocol_version = parsed.protocolVersion or PROTOCOL_VERSION
        self._client_capabilities = parsed.capabilities
        logger.info("Session %s initialized by %s", self.id, parsed.clientInfo.get("name", "unknown client"))
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": self._capabilities,
            "serverInfo": self._server_info,
        }

    async def _handle_ping(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    async def _handle_set_level(self, params: Dict[str, Any]) -> Dict[str, Any]:
        level = params.get("level")
        if level not in LOGGING_LEVELS:
            raise McpError(f"Invalid logging level: {level}", code=ErrorCode.INVALID_PARAMS)
        self._logging_level = level
        return {}

    async def _handle_tools_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"tools": [tool.as_mcp_dict() for tool in self._snapshot.tools]}

    async def _handle_tools_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        tool = self._snapshot.find_tool(name) if isinstance(name, str) else None
        if tool is None:
            raise McpError(f"Unknown tool: {name}", code=ErrorCode.METHOD_NOT_FOUND)

        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if tool.parameters is not None:
            try:
                args: Any = tool.parameters.model_validate(arguments)
            except ValidationError as exc:
                raise McpError(
                    f"Invalid {name} parameters",
                    code=ErrorCode.INVALID_PARAMS,
                    data=exc.errors(include_url=False, include_context=False),
                ) from exc
        else:
            args = arguments

        meta = params.get("_meta")
        progress_token = meta.get("progressToken") if isinstance(meta, dict) else None

        async def report_progress(progress: float, total: Optional[float] = None) -> None:
            if progress_token is None:
                return
            payload: Dict[str, Any] = {"progressToken": progress_token, "progress": progress}
            if total is not None:
                payload["total"] = total
            await self.notify("notifications/progress", payload)

        context = ToolContext(session=self._auth, report_progress=report_progress, log=ToolLog(self))
        try:
            result = normalise_tool_result(await maybe_await(tool.execute(args, context)))
        except UserError as exc:
            result = tool_error(str(exc))
        except Exception as exc:
            logger.warning("Tool %s failed in session %s: %s", name, self.id, exc)
            result = tool_error(f"Error: {exc}")
        return result.as_mcp_dict()

    async def _handle_resources_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"resources": [resource.as_mcp_dict() for resource in self._snapshot.resources]}

    async def _handle_resource_templates_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"resourceTemplates": [template.as_mcp_dict() for template in self._snapshot.resource_templates]}

    async def _handle_resources_read(self, params: Dict[str, Any]) -> Dict[str, Any]:
        uri = params.get("uri")
        if not isinstance(uri, str):
            raise McpError("Invalid params: 'uri' must be a string", code=ErrorCode.INVALID_PARAMS)

        resource = self._snapshot.find_resource(uri)
        if resource is not None:
            try:
                loaded = await maybe_await(resource.load())
                bodies = [coerce_resource_body(item) for item in (loaded if isinstance(loaded, (list, tuple)) else [loaded])]
            except Exception as exc:
                raise McpError(
                    f"Error reading resource: {exc}", code=ErrorCode.INTERNAL_ERROR, data={"uri": uri}
                ) from exc
            return {"contents": [_wrap_body(uri, resource.name, resource.mimeType, body) for body in bodies]}

        for template, compiled in self._compiled_templates:
            variables = compiled.match(uri)
            if variables is None:
                continue
            filled_uri = compiled.expand(variables)
            try:
                body = coerce_resource_body(await maybe_await(template.load(variables)))
            except Exception as exc:
                raise McpError(
                    f"Error reading resource: {exc}", code=ErrorCode.INTERNAL_ERROR, data={"uri": uri}
                ) from exc
            return {"contents": [_wrap_body(filled_uri, template.name, template.mimeType, body)]}

        raise McpError(f"Unknown resource: {uri}", code=ErrorCode.METHOD_NOT_FOUND)

    async def _handle_prompts_list(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"prompts": [prompt.as_mcp_dict() for prompt in self._snapshot.prompts]}

    async def _handle_prompts_get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        name = params.get("name")
        prompt = self._snapshot.find_prompt(name) if isinstance(name, str) else None
        if prompt is None:
            raise McpError(f"Unknown prompt: {name}", code=ErrorCode.METHOD_NOT_FOUND)

        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            raise McpError("Invalid params: 'arguments' must be an object", code=ErrorCode.INVALID_PARAMS)
        for argument in prompt.arguments:
            if argument.required and argument.name not in arguments:
                raise McpError(f"Missing required argument: {argument.name}", code=ErrorCode.INVALID_REQUEST)

        try:
            text = await maybe_await(prompt.load(dict(arguments)))
        except Exception as exc:
            raise McpError(
                f"Error loading prompt: {exc}", code=ErrorCode.INTERNAL_ERROR, data={"name": prompt.name}
            ) from exc

        result: Dict[str, Any] = {
            "messages": [{"role": "user", "content": {"type": "text", "text": str(text)}}],
        }
        if prompt.description is not None:
            result["description"] = prompt.description
        return result

    async def _handle_complete(self, params: Dict[str, Any]) -> Dict[str, Any]:
        ref = params.get("ref")
        argument = params.get("argument")
        if not isinstance(ref, dict) or not isinstance(argument, dict):
            raise McpError("Invalid params: 'ref' and 'argument' are required", code=ErrorCode.INVALID_PARAMS)

        ref_type = ref.get("type")
        if ref_type == "ref/prompt":
            resolver = self._prompt_resolvers.get(ref.get("name"))
            kind = "Prompt"
        elif ref_type == "ref/resource":
            resolver = self._template_resolvers.get(ref.get("uri"))
            kind = "Resource"
        else:
            raise McpError("Unexpected completion request", code=ErrorCode.INVALID_PARAMS, data={"ref": ref})

        if resolver is None:
            raise McpError(f"Unknown {kind.lower()}", code=ErrorCode.INVALID_PARAMS, data={"ref": ref})
        if not resolver.supports_completion:
            raise McpError(f"{kind} does not support completion", code=ErrorCode.INVALID_REQUEST, data={"ref": ref})

        completion = await resolver.resolve(str(argument.get("name", "")), str(argument.get("value", "")))
        return {"completion": completion.as_mcp_dict()}

    def __repr__(self) -> str:
        return f"ToolboxSession(id={self.id!r}, state={self.state.value!r})"


def _wrap_body(uri: str, name: str, mime_type: Optional[str], body: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"uri": uri, "name": name}
    if mime_type is not None:
        payload["mimeType"] = mime_type
    payload.update(body.model_dump())
    return payload


__all__ = [
    "SessionState",
    "ToolContext",
    "ToolLog",
    "ToolboxSession",
]
