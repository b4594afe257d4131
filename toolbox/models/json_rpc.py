"""Pydantic-модели для JSON-RPC сообщений и рукопожатия MCP."""

from __future__ import annotations

from typing import Any, Dict, Optional, Literal, Union

from pydantic import BaseModel, Field

RequestId = Union[int, str]


class JsonRpcRequest(BaseModel):
    """Стандартный JSON-RPC 2.0 запрос."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None
    id: RequestId


class JsonRpcNotification(BaseModel):
    """JSON-RPC 2.0 уведомление (без id, ответа не ждёт)."""

    jsonrpc: Literal["2.0"] = "2.0"
    method: str
    params: Optional[Dict[str, Any]] = None


class JsonRpcResponse(BaseModel):
    """Успешный JSON-RPC 2.0 ответ."""

    jsonrpc: Literal["2.0"] = "2.0"
    result: Any = None
    id: Optional[RequestId] = None


class JsonRpcErrorObj(BaseModel):
    """Структура ошибки JSON-RPC 2.0."""

    code: int
    message: str
    data: Optional[Any] = None


class JsonRpcError(BaseModel):
    """JSON-RPC 2.0 ответ с ошибкой."""

    jsonrpc: Literal["2.0"] = "2.0"
    error: JsonRpcErrorObj
    id: Optional[RequestId] = None


class InitializeParams(BaseModel):
    """Параметры метода `initialize` MCP."""

    protocolVersion: Optional[str] = None
    clientInfo: Dict[str, Any] = Field(default_factory=dict)
    capabilities: Dict[str, Any] = Field(default_factory=dict)


def error_message(code: int, message: str, *, data: Any = None, request_id: Any = None) -> Dict[str, Any]:
    """Собирает JSON-совместимый словарь ответа с ошибкой."""
    payload = JsonRpcError(
        error=JsonRpcErrorObj(code=code, message=message, data=data),
    ).model_dump(exclude_none=True)
    # id обязателен даже для null (например, при ошибке разбора).
    payload["id"] = request_id
    return payload


def result_message(result: Any, request_id: Any) -> Dict[str, Any]:
    return JsonRpcResponse(result=result, id=request_id).model_dump()


__all__ = [
    "InitializeParams",
    "JsonRpcError",
    "JsonRpcErrorObj",
    "JsonRpcNotification",
    "JsonRpcRequest",
    "JsonRpcResponse",
    "RequestId",
    "error_message",
    "result_message",
]
