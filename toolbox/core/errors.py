"""Иерархия ошибок toolbox и коды ошибок JSON-RPC/MCP."""

from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorCode:
    """Стандартные коды ошибок JSON-RPC 2.0 и расширения MCP SDK."""

    CONNECTION_CLOSED = -32000
    REQUEST_TIMEOUT = -32001

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class McpError(Exception):
    """Протокольная ошибка, которая уходит пиру как JSON-RPC `error`."""

    def __init__(self, message: str, *, code: int = ErrorCode.INTERNAL_ERROR, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "McpError":
        code = payload.get("code")
        message = payload.get("message")
        return cls(
            message if isinstance(message, str) else "Unknown error",
            code=code if isinstance(code, int) else ErrorCode.INTERNAL_ERROR,
            data=payload.get("data"),
        )


class ToolboxError(Exception):
    """Базовый класс ошибок toolbox, не являющихся протокольными."""


class UnexpectedStateError(ToolboxError):
    """Нарушен инвариант состояния (повторный connect, неожиданный ref и т.п.)."""

    def __init__(self, message: str, extras: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.extras = extras


class UserError(UnexpectedStateError):
    """Ошибка, текст которой можно показать пользователю как есть."""


class DuplicateRegistrationError(ToolboxError, ValueError):
    """Сущность с таким идентификатором уже зарегистрирована."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} '{identifier}' is already registered")
        self.kind = kind
        self.identifier = identifier


__all__ = [
    "DuplicateRegistrationError",
    "ErrorCode",
    "McpError",
    "ToolboxError",
    "UnexpectedStateError",
    "UserError",
]
