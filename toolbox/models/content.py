"""Pydantic-модели контента MCP: блоки контента, результаты инструментов, ресурсы, автодополнение."""

from __future__ import annotations

import base64
import binascii
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

MAX_COMPLETION_VALUES = 100

LoggingLevel = Literal["debug", "info", "notice", "warning", "error", "critical", "alert", "emergency"]

# Порядок важности по RFC 5424 (от наименее к наиболее важному).
LOGGING_LEVELS: List[str] = ["debug", "info", "notice", "warning", "error", "critical", "alert", "emergency"]


def _check_base64(value: str) -> str:
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("must be base64-encoded") from exc
    return value


class TextContent(BaseModel):
    """Текстовый блок контента."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["text"] = "text"
    text: str


class ImageContent(BaseModel):
    """Изображение в base64 с MIME-типом."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["image"] = "image"
    data: str
    mimeType: str

    @field_validator("data")
    @classmethod
    def _data_is_base64(cls, value: str) -> str:
        return _check_base64(value)


Content = Annotated[Union[TextContent, ImageContent], Field(discriminator="type")]


class ContentResult(BaseModel):
    """Канонический результат `tools/call`."""

    model_config = ConfigDict(extra="forbid")

    content: List[Content]
    isError: Optional[bool] = None

    def as_mcp_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Completion(BaseModel):
    """Результат автодополнения аргумента. Не более 100 значений."""

    values: List[str] = Field(default_factory=list, max_length=MAX_COMPLETION_VALUES)
    total: Optional[int] = None
    hasMore: Optional[bool] = None

    def as_mcp_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class TextResourceBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str


class BlobResourceBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    blob: str

    @field_validator("blob")
    @classmethod
    def _blob_is_base64(cls, value: str) -> str:
        return _check_base64(value)


ResourceBody = Union[TextResourceBody, BlobResourceBody]

_RESOURCE_BODY_ADAPTER: TypeAdapter[ResourceBody] = TypeAdapter(ResourceBody)


def coerce_resource_body(value: Any) -> ResourceBody:
    """Приводит результат загрузчика ресурса к TextResourceBody/BlobResourceBody."""
    if isinstance(value, (TextResourceBody, BlobResourceBody)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return BlobResourceBody(blob=base64.b64encode(bytes(value)).decode("ascii"))
    return _RESOURCE_BODY_ADAPTER.validate_python(value)


class Root(BaseModel):
    """Корень (область адресации), объявленный пиром."""

    model_config = ConfigDict(extra="allow")

    uri: str
    name: Optional[str] = None


class SamplingResponse(BaseModel):
    """Ответ пира на `sampling/createMessage`."""

    model_config = ConfigDict(extra="allow")

    model: str
    stopReason: Optional[str] = None
    role: Literal["user", "assistant"]
    content: Content


__all__ = [
    "BlobResourceBody",
    "Completion",
    "Content",
    "ContentResult",
    "ImageContent",
    "LOGGING_LEVELS",
    "LoggingLevel",
    "MAX_COMPLETION_VALUES",
    "ResourceBody",
    "Root",
    "SamplingResponse",
    "TextContent",
    "TextResourceBody",
    "coerce_resource_body",
]
