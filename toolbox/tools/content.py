"""Приведение результатов инструментов к ContentResult и вспомогательные конструкторы контента."""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import httpx

from toolbox.models.content import ContentResult, ImageContent, TextContent

logger = logging.getLogger("toolbox.tools.content")

ToolExecutionResult = Union[str, TextContent, ImageContent, ContentResult, Dict[str, Any]]

_IMAGE_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
)


def tool_error(message: str) -> ContentResult:
    return ContentResult(content=[TextContent(text=message)], isError=True)


def normalise_tool_result(value: ToolExecutionResult) -> ContentResult:
    """Приводит значение, возвращённое инструментом, к каноническому ContentResult.

    Строка становится одним текстовым блоком, одиночный блок оборачивается в список,
    всё остальное валидируется как ContentResult.
    """
    if isinstance(value, str):
        return ContentResult(content=[TextContent(text=value)])
    if isinstance(value, (TextContent, ImageContent)):
        return ContentResult(content=[value])
    if isinstance(value, ContentResult):
        return value
    return ContentResult.model_validate(value)


def sniff_image_mime_type(data: bytes) -> str:
    for signature, mime_type in _IMAGE_SIGNATURES:
        if data.startswith(signature):
            return mime_type
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


async def image_content(
    *,
    url: Optional[str] = None,
    path: Optional[str] = None,
    data: Optional[bytes] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> ImageContent:
    """Собирает ImageContent из URL, пути к файлу или сырых байтов."""
    if url is not None:
        owns_client = client is None
        http = client or httpx.AsyncClient()
        try:
            response = await http.get(url)
        finally:
            if owns_client:
                await http.aclose()
        if response.status_code >= 400:
            raise RuntimeError(f"Failed to fetch image from URL: {response.status_code} {response.reason_phrase}")
        raw = response.content
    elif path is not None:
        raw = Path(path).read_bytes()
    elif data is not None:
        raw = data
    else:
        raise ValueError("Invalid input: Provide a valid 'url', 'path', or 'data'")

    mime_type = sniff_image_mime_type(raw)
    logger.debug("image_content built %d bytes as %s", len(raw), mime_type)
    return ImageContent(data=base64.b64encode(raw).decode("ascii"), mimeType=mime_type)


__all__ = [
    "ToolExecutionResult",
    "image_content",
    "normalise_tool_result",
    "sniff_image_mime_type",
    "tool_error",
]
