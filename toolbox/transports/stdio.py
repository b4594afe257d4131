"""Транспорт поверх stdin/stdout: одно JSON-сообщение на строку."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Optional

from toolbox.core.config import DEFAULT_STDIO_LINE_LIMIT
from toolbox.core.errors import ErrorCode
from toolbox.models.json_rpc import error_message
from toolbox.transports.base import Message, Transport

logger = logging.getLogger("toolbox.transports.stdio")


class StdioTransport(Transport):
    """Line-delimited JSON поверх пары потоков (по умолчанию stdin/stdout процесса).

    `reader` — asyncio.StreamReader, `writer` — объект с `write()`/`drain()`.
    `limit` — максимальная длина строки для reader, который транспорт создаёт сам;
    строка длиннее лимита получает ответ INVALID_REQUEST и пропускается.
    """

    def __init__(
        self,
        reader: Optional[asyncio.StreamReader] = None,
        writer: Any = None,
        *,
        limit: int = DEFAULT_STDIO_LINE_LIMIT,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self.limit = limit
        self._closed = False

    async def start(self) -> None:
        if self._reader is not None and self._writer is not None:
            return
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=self.limit)
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)
        transport, protocol_w = await loop.connect_write_pipe(asyncio.streams.FlowControlMixin, sys.stdout)
        self._reader = reader
        self._writer = asyncio.StreamWriter(transport, protocol_w, reader, loop)

    async def send(self, message: Message) -> None:
        if self._closed or self._writer is None:
            raise ConnectionError("Transport is closed")
        self._writer.write((json.dumps(message, ensure_ascii=False) + "\n").encode("utf-8"))
        await self._writer.drain()

    async def receive(self) -> Optional[Message]:
        if self._reader is None:
            raise RuntimeError("StdioTransport.start() was not called")
        while not self._closed:
            try:
                line = await self._reader.readline()
            except ValueError as exc:
                # StreamReader уже выбросил слишком длинную строку из буфера.
                logger.warning("Dropping line over the %d byte limit: %s", self.limit, exc)
                await self.send(
                    error_message(ErrorCode.INVALID_REQUEST, "Message exceeds line limit", data={"limit": self.limit})
                )
                continue
            if not line:
                return None
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                payload = json.loads(text)
            except json.JSONDecodeError as exc:
                logger.warning("Dropping undecodable line: %s", exc)
                await self.send(error_message(ErrorCode.PARSE_ERROR, "Parse error", data=str(exc)))
                continue
            if not isinstance(payload, dict):
                await self.send(error_message(ErrorCode.INVALID_REQUEST, "Invalid Request"))
                continue
            return payload
        return None

    async def close(self) -> None:
        if self._closed:
            return
        # Потоки процесса не закрываем: stdout может использоваться после сессии.
        self._closed = True


__all__ = ["StdioTransport"]
