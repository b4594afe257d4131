"""Транспорт Server-Sent Events: поток событий к пиру и POST-эндпоинт для входящих сообщений.

Пир открывает `GET <endpoint>` и первым событием получает `endpoint` с адресом
`/messages?sessionId=...`; туда он отправляет JSON-RPC сообщения, а ответы
сервера приходят событиями `message` в открытый поток.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Dict, Optional
from uuid import uuid4

from toolbox.transports.base import Message, Transport

logger = logging.getLogger("toolbox.transports.sse")

MESSAGES_PATH = "/messages"


def format_sse(event: str, data: str) -> str:
    lines = "".join(f"data: {line}\n" for line in data.splitlines() or [""])
    return f"event: {event}\n{lines}\n"


class SseServerTransport(Transport):
    """Серверная сторона одного SSE-подключения."""

    def __init__(self, session_id: Optional[str] = None, *, messages_path: str = MESSAGES_PATH) -> None:
        self.session_id = session_id or uuid4().hex
        self.messages_path = messages_path
        self._inbox: "asyncio.Queue[Optional[Message]]" = asyncio.Queue()
        self._outbox: "asyncio.Queue[Optional[Message]]" = asyncio.Queue()
        self.closed = False

    @property
    def endpoint_url(self) -> str:
        return f"{self.messages_path}?sessionId={self.session_id}"

    async def start(self) -> None:
        logger.debug("SSE transport %s started", self.session_id)

    async def send(self, message: Message) -> None:
        if self.closed:
            raise ConnectionError("Transport is closed")
        self._outbox.put_nowait(message)

    async def receive(self) -> Optional[Message]:
        if self.closed and self._inbox.empty():
            return None
        return await self._inbox.get()

    def deliver(self, message: Message) -> None:
        """Кладёт сообщение, пришедшее через POST, во входящую очередь."""
        if self.closed:
            raise ConnectionError("Transport is closed")
        self._inbox.put_nowait(message)

    async def events(self) -> AsyncIterator[str]:
        """Кадры SSE для StreamingResponse: сначала endpoint, затем исходящие сообщения."""
        yield format_sse("endpoint", self.endpoint_url)
        while True:
            message = await self._outbox.get()
            if message is None:
                break
            yield format_sse("message", json.dumps(message, ensure_ascii=False))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._inbox.put_nowait(None)
        self._outbox.put_nowait(None)


class SseTransportRegistry:
    """Активные SSE-подключения по sessionId."""

    def __init__(self) -> None:
        self._transports: Dict[str, SseServerTransport] = {}

    def add(self, transport: SseServerTransport) -> None:
        self._transports[transport.session_id] = transport

    def get(self, session_id: str) -> Optional[SseServerTransport]:
        return self._transports.get(session_id)

    def remove(self, session_id: str) -> None:
        self._transports.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._transports)


__all__ = [
    "MESSAGES_PATH",
    "SseServerTransport",
    "SseTransportRegistry",
    "format_sse",
]
