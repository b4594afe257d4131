"""Контракт транспорта и in-memory реализация для встраивания и тестов."""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

Message = Dict[str, Any]


class Transport(ABC):
    """Дуплексный канал JSON-RPC сообщений.

    `receive()` возвращает None, когда канал закрыт и сообщений больше не будет.
    """

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def send(self, message: Message) -> None: ...

    @abstractmethod
    async def receive(self) -> Optional[Message]: ...

    @abstractmethod
    async def close(self) -> None: ...


class MemoryTransport(Transport):
    """Половина пары связанных in-memory транспортов."""

    def __init__(self) -> None:
        self._inbox: "asyncio.Queue[Optional[Message]]" = asyncio.Queue()
        self._peer: Optional["MemoryTransport"] = None
        self.closed = False

    async def start(self) -> None:
        if self._peer is None:
            raise RuntimeError("MemoryTransport is not linked to a peer")

    async def send(self, message: Message) -> None:
        if self.closed or self._peer is None or self._peer.closed:
            raise ConnectionError("Transport is closed")
        # Копия, чтобы стороны не делили изменяемые структуры.
        self._peer._inbox.put_nowait(copy.deepcopy(message))

    async def receive(self) -> Optional[Message]:
        if self.closed and self._inbox.empty():
            return None
        return await self._inbox.get()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._inbox.put_nowait(None)
        if self._peer is not None and not self._peer.closed:
            self._peer._inbox.put_nowait(None)


def create_memory_transport_pair() -> Tuple[MemoryTransport, MemoryTransport]:
    """Возвращает (серверный, клиентский) транспорты, связанные друг с другом."""
    server, client = MemoryTransport(), MemoryTransport()
    server._peer, client._peer = client, server
    return server, client


__all__ = ["MemoryTransport", "Message", "Transport", "create_memory_transport_pair"]
