"""Минимальный реестр слушателей событий сессии и сервера."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger("toolbox.core.events")

Listener = Callable[[Dict[str, Any]], Any]


class EventHub:
    """Несколько независимых слушателей на событие, доставка без ожидания.

    Синхронные слушатели вызываются сразу, корутины планируются задачами.
    Ошибка в слушателе только логируется.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._tasks: Set["asyncio.Task[Any]"] = set()

    def on(self, event: str, listener: Listener) -> Listener:
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def off(self, event: str, listener: Listener) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                result = listener(payload)
            except Exception:
                logger.exception("Listener for %r failed", event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async listener failed: %s", exc, exc_info=exc)


__all__ = ["EventHub", "Listener"]
