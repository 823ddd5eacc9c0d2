from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

MESSAGE_KINDS: tuple[str, ...] = ("text", "photo", "document", "audio", "video", "sticker")
EVENT_NAMES: frozenset[str] = frozenset({"update", "message", *MESSAGE_KINDS})

Handler = Callable[[dict[str, Any]], Any]


class EventBus:
    """Publish/subscribe hub for updates coming out of the dispatcher."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._background: set[asyncio.Task[Any]] = set()

    def on(self, event: str, handler: Handler) -> Handler:
        if event not in EVENT_NAMES:
            raise ValueError(f"unknown event: {event}")
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def emit(self, event: str, payload: dict[str, Any]) -> int:
        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            try:
                result = handler(payload)
            except Exception:
                logger.exception("event_handler_failed event=%s handler=%r", event, handler)
                continue
            if inspect.isawaitable(result):
                self._schedule(event=event, awaitable=result)
        return len(handlers)

    def _schedule(self, *, event: str, awaitable: Any) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)

        def _done(done: asyncio.Task[Any]) -> None:
            self._background.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                logger.error("event_handler_failed event=%s err=%s", event, exc)

        task.add_done_callback(_done)
