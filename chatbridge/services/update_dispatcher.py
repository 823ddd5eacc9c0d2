from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from chatbridge.schemas import DispatcherStatus, TelegramUpdate
from chatbridge.services.events import MESSAGE_KINDS, EventBus

logger = logging.getLogger(__name__)


class UpdateSource(Protocol):
    async def get_updates(self, *, offset: int, timeout: int) -> list[TelegramUpdate]: ...


class UpdateDispatcher:
    """
    Long-polls an update source and republishes every update on an EventBus.
    Each update emits `update`, and when it carries a message also `message`
    plus at most one of text/photo/document/audio/video/sticker.
    The offset lives in memory only, so a restart replays from the source's own
    low-water mark: delivery is at-least-once.
    """

    def __init__(
        self,
        *,
        source: UpdateSource,
        events: EventBus | None = None,
        timeout_sec: int = 60,
        retry_delay_sec: float = 0.0,
    ) -> None:
        self._source = source
        self.events = events if events is not None else EventBus()
        self._timeout_sec = max(int(timeout_sec), 0)
        self._retry_delay_sec = max(float(retry_delay_sec), 0.0)
        self._offset = 0
        self._running = False
        self.processed_count = 0
        self.failure_count = 0
        self.last_error: str | None = None

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def running(self) -> bool:
        return self._running

    async def poll_once(self) -> bool:
        offset = self._offset
        try:
            updates = await self._source.get_updates(offset=offset, timeout=self._timeout_sec)
        except Exception as exc:  # noqa: BLE001
            # Any source failure keeps the offset; the next cycle refetches from it.
            self.failure_count += 1
            self.last_error = f"{type(exc).__name__}: {exc}"
            logger.error(
                "update_poll_failed offset=%s err=%s",
                offset,
                self.last_error,
            )
            return False

        for update in updates:
            self._dispatch(update)
        return True

    async def run_forever(self) -> None:
        self._running = True
        logger.info("update_dispatcher_started timeout_sec=%s", self._timeout_sec)
        try:
            while True:
                ok = await self.poll_once()
                if not ok and self._retry_delay_sec > 0:
                    await asyncio.sleep(self._retry_delay_sec)
                else:
                    # Let other tasks run between back-to-back fetches.
                    await asyncio.sleep(0)
        finally:
            self._running = False
            logger.info("update_dispatcher_stopped offset=%s", self._offset)

    def status(self, *, enabled: bool = True) -> DispatcherStatus:
        return DispatcherStatus(
            enabled=enabled,
            running=self._running,
            offset=self._offset,
            processed_count=self.processed_count,
            failure_count=self.failure_count,
            last_error=self.last_error,
        )

    def _dispatch(self, update: TelegramUpdate) -> None:
        self._offset = max(self._offset, update.update_id + 1)
        self.processed_count += 1
        self.events.emit("update", update.raw())

        message = update.message
        if message is None:
            return
        self.events.emit("message", message)
        kind = classify_message(message)
        if kind is not None:
            self.events.emit(kind, message)


def classify_message(message: dict[str, Any]) -> str | None:
    for kind in MESSAGE_KINDS:
        if kind in message:
            return kind
    return None
