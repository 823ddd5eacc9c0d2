from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class DebouncedWriter:
    """
    Collapse bursts of persist requests into one deferred write.
    Inside an event loop the debounce is a `call_later` timer and writes are
    chained task after task. Requests from other threads are handed to the owning
    loop; with no loop at all a `threading.Timer` debounces instead. Every write
    takes its snapshot and runs under one lock, so at most one is in flight and
    the last write always carries the latest state. A failed write is logged;
    the next request tries again.
    """

    def __init__(
        self,
        write_fn: Callable[[Any], None],
        snapshot_fn: Callable[[], Any],
        *,
        delay_sec: float = 0.5,
        name: str = "writer",
    ) -> None:
        self._write_fn = write_fn
        self._snapshot_fn = snapshot_fn
        self._delay_sec = max(float(delay_sec), 0.0)
        self._name = name
        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: asyncio.TimerHandle | None = None
        self._thread_timer: threading.Timer | None = None
        self._finished_writing: asyncio.Task[None] | None = None
        self._state_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self.write_count = 0
        self.last_write_ok = True
        self.last_write_error: str | None = None

    @property
    def delay_sec(self) -> float:
        return self._delay_sec

    @property
    def pending(self) -> bool:
        return self._timer is not None or self._thread_timer is not None

    def request(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._loop = loop
            self._arm_loop_timer()
            return
        owner = self._loop
        if owner is not None and owner.is_running():
            owner.call_soon_threadsafe(self._arm_loop_timer)
            return
        self._arm_thread_timer()

    async def flush(self) -> None:
        self._loop = asyncio.get_running_loop()
        thread_pending = self._cancel_thread_timer()
        if self._timer is not None or thread_pending:
            self._cancel_loop_timer()
            self._chain_write()
        if self._finished_writing is not None and not self._finished_writing.done():
            await asyncio.shield(self._finished_writing)
        # A thread-timer write may still hold the lock.
        await asyncio.to_thread(self._wait_idle)

    def _arm_loop_timer(self) -> None:
        self._cancel_thread_timer()
        self._cancel_loop_timer()
        self._timer = asyncio.get_running_loop().call_later(self._delay_sec, self._fire)

    def _arm_thread_timer(self) -> None:
        with self._state_lock:
            if self._thread_timer is not None:
                self._thread_timer.cancel()
            timer = threading.Timer(self._delay_sec, self._fire_thread)
            timer.daemon = True
            self._thread_timer = timer
            timer.start()

    def _fire(self) -> None:
        self._timer = None
        self._chain_write()

    def _fire_thread(self) -> None:
        with self._write_lock:
            with self._state_lock:
                # Superseded or cancelled while waiting for the write lock.
                if self._thread_timer is not threading.current_thread():
                    return
                self._thread_timer = None
            self._write_unlocked()

    def _chain_write(self) -> None:
        previous = self._finished_writing
        self._finished_writing = asyncio.get_running_loop().create_task(
            self._write_after(previous),
            name=f"{self._name}-write",
        )

    async def _write_after(self, previous: asyncio.Task[None] | None) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        await asyncio.to_thread(self._write_locked)

    def _write_locked(self) -> None:
        with self._write_lock:
            self._write_unlocked()

    def _write_unlocked(self) -> None:
        try:
            self._write_fn(self._snapshot_fn())
        except OSError as exc:
            self._record_failure(exc)
        else:
            self._record_success()

    def _wait_idle(self) -> None:
        with self._write_lock:
            pass

    def _record_success(self) -> None:
        self.write_count += 1
        self.last_write_ok = True
        self.last_write_error = None

    def _record_failure(self, exc: OSError) -> None:
        self.last_write_ok = False
        self.last_write_error = str(exc)
        logger.warning("debounced_write_failed writer=%s err=%s", self._name, exc)

    def _cancel_loop_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _cancel_thread_timer(self) -> bool:
        with self._state_lock:
            timer = self._thread_timer
            self._thread_timer = None
        if timer is None:
            return False
        timer.cancel()
        return True
