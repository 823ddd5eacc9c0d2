import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime
from typing import Any

from fastapi import FastAPI

from chatbridge.api.users import router as users_router
from chatbridge.container import ServiceContainer, build_container
from chatbridge.schemas import DispatcherStatus
from chatbridge.startup_self_check import run_startup_self_check

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):  # type: ignore[no-untyped-def]
    _app.state.startup_self_check = run_startup_self_check(logger=logger)
    _app.state.started_at = datetime.now(UTC).isoformat()
    if getattr(_app.state, "container", None) is None:
        _app.state.container = build_container()
    container: ServiceContainer = _app.state.container

    poll_task: asyncio.Task[None] | None = None
    if container.polling_enabled and container.update_dispatcher is not None:
        poll_task = asyncio.create_task(
            container.update_dispatcher.run_forever(),
            name="telegram-update-dispatcher",
        )
        poll_task.add_done_callback(_log_poll_task_exit)
    try:
        yield
    finally:
        if poll_task is not None:
            poll_task.cancel()
            with suppress(asyncio.CancelledError):
                await poll_task
        for user_map in container.user_map_registry.instances():
            await user_map.flush()
        if container.telegram_client is not None:
            await container.telegram_client.aclose()


def _log_poll_task_exit(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "update_dispatcher_crashed err=%s: %s",
            type(exc).__name__,
            exc,
            exc_info=exc,
        )


app = FastAPI(title="Chatbridge", version="0.1.0", lifespan=lifespan)
app.state.container = None
app.include_router(users_router)


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok", "service": "chatbridge"}


@app.get("/api/v1/ops/health")
def ops_health() -> dict[str, object]:
    startup = getattr(app.state, "startup_self_check", None)
    startup_payload: dict[str, Any] = (
        {
            "telegram_token_present": startup.telegram_token_present,
            "polling_enabled": startup.polling_enabled,
            "users_file": startup.users_file,
            "users_dir_writable": startup.users_dir_writable,
            "poll_timeout_sec": startup.poll_timeout_sec,
            "issues": startup.issues,
        }
        if startup is not None
        else {"issues": ["startup_self_check_not_available"]}
    )
    container: ServiceContainer = app.state.container
    dispatcher = container.update_dispatcher
    dispatcher_status = (
        dispatcher.status(enabled=container.polling_enabled)
        if dispatcher is not None
        else DispatcherStatus(enabled=False)
    )
    user_maps = [
        user_map.persistence_diagnostics()
        for user_map in container.user_map_registry.instances()
    ]
    degraded = bool(startup_payload["issues"]) or any(
        not item["last_write_ok"] for item in user_maps
    )
    return {
        "status": "degraded" if degraded else "ok",
        "started_at": getattr(app.state, "started_at", None),
        "startup_self_check": startup_payload,
        "dispatcher": dispatcher_status.model_dump(),
        "user_maps": user_maps,
    }
