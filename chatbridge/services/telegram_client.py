from __future__ import annotations

import logging
from typing import Any

import httpx

from chatbridge.schemas import TelegramUpdate, TelegramUpdatesResponse

logger = logging.getLogger(__name__)


class TelegramAPIError(Exception):
    def __init__(self, *, error_code: int | None, description: str | None) -> None:
        self.error_code = error_code
        self.description = description
        super().__init__(f"telegram_api_error:{error_code}:{description or 'unknown'}")


class TelegramClient:
    """
    Minimal Bot API client for long-polling `getUpdates`.
    The HTTP timeout is the long-poll timeout plus a margin, so the server side
    always answers first.
    """

    def __init__(
        self,
        *,
        token: str,
        base_url: str = "https://api.telegram.org",
        http_timeout_margin_sec: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token.strip()
        self._base_url = (base_url or "https://api.telegram.org").rstrip("/")
        self._margin_sec = max(float(http_timeout_margin_sec), 1.0)
        self._client = httpx.AsyncClient(transport=transport)

    async def get_updates(self, *, offset: int, timeout: int) -> list[TelegramUpdate]:
        payload: dict[str, Any] = {"offset": offset, "timeout": timeout}
        response = await self._client.post(
            self._method_url("getUpdates"),
            json=payload,
            timeout=httpx.Timeout(timeout=timeout + self._margin_sec),
        )
        body = TelegramUpdatesResponse.model_validate_json(response.content)
        if not body.ok:
            raise TelegramAPIError(error_code=body.error_code, description=body.description)
        logger.debug("telegram_get_updates offset=%s count=%s", offset, len(body.result))
        return body.result

    async def aclose(self) -> None:
        await self._client.aclose()

    def _method_url(self, method: str) -> str:
        return f"{self._base_url}/bot{self._token}/{method}"
