from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TelegramUpdate(BaseModel):
    model_config = ConfigDict(extra="allow")

    update_id: int
    message: dict[str, Any] | None = None

    def raw(self) -> dict[str, Any]:
        payload = self.model_dump()
        if payload.get("message") is None:
            payload.pop("message", None)
        return payload


class TelegramUpdatesResponse(BaseModel):
    ok: bool
    result: list[TelegramUpdate] = Field(default_factory=list)
    error_code: int | None = None
    description: str | None = None


class UserMapSnapshotResponse(BaseModel):
    filename: str
    id_to_name: dict[str, str]
    name_to_id: dict[str, str]


class UserLookupResponse(BaseModel):
    user_id: str
    username: str


class DispatcherStatus(BaseModel):
    enabled: bool
    running: bool = False
    offset: int = 0
    processed_count: int = 0
    failure_count: int = 0
    last_error: str | None = None
