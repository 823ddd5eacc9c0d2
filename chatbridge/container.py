from __future__ import annotations

from dataclasses import dataclass
from os import getenv

from chatbridge.services.discord_identity import DiscordIdentityTracker
from chatbridge.services.events import EventBus
from chatbridge.services.telegram_client import TelegramClient
from chatbridge.services.update_dispatcher import UpdateDispatcher
from chatbridge.services.user_map import UserMap, UserMapRegistry, default_registry


@dataclass
class ServiceContainer:
    user_map_registry: UserMapRegistry
    discord_users: UserMap
    discord_identity: DiscordIdentityTracker
    telegram_events: EventBus
    telegram_client: TelegramClient | None
    update_dispatcher: UpdateDispatcher | None
    polling_enabled: bool
    poll_timeout_sec: int

    def user_map(self, filename: str | None = None) -> UserMap:
        if filename is None:
            return self.discord_users
        return self.user_map_registry.get_or_create(filename)


def build_container(*, registry: UserMapRegistry | None = None) -> ServiceContainer:
    if registry is None:
        registry = default_registry()
    discord_users = registry.get_or_create(
        users_file_path(),
        debounce_sec=_parse_float(getenv("USER_MAP_DEBOUNCE_SEC"), default=0.5),
    )

    token = (getenv("TELEGRAM_TOKEN") or "").strip()
    polling_enabled = _parse_bool(getenv("TELEGRAM_POLLING_ENABLED"), default=bool(token))
    poll_timeout_sec = _parse_int(getenv("TELEGRAM_POLL_TIMEOUT_SEC"), default=60)
    telegram_events = EventBus()
    telegram_client: TelegramClient | None = None
    update_dispatcher: UpdateDispatcher | None = None
    if token:
        telegram_client = TelegramClient(
            token=token,
            base_url=getenv("TELEGRAM_API_BASE_URL", "https://api.telegram.org"),
            http_timeout_margin_sec=_parse_float(
                getenv("TELEGRAM_HTTP_TIMEOUT_MARGIN_SEC"),
                default=10.0,
            ),
        )
        update_dispatcher = UpdateDispatcher(
            source=telegram_client,
            events=telegram_events,
            timeout_sec=poll_timeout_sec,
            retry_delay_sec=_parse_float(getenv("TELEGRAM_POLL_RETRY_DELAY_SEC"), default=0.0),
        )

    return ServiceContainer(
        user_map_registry=registry,
        discord_users=discord_users,
        discord_identity=DiscordIdentityTracker(discord_users),
        telegram_events=telegram_events,
        telegram_client=telegram_client,
        update_dispatcher=update_dispatcher,
        polling_enabled=polling_enabled and update_dispatcher is not None,
        poll_timeout_sec=poll_timeout_sec,
    )


def users_file_path() -> str:
    return (
        getenv("DISCORD_USERS_FILE", "./data/discord_users.json").strip()
        or "./data/discord_users.json"
    )


def _parse_int(value: str | None, *, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_float(value: str | None, *, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default
