from __future__ import annotations

import logging
from collections.abc import Iterable

from chatbridge.services.user_map import UserMap

logger = logging.getLogger(__name__)


class DiscordIdentityTracker:
    """Keeps the Discord user map current from client events."""

    def __init__(self, user_map: UserMap) -> None:
        self._user_map = user_map

    def on_ready(self, users: Iterable[tuple[str, str | None]]) -> int:
        changed = 0
        for user_id, username in users:
            if not user_id or not username:
                continue
            if self._user_map.map_id_to_name(str(user_id), username):
                changed += 1
        logger.info(
            "discord_ready_users_mapped path=%s changed=%s",
            self._user_map.filename,
            changed,
        )
        return changed

    def on_presence_update(self, *, user_id: str, username: str) -> bool:
        return self._remember(user_id=user_id, username=username)

    def on_message(self, *, author_id: str, username: str) -> bool:
        return self._remember(user_id=author_id, username=username)

    def display_name(self, user_id: str) -> str | None:
        return self._user_map.lookup_id(user_id)

    def resolve_mention(self, mention: str) -> str | None:
        name = mention.strip().removeprefix("@")
        if not name:
            return None
        return self._user_map.lookup_name(name)

    def _remember(self, *, user_id: str, username: str) -> bool:
        if not user_id or not username:
            return False
        return self._user_map.map_id_to_name(str(user_id), username)
