from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from typing import Any

from chatbridge.services.write_serializer import DebouncedWriter

logger = logging.getLogger(__name__)

_DEFAULT_DEBOUNCE_SEC = 0.5
_REGISTRY_TOKEN = object()


class UserMapConstructionError(RuntimeError):
    """Raised when a UserMap is built without going through a registry."""


class UserMap:
    """
    Bidirectional mapping between user IDs and usernames, backed by a JSON file.
    `id_to_name` is what gets persisted; `name_to_id` is a lowercase index rebuilt
    on load. Obtain instances through `get_instance` or `UserMapRegistry`.
    """

    def __init__(
        self,
        filename: str,
        *,
        debounce_sec: float = _DEFAULT_DEBOUNCE_SEC,
        _token: object | None = None,
    ) -> None:
        if _token is not _REGISTRY_TOKEN:
            raise UserMapConstructionError(
                "Not authorized to create a UserMap. Use get_instance() or a UserMapRegistry."
            )
        self._filename = filename
        self._lock = threading.RLock()
        self._id_to_name: dict[str, str] = self._load_from_disk()
        self._name_to_id: dict[str, str] = {
            name.lower(): user_id for user_id, name in self._id_to_name.items()
        }
        self._writer = DebouncedWriter(
            self._write_payload_atomic,
            self._snapshot,
            delay_sec=debounce_sec,
            name=f"user_map:{os.path.basename(filename)}",
        )

    @property
    def filename(self) -> str:
        return self._filename

    @property
    def writer(self) -> DebouncedWriter:
        return self._writer

    @property
    def id_to_name_map(self) -> dict[str, str]:
        return self._snapshot()

    @property
    def name_to_id_map(self) -> dict[str, str]:
        with self._lock:
            return dict(self._name_to_id)

    def map_name_to_id(self, name: str, user_id: str) -> bool:
        """Map a username to an ID. Returns True when the mapping changed."""
        with self._lock:
            if self._name_to_id.get(name.lower()) == user_id and self._id_to_name.get(user_id) == name:
                return False
            self._assign(user_id=user_id, name=name)
            return True

    def map_id_to_name(self, user_id: str, name: str) -> bool:
        """Map an ID to a username. Returns True when the mapping changed."""
        with self._lock:
            if self._id_to_name.get(user_id) == name and self._name_to_id.get(name.lower()) == user_id:
                return False
            self._assign(user_id=user_id, name=name)
            return True

    def lookup_id(self, user_id: str) -> str | None:
        return self._id_to_name.get(user_id)

    def lookup_name(self, name: str) -> str | None:
        return self._name_to_id.get(name.lower())

    async def flush(self) -> None:
        await self._writer.flush()

    def persistence_diagnostics(self) -> dict[str, Any]:
        return {
            "filename": self._filename,
            "entries": len(self._id_to_name),
            "write_count": self._writer.write_count,
            "write_pending": self._writer.pending,
            "last_write_ok": self._writer.last_write_ok,
            "last_write_error": self._writer.last_write_error,
        }

    def _snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._id_to_name)

    def _assign(self, *, user_id: str, name: str) -> None:
        key = name.lower()
        previous_name = self._id_to_name.get(user_id)
        if previous_name is not None:
            previous_key = previous_name.lower()
            if previous_key != key and self._name_to_id.get(previous_key) == user_id:
                del self._name_to_id[previous_key]
        previous_owner = self._name_to_id.get(key)
        if previous_owner is not None and previous_owner != user_id:
            # The name moved to another account; the old association is stale.
            self._id_to_name.pop(previous_owner, None)
        self._id_to_name[user_id] = name
        self._name_to_id[key] = user_id
        self._writer.request()

    def _load_from_disk(self) -> dict[str, str]:
        if not os.path.exists(self._filename):
            directory = os.path.dirname(self._filename)
            if directory:
                os.makedirs(directory, exist_ok=True)
            with open(self._filename, "w", encoding="utf-8") as fh:
                json.dump({}, fh)

        with open(self._filename, "rb") as fh:
            raw = fh.read()
        try:
            payload: Any = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning(
                "user_map_invalid_json path=%s content=%r starting_empty=true",
                self._filename,
                raw[:200],
            )
            return {}
        if not isinstance(payload, dict):
            logger.warning(
                "user_map_invalid_payload path=%s type=%s starting_empty=true",
                self._filename,
                type(payload).__name__,
            )
            return {}

        data: dict[str, str] = {}
        for user_id, name in payload.items():
            if not isinstance(name, str):
                logger.warning(
                    "user_map_entry_skipped path=%s user_id=%s type=%s",
                    self._filename,
                    user_id,
                    type(name).__name__,
                )
                continue
            data[str(user_id)] = name
        return data

    def _write_payload_atomic(self, payload: dict[str, str]) -> None:
        directory = os.path.dirname(self._filename) or "."
        os.makedirs(directory, exist_ok=True)

        temp_fd, temp_path = tempfile.mkstemp(
            prefix=".user_map_",
            suffix=".tmp",
            dir=directory,
            text=True,
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, ensure_ascii=False, indent="\t")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(temp_path, self._filename)
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass


class UserMapRegistry:
    """Hands out exactly one UserMap per backing filename."""

    def __init__(self, *, debounce_sec: float = _DEFAULT_DEBOUNCE_SEC) -> None:
        self._debounce_sec = debounce_sec
        self._instances: dict[str, UserMap] = {}
        self._lock = threading.Lock()

    def get_or_create(self, filename: str, *, debounce_sec: float | None = None) -> UserMap:
        """`debounce_sec` only applies when this call creates the instance."""
        with self._lock:
            instance = self._instances.get(filename)
            if instance is None:
                instance = UserMap(
                    filename,
                    debounce_sec=self._debounce_sec if debounce_sec is None else debounce_sec,
                    _token=_REGISTRY_TOKEN,
                )
                self._instances[filename] = instance
                logger.info(
                    "user_map_loaded path=%s entries=%s",
                    filename,
                    len(instance.id_to_name_map),
                )
            return instance

    def instances(self) -> list[UserMap]:
        with self._lock:
            return list(self._instances.values())

    def __contains__(self, filename: object) -> bool:
        return filename in self._instances


_default_registry = UserMapRegistry()


def get_instance(filename: str) -> UserMap:
    return _default_registry.get_or_create(filename)


def default_registry() -> UserMapRegistry:
    return _default_registry
