from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from pathlib import Path

import pytest

from chatbridge.services import user_map as user_map_module
from chatbridge.services.user_map import (
    UserMap,
    UserMapConstructionError,
    UserMapRegistry,
    get_instance,
)


def _registry(debounce_sec: float = 0.02) -> UserMapRegistry:
    return UserMapRegistry(debounce_sec=debounce_sec)


def test_direct_construction_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(UserMapConstructionError):
        UserMap(str(tmp_path / "users.json"))

    assert not (tmp_path / "users.json").exists()


def test_registry_returns_single_instance_per_filename(tmp_path: Path) -> None:
    registry = _registry()
    first = registry.get_or_create(str(tmp_path / "a.json"))
    again = registry.get_or_create(str(tmp_path / "a.json"))
    other = registry.get_or_create(str(tmp_path / "b.json"))

    assert first is again
    assert first is not other
    assert str(tmp_path / "a.json") in registry
    assert len(registry.instances()) == 2


def test_module_get_instance_uses_default_registry(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(user_map_module, "_default_registry", UserMapRegistry())
    path = str(tmp_path / "default.json")

    assert get_instance(path) is get_instance(path)


def test_missing_file_is_created_empty(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "users.json"
    user_map = _registry().get_or_create(str(path))

    assert path.exists()
    assert json.loads(path.read_text(encoding="utf-8")) == {}
    assert user_map.id_to_name_map == {}
    assert user_map.filename == str(path)


def test_corrupt_file_starts_empty_with_warning(tmp_path: Path, caplog) -> None:  # type: ignore[no-untyped-def]
    caplog.set_level(logging.WARNING)
    path = tmp_path / "users.json"
    path.write_text("not json", encoding="utf-8")

    user_map = _registry().get_or_create(str(path))

    assert user_map.id_to_name_map == {}
    assert user_map.lookup_name("anyone") is None
    assert any("user_map_invalid_json" in item.message for item in caplog.records)


def test_non_object_json_starts_empty_with_warning(tmp_path: Path, caplog) -> None:  # type: ignore[no-untyped-def]
    caplog.set_level(logging.WARNING)
    path = tmp_path / "users.json"
    path.write_text("[1, 2, 3]", encoding="utf-8")

    user_map = _registry().get_or_create(str(path))

    assert user_map.id_to_name_map == {}
    assert any("user_map_invalid_payload" in item.message for item in caplog.records)


def test_unreadable_file_is_fatal_and_not_registered(tmp_path: Path) -> None:
    registry = _registry()
    directory = tmp_path / "users.json"
    directory.mkdir()

    with pytest.raises(OSError):
        registry.get_or_create(str(directory))

    assert str(directory) not in registry


def test_load_builds_case_insensitive_index(tmp_path: Path) -> None:
    path = tmp_path / "users.json"
    path.write_text(json.dumps({"111": "Alice", "222": "BoB"}), encoding="utf-8")

    user_map = _registry().get_or_create(str(path))

    assert user_map.lookup_id("111") == "Alice"
    assert user_map.lookup_name("alice") == "111"
    assert user_map.lookup_name("ALICE") == "111"
    assert user_map.lookup_name("bob") == "222"
    assert user_map.name_to_id_map == {"alice": "111", "bob": "222"}


def test_repeated_mapping_requests_a_single_persist(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    user_map = _registry().get_or_create(str(tmp_path / "users.json"))
    requests: list[int] = []
    monkeypatch.setattr(user_map.writer, "request", lambda: requests.append(1))

    assert user_map.map_name_to_id("Suppen", "42") is True
    assert user_map.map_name_to_id("Suppen", "42") is False
    assert user_map.map_id_to_name("42", "Suppen") is False

    assert len(requests) == 1


def test_both_entry_points_keep_maps_consistent(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    user_map = _registry().get_or_create(str(tmp_path / "users.json"))
    monkeypatch.setattr(user_map.writer, "request", lambda: None)

    user_map.map_id_to_name("1", "Alpha")
    user_map.map_name_to_id("Beta", "2")
    user_map.map_id_to_name("1", "AlphaRenamed")
    user_map.map_name_to_id("beta", "3")

    assert user_map.lookup_name("alpha") is None
    assert user_map.lookup_name("alpharenamed") == "1"
    assert user_map.lookup_name("BETA") == "3"
    assert user_map.lookup_id("2") is None
    for user_id, name in user_map.id_to_name_map.items():
        assert user_map.lookup_name(name) == user_id
        assert user_map.lookup_id(user_map.lookup_name(name) or "") == name


def test_snapshots_are_copies(tmp_path: Path, monkeypatch) -> None:  # type: ignore[no-untyped-def]
    user_map = _registry().get_or_create(str(tmp_path / "users.json"))
    monkeypatch.setattr(user_map.writer, "request", lambda: None)
    user_map.map_id_to_name("1", "Alpha")

    snapshot = user_map.id_to_name_map
    snapshot["2"] = "Injected"
    index = user_map.name_to_id_map
    index.clear()

    assert user_map.lookup_id("2") is None
    assert user_map.lookup_name("alpha") == "1"


def test_round_trip_through_disk(tmp_path: Path) -> None:
    path = tmp_path / "users.json"
    expected = {str(1000 + index): f"User{index}" for index in range(25)}
    expected["2000"] = "Ærlig Øystein"

    async def _scenario() -> None:
        user_map = _registry().get_or_create(str(path))
        for user_id, name in expected.items():
            user_map.map_id_to_name(user_id, name)
        await asyncio.sleep(0.05)
        await user_map.flush()
        assert user_map.writer.write_count == 1

    asyncio.run(_scenario())

    raw = path.read_text(encoding="utf-8")
    assert '\n\t"1000": "User0"' in raw
    assert "Ærlig Øystein" in raw
    restored = _registry().get_or_create(str(path))
    assert restored.id_to_name_map == expected
    assert restored.lookup_name("user7") == "1007"


def test_burst_of_mutations_collapses_into_one_write(tmp_path: Path) -> None:
    path = tmp_path / "users.json"

    async def _scenario() -> None:
        user_map = _registry(debounce_sec=0.5).get_or_create(str(path))
        for index in range(10):
            user_map.map_id_to_name(str(index), f"name{index}")
            await asyncio.sleep(0.01)
        assert user_map.writer.write_count == 0
        assert user_map.writer.pending is True
        await asyncio.sleep(0.7)
        assert user_map.writer.pending is False
        await user_map.flush()
        assert user_map.writer.write_count == 1

    asyncio.run(_scenario())

    assert json.loads(path.read_text(encoding="utf-8")) == {
        str(index): f"name{index}" for index in range(10)
    }


def test_write_failure_keeps_memory_state_and_recovers(tmp_path: Path, monkeypatch, caplog) -> None:  # type: ignore[no-untyped-def]
    caplog.set_level(logging.WARNING)
    path = tmp_path / "users.json"
    real_replace = os.replace
    calls = {"count": 0}

    def _flaky_replace(src: str, dst: str) -> None:
        calls["count"] += 1
        if calls["count"] == 1:
            raise PermissionError("disk says no")
        real_replace(src, dst)

    monkeypatch.setattr("chatbridge.services.user_map.os.replace", _flaky_replace)

    async def _scenario() -> None:
        user_map = _registry().get_or_create(str(path))
        user_map.map_id_to_name("1", "First")
        await user_map.flush()
        assert user_map.writer.last_write_ok is False
        assert user_map.lookup_id("1") == "First"
        diagnostics = user_map.persistence_diagnostics()
        assert diagnostics["last_write_error"] == "disk says no"

        user_map.map_id_to_name("2", "Second")
        await user_map.flush()
        assert user_map.writer.last_write_ok is True

    asyncio.run(_scenario())

    assert json.loads(path.read_text(encoding="utf-8")) == {"1": "First", "2": "Second"}
    assert any("debounced_write_failed" in item.message for item in caplog.records)
    assert not list(tmp_path.glob(".user_map_*.tmp"))


def test_mutations_from_many_threads_persist_the_final_state(tmp_path: Path) -> None:
    path = tmp_path / "users.json"
    user_map = _registry(debounce_sec=0.001).get_or_create(str(path))

    def _mutate(worker: int) -> None:
        for index in range(200):
            user_map.map_id_to_name(f"{worker}-{index}", f"user-{worker}-{index}")

    threads = [threading.Thread(target=_mutate, args=(worker,)) for worker in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    asyncio.run(user_map.flush())

    assert user_map.writer.last_write_ok is True
    assert len(user_map.id_to_name_map) == 800
    assert json.loads(path.read_text(encoding="utf-8")) == user_map.id_to_name_map
    for user_id, name in user_map.id_to_name_map.items():
        assert user_map.lookup_name(name) == user_id
