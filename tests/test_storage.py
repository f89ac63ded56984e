from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from pool_router.storage import ProxyStateStorage, YamlFileStore


def test_yaml_file_store_round_trips_and_defaults(tmp_path: Path) -> None:
    store = YamlFileStore(tmp_path / "nested" / "data.yaml")

    assert store.load(default={"empty": True}) == {"empty": True}
    store.write({"b": 1, "a": [1, 2]})

    assert store.exists()
    assert store.load() == {"b": 1, "a": [1, 2]}
    assert list(store.path.parent.glob("*.tmp")) == []


def test_yaml_file_store_cleans_up_temp_file_on_failure(tmp_path: Path) -> None:
    store = YamlFileStore(tmp_path / "data.yaml")
    store.write({"ok": True})

    with pytest.raises(yaml.YAMLError):
        store.write({"bad": object()})

    assert store.load() == {"ok": True}
    assert list(tmp_path.glob("*.tmp")) == []


def test_state_storage_persists_aggregate_logs_and_model_cache(tmp_path: Path) -> None:
    storage = ProxyStateStorage(tmp_path / "kiro")

    assert storage.load_aggregate() == {}
    assert storage.load_logs() == []
    assert storage.load_model_cache() == {}

    storage.save_aggregate({"totalRequests": 3})
    storage.save_logs([{"path": "/v1/messages"}, {"path": "/v1/chat/completions"}])
    storage.save_model_cache({"models": ["m1"], "fetchedAt": 12.5})

    reopened = ProxyStateStorage(tmp_path / "kiro")
    assert reopened.load_aggregate() == {"totalRequests": 3}
    assert [item["path"] for item in reopened.load_logs()] == ["/v1/messages", "/v1/chat/completions"]
    assert reopened.load_model_cache() == {"models": ["m1"], "fetchedAt": 12.5}


def test_state_storage_ignores_corrupt_files(tmp_path: Path) -> None:
    directory = tmp_path / "kiro"
    directory.mkdir()
    (directory / "aggregate_stats.yaml").write_text("aggregate: [unclosed", encoding="utf-8")
    (directory / "request_logs.yaml").write_text("logs: not-a-list\n", encoding="utf-8")

    storage = ProxyStateStorage(directory)

    assert storage.load_aggregate() == {}
    assert storage.load_logs() == []
