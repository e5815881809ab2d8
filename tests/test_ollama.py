import json
from datetime import datetime, timedelta, timezone

import pytest
import requests
import responses
from responses import matchers

from aistack.models.ollama import OLLAMA_API_BASE, OllamaManager
from aistack.models.types import ModelError, ModelInfo, Provider

TAGS_URL = f"{OLLAMA_API_BASE}/api/tags"
PULL_URL = f"{OLLAMA_API_BASE}/api/pull"
DELETE_URL = f"{OLLAMA_API_BASE}/api/delete"


@pytest.fixture
def api():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as rsps:
        yield rsps


@pytest.fixture
def manager(tmp_path):
    return OllamaManager(tmp_path)


def _tags(*models):
    return {"models": [{"name": n, "modified_at": m, "size": s} for n, m, s in models]}


def _lines(*objects):
    return "\n".join(o if isinstance(o, str) else json.dumps(o) for o in objects) + "\n"


def test_list_parses_models(api, manager):
    api.add(
        responses.GET,
        TAGS_URL,
        json=_tags(("llama3", "2024-05-01T12:00:00Z", 1024), ("phi", "2024-04-01T08:30:00Z", 2048)),
    )
    models = manager.list()
    assert [m.name for m in models] == ["llama3", "phi"]
    assert [m.size for m in models] == [1024, 2048]
    assert all(m.path == "" for m in models)
    assert models[0].last_used == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)


def test_list_without_models_key_is_empty(api, manager):
    api.add(responses.GET, TAGS_URL, json={})
    assert manager.list() == []


def test_list_non_200_raises(api, manager):
    api.add(responses.GET, TAGS_URL, status=500)
    with pytest.raises(ModelError, match="ollama API returned status 500"):
        manager.list()


def test_list_invalid_json_raises(api, manager):
    api.add(responses.GET, TAGS_URL, body="not json")
    with pytest.raises(ModelError, match="failed to decode response"):
        manager.list()


def test_list_connection_error_raises(api, manager):
    api.add(responses.GET, TAGS_URL, body=requests.ConnectionError("refused"))
    with pytest.raises(ModelError, match="failed to list models"):
        manager.list()


def test_download_emits_events_and_records_state(api, manager):
    body = _lines(
        {"status": "pulling manifest"},
        {"status": "downloading", "completed": 1, "total": 4},
        "this is not json",
        {"status": "success"},
    )
    api.add(responses.POST, PULL_URL, body=body)
    api.add(responses.GET, TAGS_URL, json=_tags(("llama3", "2024-05-01T12:00:00Z", 1024)))

    events = []
    before = datetime.now(timezone.utc)
    manager.download("llama3", events.append)

    assert [e.status for e in events] == ["started", "progress", "progress", "progress", "completed"]
    assert events[2].percentage == 25.0
    assert events[2].bytes_downloaded == 1
    assert events[-1].percentage == 100
    assert all(e.model_name == "llama3" for e in events)
    assert json.loads(api.calls[0].request.body) == {"name": "llama3"}

    state = manager.state_manager.load()
    assert [item.name for item in state.items] == ["llama3"]
    assert state.items[0].size == 1024
    assert state.items[0].last_used >= before - timedelta(seconds=1)


def test_download_without_callback_records_state(api, manager):
    api.add(responses.POST, PULL_URL, body=_lines({"status": "success"}))
    api.add(responses.GET, TAGS_URL, json=_tags(("phi", "2024-05-01T12:00:00Z", 77)))
    manager.download("phi")
    assert [item.name for item in manager.state_manager.load().items] == ["phi"]


def test_download_error_line_fails(api, manager):
    message = "pull model manifest: file does not exist"
    api.add(
        responses.POST,
        PULL_URL,
        body=_lines({"status": "pulling manifest"}, {"error": message}),
    )
    events = []
    with pytest.raises(ModelError, match="download failed: pull model manifest"):
        manager.download("missing", events.append)
    assert [e.status for e in events] == ["started", "progress", "progress", "failed"]
    assert events[-1].error == message
    assert manager.state_manager.load().items == []


def test_download_connection_error(api, manager):
    api.add(responses.POST, PULL_URL, body=requests.ConnectionError("refused"))
    events = []
    with pytest.raises(ModelError, match="failed to pull model"):
        manager.download("llama3", events.append)
    assert [e.status for e in events] == ["started", "failed"]
    assert "refused" in events[-1].error


def test_download_non_200_raises(api, manager):
    api.add(responses.POST, PULL_URL, status=404)
    events = []
    with pytest.raises(ModelError, match="ollama API returned status 404"):
        manager.download("llama3", events.append)
    assert [e.status for e in events] == ["started"]
    assert manager.state_manager.load().items == []


def test_download_succeeds_when_listing_fails(api, manager):
    api.add(responses.POST, PULL_URL, body=_lines({"status": "success"}))
    api.add(responses.GET, TAGS_URL, status=500)
    events = []
    manager.download("llama3", events.append)
    assert events[-1].status == "completed"
    assert manager.state_manager.load().items == []


def test_delete_removes_state_entry(api, manager):
    manager.state_manager.add_model(ModelInfo(name="llama3", size=10))
    manager.state_manager.add_model(ModelInfo(name="phi", size=20))
    api.add(
        responses.DELETE,
        DELETE_URL,
        match=[matchers.json_params_matcher({"name": "llama3"})],
    )
    manager.delete("llama3")
    assert [item.name for item in manager.state_manager.load().items] == ["phi"]
    assert api.calls[-1].request.headers["Content-Type"] == "application/json"


def test_delete_error_includes_body(api, manager):
    manager.state_manager.add_model(ModelInfo(name="llama3", size=10))
    api.add(responses.DELETE, DELETE_URL, status=404, body="model not found")
    with pytest.raises(ModelError, match="ollama API returned status 404: model not found"):
        manager.delete("llama3")
    assert [item.name for item in manager.state_manager.load().items] == ["llama3"]


def test_sync_state_preserves_recorded_last_used(api, manager):
    recorded = datetime(2020, 1, 1, tzinfo=timezone.utc)
    manager.state_manager.add_model(ModelInfo(name="a", size=1, last_used=recorded))
    manager.state_manager.add_model(ModelInfo(name="stale", size=1, last_used=recorded))
    api.add(
        responses.GET,
        TAGS_URL,
        json=_tags(("a", "2024-05-01T12:00:00Z", 5), ("b", "2024-06-01T12:00:00Z", 7)),
    )
    manager.sync_state()
    items = {item.name: item for item in manager.state_manager.load().items}
    assert set(items) == {"a", "b"}
    assert items["a"].last_used == recorded
    assert items["a"].size == 5
    assert items["b"].last_used == datetime(2024, 6, 1, 12, tzinfo=timezone.utc)


def test_get_stats_after_sync(api, manager):
    api.add(
        responses.GET,
        TAGS_URL,
        json=_tags(("a", "2024-05-01T12:00:00Z", 100), ("b", "2024-03-01T12:00:00Z", 200)),
    )
    stats = manager.get_stats()
    assert stats.provider == Provider.OLLAMA
    assert stats.model_count == 2
    assert stats.total_size == 300
    assert stats.oldest_model.name == "b"


def test_get_stats_when_api_unavailable(api, manager):
    manager.state_manager.add_model(ModelInfo(name="cached", size=42))
    api.add(responses.GET, TAGS_URL, status=500)
    stats = manager.get_stats()
    assert stats.model_count == 1
    assert stats.total_size == 42
    assert stats.oldest_model.name == "cached"


def test_evict_oldest_deletes_least_recently_used(api, manager):
    api.add(
        responses.GET,
        TAGS_URL,
        json=_tags(("new", "2024-05-01T12:00:00Z", 1), ("old", "2023-01-01T12:00:00Z", 3)),
    )
    api.add(
        responses.DELETE,
        DELETE_URL,
        match=[matchers.json_params_matcher({"name": "old"})],
    )
    evicted = manager.evict_oldest()
    assert evicted.name == "old"
    assert evicted.size == 3
    assert [item.name for item in manager.state_manager.load().items] == ["new"]


def test_evict_oldest_without_models(api, manager):
    api.add(responses.GET, TAGS_URL, json={"models": []})
    with pytest.raises(ModelError, match="no models to evict"):
        manager.evict_oldest()


def test_evict_oldest_reports_delete_failure(api, manager):
    api.add(responses.GET, TAGS_URL, json=_tags(("only", "2024-05-01T12:00:00Z", 1)))
    api.add(responses.DELETE, DELETE_URL, status=500, body="boom")
    with pytest.raises(ModelError, match="failed to delete oldest model"):
        manager.evict_oldest()