# tests/test_api_song_endpoints.py
import pytest
from fastapi.testclient import TestClient

from songjobs.app import app
from songjobs import app as app_module
from songjobs.config import Settings
from songjobs.errors import ProviderCallError
from songjobs.orchestrator import SongRequestOrchestrator
from songjobs.providers.mock import MockProvider

CALLBACK_URL = "http://testserver/api/song/callback"

SONG_FORM = {
    "songStyle": "Country",
    "specialOccasion": "Anniversary",
    "mood": "Romantic",
    "tempo": "Slow",
    "namesToInclude": "Maya",
    "yourStory": "Ten years since the first dance",
}


@pytest.fixture
def orch(tmp_path, monkeypatch):
    settings = Settings(data_dir=str(tmp_path), callback_url=CALLBACK_URL)
    o = SongRequestOrchestrator(settings, provider=MockProvider(polls_until_complete=3))
    monkeypatch.setattr(app_module, "orchestrator", o)
    return o


@pytest.fixture
def client(orch):
    return TestClient(app)


def complete_callback(job_id, audio="https://cdn/final.mp3"):
    return {
        "code": 200,
        "msg": "All generated successfully.",
        "data": {"callbackType": "complete", "task_id": job_id,
                 "data": [{"id": f"{job_id}-trk", "audio_url": audio}]},
    }


def test_generate_returns_201(client, orch):
    r = client.post("/api/song/generate", json=SONG_FORM)
    assert r.status_code == 201
    j = r.json()
    assert j["status"] == "queued"
    assert j["id"].startswith("song_")
    rec = orch.store.get_by_id(j["id"])
    assert rec.payload["callBackUrl"] == CALLBACK_URL
    assert "Maya" in rec.prompt


def test_generate_alias(client):
    r = client.post("/api/generate", json={"prompt": "A jingle about coffee"})
    assert r.status_code == 201


def test_generate_requires_prompt_or_story(client):
    r = client.post("/api/song/generate", json={"songStyle": "Rock"})
    assert r.status_code == 422


def test_generate_records_dispatch_failure(client, orch):
    orch.provider.generate_errors.append(ProviderCallError("credits", status=200, code=429))
    r = client.post("/api/song/generate", json=SONG_FORM)
    assert r.status_code == 201
    assert r.json()["status"] == "failed"

    s = client.get(f"/api/song/status/{r.json()['id']}")
    body = s.json()
    assert body["status"] == "failed"
    assert body["errorType"] == "INSUFFICIENT_CREDITS"
    assert body["retryable"] is True
    assert "raw" not in body


def test_status_unknown_is_404_and_not_cached(client):
    r = client.get("/api/song/status/song_nope")
    assert r.status_code == 404
    assert r.json()["error_code"] == "E_NOT_FOUND"
    assert r.headers["cache-control"] == "no-store"


def test_full_lifecycle_via_callback(client):
    created = client.post("/api/song/generate", json=SONG_FORM).json()

    s = client.get(f"/api/status/{created['id']}")
    assert s.status_code == 200
    assert s.headers["cache-control"] == "no-store"
    assert s.json()["status"] == "processing"

    cb = client.post("/callback/suno", json=complete_callback("mock-job-1"))
    assert cb.status_code == 200
    assert cb.json() == {"ok": True}

    s = client.get(f"/api/song/status/{created['id']}")
    body = s.json()
    assert body["status"] == "completed"
    assert body["audioUrl"] == "https://cdn/final.mp3"
    assert body["progress"] == 100


def test_callback_always_acknowledged(client):
    for kwargs in ({"content": b"not json"}, {"json": ["a", "list"]}, {"json": complete_callback("unknown-job")}):
        r = client.post("/api/song/callback", **kwargs)
        assert r.status_code == 200
        assert r.json() == {"ok": True}


def test_callback_get_returns_ok(client):
    r = client.get("/api/song/callback")
    assert r.status_code == 200
    assert r.text == "OK"


def test_status_with_job_hint_adopts_job(client, orch):
    job = orch.provider.generate({"prompt": "external"})
    r = client.get("/api/song/status/song_external", params={"jobId": job.job_id})
    assert r.status_code == 200
    assert r.json()["status"] == "processing"
    assert orch.store.get_by_id("song_external").provider_job_id == job.job_id


def test_retry_endpoint(client, orch):
    orch.provider.generate_errors.append(ProviderCallError("gateway timeout", status=504))
    created = client.post("/api/song/generate", json=SONG_FORM).json()
    assert created["status"] == "failed"

    r = client.post(f"/api/song/retry/{created['id']}")
    assert r.status_code == 202
    assert r.json()["status"] == "queued"

    again = client.post(f"/api/song/retry/{created['id']}")
    assert again.status_code == 400
    assert again.json()["error_code"] == "E_NOT_RETRYABLE"

    assert client.post("/api/song/retry/song_nope").status_code == 404


def test_provider_health(client, orch):
    r = client.get("/api/song/provider/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True

    orch.provider.healthy = False
    r = client.get("/api/song/provider/health")
    assert r.status_code == 503
    assert r.json()["provider"] == "mock"


def test_admin_endpoints(client, orch):
    client.post("/api/song/generate", json=SONG_FORM)
    orch.provider.generate_errors.append(ProviderCallError("bad key", status=401, raw={"token": "x"}))
    failed = client.post("/api/song/generate", json=SONG_FORM).json()

    listed = client.get("/api/admin/requests").json()
    assert listed["count"] == 2
    bad = [r for r in listed["requests"] if r["id"] == failed["id"]][0]
    assert bad["providerError"]["type"] == "BAD_API_KEY"
    assert "raw" not in bad["providerError"]

    one = client.get(f"/api/admin/requests/{failed['id']}")
    assert one.status_code == 200
    assert one.json()["record"]["status"] == "failed"
    assert client.get("/api/admin/requests/song_nope").status_code == 404

    stats = client.get("/api/admin/stats").json()
    assert stats["totalRequests"] == 2
    assert stats["statusCounts"]["failed"] == 1

    cleaned = client.post("/api/admin/cleanup", json={"maxAgeSeconds": 0}).json()
    assert cleaned == {"removed": 1, "remaining": 1}


def test_admin_cleanup_without_body_uses_retention(client):
    client.post("/api/song/generate", json=SONG_FORM)
    r = client.post("/api/admin/cleanup")
    assert r.status_code == 200
    assert r.json() == {"removed": 0, "remaining": 1}


def test_cache_endpoints(client):
    created = client.post("/api/song/generate", json=SONG_FORM).json()
    client.get(f"/api/song/status/{created['id']}")

    status = client.get(f"/api/song/cache/status/{created['id']}").json()
    assert status["cached"] is True
    assert status["entry"]["payload"]["id"] == created["id"]

    inv = client.post(f"/api/song/cache/invalidate/{created['id']}").json()
    assert inv == {"id": created["id"], "invalidated": True}
    assert client.get(f"/api/song/cache/status/{created['id']}").json()["cached"] is False


def test_unexpected_errors_become_500(client, orch, monkeypatch):
    def boom(request_id, job_id_hint=None):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(orch, "get_status", boom)
    r = client.get("/api/song/status/song_any")
    assert r.status_code == 500
    assert r.json()["error_code"] == "E_INTERNAL"


def test_debug_status_endpoint(client):
    created = client.post("/api/song/generate", json=SONG_FORM).json()
    r = client.get(f"/api/song/debug/status/{created['id']}")
    assert r.status_code == 200
    body = r.json()
    assert body["stored"]["status"] == "queued"
    assert body["provider"]["status"] == "processing"
    assert client.get("/api/song/debug/status/song_nope").status_code == 404


def test_lifespan_shutdown_flushes_orchestrator(orch, monkeypatch):
    calls = []
    monkeypatch.setattr(orch, "shutdown", lambda: calls.append("shutdown"))
    with TestClient(app) as c:
        assert c.get("/health").status_code == 200
        assert calls == []
    assert calls == ["shutdown"]
