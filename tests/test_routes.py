import asyncio

import pytest
from fastapi.testclient import TestClient

from diagram_gen.dependencies import Services, get_services
from diagram_gen.main import app
from diagram_gen.recording import CapturedAudio
from diagram_gen.routes import recording as recording_routes
from diagram_gen.services.recognizers import RecognitionResult
from helpers import (
    GOOD_FLOWCHART,
    FakeBackend,
    FakeRecognizer,
    build_pipeline,
    canonical_wav,
    make_settings,
    make_store,
    mermaid_reply,
)


@pytest.fixture
def services(tmp_path):
    settings = make_settings(tmp_path)
    store = make_store(tmp_path)
    pipeline = build_pipeline(
        settings,
        store,
        FakeBackend(mermaid_reply(GOOD_FLOWCHART)),
        FakeRecognizer(RecognitionResult.recognized("the user signs up", 0.9)),
    )
    container = Services(
        settings=settings, store=store, transcriber=pipeline.transcriber, pipeline=pipeline
    )
    app.dependency_overrides[get_services] = lambda: container
    yield container
    app.dependency_overrides.clear()


@pytest.fixture
def client(services):
    return TestClient(app)


class FakeWorker:
    fail_on_start = False

    def __init__(self, max_duration_seconds=300.0, settings=None) -> None:
        self.stopped = False

    def start(self) -> None:
        if self.fail_on_start:
            raise RuntimeError("no input device")

    def stop(self) -> None:
        self.stopped = True

    async def capture(self) -> CapturedAudio:
        while not self.stopped:
            await asyncio.sleep(0.01)
        return CapturedAudio(data=canonical_wav(0.2), duration_ms=200)

    @property
    def is_running(self) -> bool:
        return not self.stopped

    @property
    def total_duration_seconds(self) -> float:
        return 1.234


def test_create_and_fetch_text_unit(client) -> None:
    created = client.post("/api/units/text", json={"content": "User logs in", "timestamp_ms": 10})
    assert created.status_code == 200
    unit = created.json()
    assert unit["kind"] == "text"
    assert unit["timestamp_ms"] == 10

    fetched = client.get(f"/api/units/{unit['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["content"] == "User logs in"


def test_empty_text_is_rejected(client) -> None:
    response = client.post("/api/units/text", json={"content": ""})
    assert response.status_code == 422


def test_unknown_unit_returns_404(client) -> None:
    response = client.get("/api/units/nope")
    assert response.status_code == 404
    assert "nope" in response.json()["detail"]


def test_audio_upload_measures_duration_and_hides_bytes(client) -> None:
    response = client.post(
        "/api/units/audio",
        files={"file": ("clip.wav", canonical_wav(1.0), "audio/wav")},
    )

    assert response.status_code == 200
    unit = response.json()
    assert unit["duration_ms"] == 1000
    assert unit["has_audio"] is True
    assert "raw_bytes" not in unit
    assert unit["transcription_status"] == "pending"


def test_empty_audio_upload_is_rejected(client) -> None:
    response = client.post("/api/units/audio", files={"file": ("clip.wav", b"", "audio/wav")})
    assert response.status_code == 400


def test_list_units_skips_cache_records(client, services) -> None:
    client.post("/api/units/text", json={"content": "a"})
    client.post("/api/units/image", json={"caption": "b"})
    asyncio.run(services.store.put("cache:x", {"kind": "diagram_cache"}))

    units = client.get("/api/units").json()

    assert sorted(u["kind"] for u in units) == ["image", "text"]
    assert client.get("/api/units/cache:x").status_code == 404


def test_transcriptions_report_counts(client) -> None:
    client.post("/api/units/audio", files={"file": ("clip.wav", canonical_wav(0.5), "audio/wav")})

    response = client.post("/api/transcriptions")

    assert response.status_code == 200
    assert response.json() == {"processed": 1, "recognized": 1, "failed": 0}
    unit = client.get("/api/units").json()[0]
    assert unit["transcript"] == "the user signs up"


def test_diagram_from_stored_units(client) -> None:
    client.post("/api/units/text", json={"content": "User logs in then pays"})

    response = client.post("/api/diagrams", json={"direction": "LR"})

    assert response.status_code == 200
    body = response.json()
    assert body["markup_code"] == GOOD_FLOWCHART
    assert body["metadata"]["tokens_used"] == 120
    assert body["from_cache"] is False
    assert client.get("/api/pipeline/state").json() == {"phase": "ready", "error": None}

    again = client.post("/api/diagrams", json={"direction": "LR"})
    assert again.json()["from_cache"] is True


def test_diagram_without_content_is_422(client) -> None:
    response = client.post("/api/diagrams")

    assert response.status_code == 422
    assert "No content available" in response.json()["detail"]
    assert client.get("/api/pipeline/state").json()["phase"] == "failed"


def test_invalid_options_are_rejected(client) -> None:
    response = client.post("/api/diagrams", json={"direction": "sideways"})
    assert response.status_code == 422


def test_websocket_sends_current_state(client) -> None:
    with client.websocket_connect("/ws/pipeline") as ws:
        message = ws.receive_json()

    assert message == {"type": "pipeline_state", "phase": "idle", "error": None}


def test_recording_start_and_stop(client, monkeypatch) -> None:
    monkeypatch.setattr(recording_routes, "RecordingWorker", FakeWorker)
    monkeypatch.setattr(recording_routes, "_active", {})

    started = client.post("/api/recording/start")
    assert started.status_code == 200
    assert started.json() == {"status": "recording"}

    assert client.post("/api/recording/start").status_code == 409

    stopped = client.post("/api/recording/stop")
    assert stopped.status_code == 200
    assert stopped.json() == {"status": "stopped", "duration_seconds": 1.23}

    assert client.post("/api/recording/stop").status_code == 400


def test_recording_reports_missing_microphone(client, monkeypatch) -> None:
    monkeypatch.setattr(FakeWorker, "fail_on_start", True)
    monkeypatch.setattr(recording_routes, "RecordingWorker", FakeWorker)
    monkeypatch.setattr(recording_routes, "_active", {})

    response = client.post("/api/recording/start")

    assert response.status_code == 500
    assert "no input device" in response.json()["detail"]
