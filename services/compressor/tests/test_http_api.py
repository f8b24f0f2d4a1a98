from fastapi.testclient import TestClient

from services.compressor.main import app, scheduler
from services.compressor.schemas import SchedulerState

client = TestClient(app)


def test_health():
    assert client.get("/healthz").json() == {"status": "ok"}


def test_cycle_endpoint_runs_one_cycle():
    before = scheduler.cycles_completed
    response = client.post("/cycles")
    assert response.status_code == 200
    body = response.json()
    assert body["kind"] == "cycle"
    assert body["ended_at"] is not None
    assert scheduler.cycles_completed == before + 1

    status = client.get("/status").json()
    assert status["state"] == "idle"
    assert status["cycles_completed"] == before + 1

    sessions = client.get("/sessions", params={"limit": 5}).json()
    assert sessions[0]["id"] == body["id"]


def test_busy_scheduler_returns_conflict():
    scheduler.state = SchedulerState.VALIDATING
    try:
        assert client.post("/cycles").status_code == 409
        assert client.post("/ceremony").status_code == 409
    finally:
        scheduler.state = SchedulerState.IDLE


def test_submission_then_ceremony():
    response = client.post("/submissions", json={"original": "therefore", "compressed": "∴", "name": "ada"})
    assert response.status_code == 201
    assert response.json()["status"] == "queued"

    summary = client.post("/ceremony").json()
    assert summary["human_wins"] >= 1

    codex = client.get("/codex", params={"limit": 50}).json()
    entry = next(e for e in codex if e["original"] == "therefore")
    assert entry["compressed"] == "∴"
    assert entry["source"] == "Human: ada"


def test_submission_validation_errors():
    assert client.post("/submissions", json={"original": "however"}).status_code == 422
    assert client.post("/submissions", json={"original": " ", "compressed": "λ", "name": "ada"}).status_code == 400


def test_patterns_and_events():
    client.post("/cycles")
    patterns = client.get("/patterns").json()
    assert patterns
    assert {"pattern_type", "attempt_count", "success_count", "total_savings", "best_examples"} <= set(patterns[0])

    events = client.get("/events", params={"limit": 3}).json()
    assert 0 < len(events) <= 3
    assert events[-1]["kind"] == "cycle_complete"


def test_pause_and_resume():
    assert client.post("/scheduler/pause").json() == {"paused": True}
    assert client.get("/status").json()["paused"] is True
    assert client.post("/scheduler/resume").json() == {"paused": False}
