import threading
from pathlib import Path

from fastapi.testclient import TestClient

import api.main as api_main
from cpe.core.config import Settings
from cpe.core.plugins import PluginRegistry, TickResult
from cpe.examples.scenarios import news_site_request, telemetry_examples
from cpe.ps.runner import PlanningRunner
from cpe.sm.manager import StateManager
from cpe.ws.workspace import WorkspaceView


def _client(tmp_path: Path) -> TestClient:
    sm = StateManager(f"sqlite:///{tmp_path / 'api.db'}")
    return TestClient(api_main.build_app(state_manager=sm))


def test_api_plan_flow(tmp_path: Path) -> None:
    client = _client(tmp_path)
    for raw in telemetry_examples():
        assert client.post("/telemetry", json=raw).status_code == 200

    response = client.post("/plans", json=news_site_request())
    assert response.status_code == 200
    body = response.json()
    assert body["status"] in ("ready", "partial")
    assert body["plan"][0]["target"] == body["decision"]["selected"]["target"]
    assert body["pareto_frontier"]
    assert "cost-estimator" in body["plugin_states"]
    assert body["scorecards"]["https://news.example/world/"]["cost_known"] is True

    events = client.get(f"/plans/{body['session_id']}/events")
    assert events.status_code == 200
    assert events.headers["content-type"].startswith("text/event-stream")
    assert "event: session.started" in events.text
    assert "event: decision.finalized" in events.text

    decisions = client.get("/decisions", params={"session_id": body["session_id"]})
    assert [item["decision_id"] for item in decisions.json()["items"]] == [body["decision"]["decision_id"]]


def test_api_event_replay_honours_since(tmp_path: Path) -> None:
    client = _client(tmp_path)
    body = client.post("/plans", json=news_site_request()).json()

    full = client.get(f"/plans/{body['session_id']}/events").text
    tail = client.get(f"/plans/{body['session_id']}/events", params={"since": 1}).text

    assert "event: session.started" in full
    assert "event: session.started" not in tail
    assert "event: session.completed" in tail


def test_api_rejects_invalid_requests(tmp_path: Path) -> None:
    client = _client(tmp_path)

    assert client.post("/plans", json={"context_key": "k"}).status_code == 422
    assert client.get("/plans/unknown-session/events").status_code == 404
    assert client.post("/outcomes", json={"arm_key": "hub:fetch", "reward": 1.5}).status_code == 422
    assert client.post("/telemetry", json={"operation": "fetch", "host": "a.example", "duration_ms": -1}).status_code == 422


def test_api_reports_no_actionable_candidates(tmp_path: Path) -> None:
    client = _client(tmp_path)

    response = client.post(
        "/plans",
        json={"context_key": "k", "candidates": [{"target": "ftp://k.example/"}, {"target": "not a url"}]},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "no-actionable-candidates"
    assert response.json()["decision"] is None


def test_api_outcome_feedback_updates_explorer(tmp_path: Path) -> None:
    client = _client(tmp_path)
    body = client.post("/plans", json=news_site_request()).json()
    selected = body["plan"][0]

    response = client.post(
        "/outcomes",
        json={
            "arm_key": f"{selected['category']}:{selected['operation']}",
            "reward": 0.7,
            "domain": "news.example",
            "session_id": body["session_id"],
        },
    )
    assert response.status_code == 200
    assert response.json()["session_known"] is True

    stats = client.get("/explorer/stats", params={"domain": "news.example"}).json()
    assert stats["total_pulls"] == 1
    assert stats["arms"][0]["arm"] == f"{selected['category']}:{selected['operation']}"


class HeldPlugin:
    name = "held"
    priority = 1

    def __init__(self, gate: threading.Event) -> None:
        self._gate = gate

    def tick(self, workspace: WorkspaceView, remaining_budget_ms: float) -> TickResult:
        _ = (workspace, remaining_budget_ms)
        self._gate.wait(5.0)
        return TickResult(done=True)


def test_api_background_session_streams_live_and_reports_status(tmp_path: Path) -> None:
    settings = Settings(db_url=f"sqlite:///{tmp_path / 'api.db'}", exploration_seed=1)
    sm = StateManager(settings.db_url)
    gate = threading.Event()
    registry = PluginRegistry()
    registry.register(HeldPlugin(gate))
    runner = PlanningRunner(settings, state=sm, registry=registry)
    client = TestClient(api_main.build_app(state_manager=sm, settings=settings, runner=runner))

    started = client.post("/plans/start", json=news_site_request())
    assert started.status_code == 202
    session_id = started.json()["session_id"]
    assert started.json()["status"] == "planning"
    assert client.get(f"/plans/{session_id}").json()["status"] == "planning"

    release = threading.Timer(0.2, gate.set)
    release.start()
    events = client.get(f"/plans/{session_id}/events")
    release.join()

    assert events.status_code == 200
    assert "event: session.started" in events.text
    assert "event: plugin.done" in events.text
    assert events.text.rstrip().splitlines()[-2] == "event: session.completed"

    assert runner.wait(session_id, 5.0)
    body = client.get(f"/plans/{session_id}").json()
    assert body["status"] in ("ready", "partial")
    assert body["blueprint"]["plugin_states"] == {"held": "done"}
    assert client.post(f"/plans/{session_id}/cancel").json() == {"session_id": session_id, "cancelled": False}

    assert client.get("/plans/unknown-session").status_code == 404
    assert client.post("/plans/unknown-session/cancel").status_code == 404


def test_api_force_exploration_mode(tmp_path: Path) -> None:
    client = _client(tmp_path)

    forced = client.post("/explorer/force", json={"mode": "explore", "duration_s": 30, "strategy": "epsilon-greedy"})
    assert forced.status_code == 200
    assert forced.json() == {"strategy": "epsilon-greedy", "mode": "explore", "forced_rate": 0.8}

    cleared = client.post("/explorer/force", json={"mode": "auto", "strategy": "epsilon-greedy"})
    assert cleared.json()["forced_rate"] is None

    assert client.post("/explorer/force", json={"mode": "sideways"}).status_code == 422
    assert client.post("/explorer/force", json={"mode": "explore", "duration_s": 0}).status_code == 422
    assert client.get("/explorer/stats", params={"strategy": "ucb"}).json()["strategy"] == "ucb"
