import threading
from pathlib import Path

import pytest

from cpe.core import trace
from cpe.core.config import Settings
from cpe.core.errors import PlanRequestError, WorkspaceConflictError, WorkspaceNotFoundError
from cpe.core.plugins import PluginRegistry, TickResult
from cpe.core.types import ActionCandidate, PlanningStatus
from cpe.epl.processor import PlanRequest
from cpe.ps.runner import PlanningRunner
from cpe.sm.manager import StateManager
from cpe.ws.workspace import WorkspaceView


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SlowPlugin:
    def __init__(self, name: str, priority: int, clock: FakeClock, fail: bool = False) -> None:
        self.name = name
        self.priority = priority
        self._clock = clock
        self._fail = fail

    def tick(self, workspace: WorkspaceView, remaining_budget_ms: float) -> TickResult:
        _ = (workspace, remaining_budget_ms)
        self._clock.now += 0.04
        if self._fail:
            raise RuntimeError("upstream unavailable")
        return TickResult(done=True)


class GatedPlugin:
    name = "gated"
    priority = 1

    def __init__(self, gate: threading.Event, done: bool = False) -> None:
        self._gate = gate
        self._done = done

    def tick(self, workspace: WorkspaceView, remaining_budget_ms: float) -> TickResult:
        _ = (workspace, remaining_budget_ms)
        self._gate.wait(5.0)
        return TickResult(done=self._done)


def _candidates() -> list[ActionCandidate]:
    return [
        ActionCandidate("https://news.example/world/", category="section", estimated_yield=180, confidence=0.8),
        ActionCandidate("https://news.example/places/", category="place-hub", estimated_yield=90),
    ]


def _runner(tmp_path: Path, *plugins, clock: FakeClock | None = None) -> PlanningRunner:
    settings = Settings(db_url=f"sqlite:///{tmp_path / 'runner.db'}", exploration_seed=1)
    registry = PluginRegistry()
    for plugin in plugins:
        registry.register(plugin)
    kwargs = {"clock": clock} if clock is not None else {}
    return PlanningRunner(settings, state=StateManager(settings.db_url), registry=registry, **kwargs)


def test_runner_degrades_gracefully_when_budget_runs_out(tmp_path: Path) -> None:
    clock = FakeClock()
    runner = _runner(
        tmp_path,
        SlowPlugin("a", 3, clock),
        SlowPlugin("b", 2, clock),
        SlowPlugin("c", 1, clock),
        clock=clock,
    )
    request = PlanRequest(context_key="news.example", domain="news.example", candidates=_candidates(), budget_ms=100.0)

    blueprint = runner.run(request)

    assert blueprint.budget_exceeded
    assert blueprint.status is PlanningStatus.PARTIAL
    assert blueprint.plugin_states == {"a": "done", "b": "done", "c": "skipped"}
    assert any("exhausted" in line for line in blueprint.rationale)
    assert blueprint.plan
    workspace = runner.workspaces.get(blueprint.session_id)
    assert workspace.status == "partial"
    assert workspace.trace.kinds()[0] == trace.SESSION_STARTED
    assert workspace.trace.kinds()[-1] == trace.SESSION_COMPLETED
    assert runner.workspaces.active_count() == 0


def test_runner_marks_plugin_failures_partial(tmp_path: Path) -> None:
    clock = FakeClock()
    runner = _runner(tmp_path, SlowPlugin("broken", 1, clock, fail=True), clock=clock)
    request = PlanRequest(context_key="k", domain="news.example", candidates=_candidates(), budget_ms=1000.0)

    blueprint = runner.run(request)

    assert blueprint.status is PlanningStatus.PARTIAL
    assert blueprint.plugin_states == {"broken": "failed"}
    assert "Plugin broken failed: RuntimeError: upstream unavailable" in blueprint.rationale


def test_runner_reports_no_actionable_candidates(tmp_path: Path) -> None:
    runner = _runner(tmp_path)
    request = PlanRequest(context_key="k", domain="k", candidates=[ActionCandidate("ftp://k.example/")], budget_ms=50.0)

    blueprint = runner.run(request)

    assert blueprint.status is PlanningStatus.NO_ACTIONABLE_CANDIDATES
    assert runner.workspaces.get(blueprint.session_id).status == "no-actionable-candidates"
    assert runner.decisions(session_id=blueprint.session_id) == []


def test_runner_rejects_conflicting_and_invalid_requests(tmp_path: Path) -> None:
    runner = _runner(tmp_path)
    runner.workspaces.open("busy", [])

    with pytest.raises(WorkspaceConflictError):
        runner.run(PlanRequest(context_key="busy", domain="busy", candidates=_candidates()))
    with pytest.raises(PlanRequestError):
        runner.run(PlanRequest(context_key="k", domain="k", candidates=_candidates(), budget_ms=0.0))
    with pytest.raises(PlanRequestError):
        runner.run(PlanRequest(context_key="k", domain="k", candidates=[]))
    with pytest.raises(PlanRequestError):
        runner.run(PlanRequest(context_key="k", domain="k", candidates=_candidates(), goal_weights={"breadth": 0.9}))


def test_runner_feeds_outcomes_back_to_learners(tmp_path: Path) -> None:
    runner = _runner(tmp_path)
    request = PlanRequest(
        context_key="news.example",
        domain="news.example",
        candidates=_candidates(),
        budget_ms=1000.0,
        lookahead=2,
    )
    blueprint = runner.run(request)
    selected = blueprint.plan[0]
    assert blueprint.optimization_id is not None
    assert blueprint.lookahead is not None

    feedback = runner.record_outcome(
        arm_key=f"{selected['category']}:{selected['operation']}",
        reward=0.8,
        domain="news.example",
        session_id=blueprint.session_id,
        actual_value=blueprint.lookahead["predicted_outcome"],
    )

    assert feedback["session_known"]
    assert feedback["pulls"] == 1
    assert feedback["warnings"] == []
    assert runner.state.get_goal_optimization(blueprint.optimization_id)["success_score"] == 0.8
    history = runner.state.plan_history("news.example")
    assert [row["id"] for row in history] == [blueprint.lookahead["plan_id"]]
    assert history[0]["success"] is True
    assert runner.feedback_explorer.stats("news.example")["total_pulls"] == 1

    with pytest.raises(ValueError):
        runner.record_outcome(arm_key="section:fetch", reward=-0.1)


def _tied_candidates() -> list[ActionCandidate]:
    return [
        ActionCandidate("https://news.example/a/", category="section", confidence=0.8),
        ActionCandidate("https://news.example/b/", category="hub", confidence=0.8),
    ]


def test_runner_explorer_state_carries_across_sessions(tmp_path: Path) -> None:
    runner = _runner(tmp_path)
    for _ in range(10):
        runner.record_outcome(arm_key="section:fetch", reward=0.5, domain="news.example")

    rates = []
    for index in range(3):
        blueprint = runner.run(
            PlanRequest(
                context_key=f"news-{index}",
                domain="news.example",
                candidates=_tied_candidates(),
                budget_ms=1000.0,
                exploration_strategy="epsilon-greedy",
            )
        )
        assert blueprint.exploration is not None
        assert blueprint.exploration["plateau"] is True
        rates.append(runner.explorer("epsilon-greedy").epsilon)

    assert rates[0] < 0.2
    assert rates[2] < rates[1] < rates[0]

    runner.force_exploration("exploit", duration_s=60.0, strategy="epsilon-greedy")
    forced = runner.run(
        PlanRequest(
            context_key="news-forced",
            domain="news.example",
            candidates=_tied_candidates(),
            budget_ms=1000.0,
            exploration_strategy="epsilon-greedy",
        )
    )

    assert forced.exploration is not None
    assert forced.exploration["mode"] == "exploit"
    assert forced.exploration["exploration_rate"] == 0.0
    assert runner.explorer("epsilon-greedy").epsilon == rates[2]

    runner.force_exploration("auto", strategy="epsilon-greedy")
    assert runner.explorer("epsilon-greedy").forced_rate() is None
    with pytest.raises(ValueError):
        runner.force_exploration("sideways")


def test_runner_start_returns_before_planning_and_streams_live(tmp_path: Path) -> None:
    gate = threading.Event()
    runner = _runner(tmp_path, GatedPlugin(gate, done=True))

    session_id = runner.start(
        PlanRequest(context_key="news.example", domain="news.example", candidates=_candidates(), budget_ms=60_000.0)
    )
    assert runner.session(session_id).status == "planning"
    seen: list[str] = []
    runner.workspaces.get(session_id).trace.subscribe(lambda event: seen.append(event.kind))
    gate.set()

    blueprint = runner.wait(session_id, timeout_s=5.0)

    assert blueprint is not None
    assert blueprint.status is PlanningStatus.READY
    assert runner.session(session_id).as_dict()["blueprint"]["session_id"] == session_id
    assert trace.SESSION_STARTED not in seen
    assert trace.PLUGIN_DONE in seen
    assert trace.DECISION_FINALIZED in seen
    assert seen[-1] == trace.SESSION_COMPLETED


def test_runner_cancels_background_session(tmp_path: Path) -> None:
    gate = threading.Event()
    runner = _runner(tmp_path, GatedPlugin(gate))
    session_id = runner.start(
        PlanRequest(context_key="k", domain="k", candidates=_candidates(), budget_ms=60_000.0)
    )

    assert runner.cancel(session_id)
    gate.set()
    blueprint = runner.wait(session_id, timeout_s=5.0)

    assert blueprint is not None
    assert blueprint.status is PlanningStatus.CANCELLED
    assert blueprint.plugin_states == {"gated": "skipped"}
    assert blueprint.plan == []
    workspace = runner.workspaces.get(session_id)
    assert workspace.status == "cancelled"
    assert trace.SESSION_CANCELLED in workspace.trace.kinds()
    assert workspace.trace.kinds()[-1] == trace.SESSION_COMPLETED
    assert not runner.cancel(session_id)
    assert runner.decisions(session_id=session_id) == []

    with pytest.raises(WorkspaceNotFoundError):
        runner.cancel("unknown-session")
