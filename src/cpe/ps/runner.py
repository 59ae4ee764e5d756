"""Planning session runner: one request in, one blueprint out."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from cpe.ax.explorer import STRATEGIES, AdaptiveExplorer, BanditArmTable
from cpe.core import trace
from cpe.core.config import Settings
from cpe.core.errors import PlanRequestError, WorkspaceNotFoundError
from cpe.core.plugins import PluginRegistry, PluginState
from cpe.core.types import Blueprint, Decision, PlanningStatus, TelemetryRecord
from cpe.dc.coordinator import DecisionCoordinator, PolicyChecker
from cpe.epl.processor import PlanRequest
from cpe.hp.planner import HierarchicalPlanner, PlanGoal
from cpe.mgo.optimizer import MultiGoalOptimizer, ProgressState
from cpe.ph.host import HostResult, PlannerHost
from cpe.plugins import (
    CostEstimatorPlugin,
    PatternProposerPlugin,
    ReferenceDataProposerPlugin,
)
from cpe.plugins.reference_data import ReferenceSource
from cpe.sm.manager import StateManager
from cpe.ws.workspace import SessionWorkspace, WorkspaceRegistry

logger = logging.getLogger(__name__)

DEFAULT_REFERENCE_TEMPLATES = ("https://{host}/world/{slug}",)
PLANNING = "planning"


@dataclass(slots=True)
class SessionRecord:
    """What outcome feedback needs to know about a finished session."""

    session_id: str
    domain: str
    strategy: str
    optimization_id: int | None
    plan_id: int | None
    predicted_outcome: float | None


@dataclass(slots=True)
class BackgroundSession:
    """A session started with `PlanningRunner.start`; `blueprint` is set once it ends."""

    session_id: str
    cancel_requested: threading.Event = field(default_factory=threading.Event)
    finished: threading.Event = field(default_factory=threading.Event)
    blueprint: Blueprint | None = None
    error: str | None = None

    @property
    def status(self) -> str:
        if self.blueprint is not None:
            return self.blueprint.status.value
        if self.error is not None:
            return PlanningStatus.FAILED.value
        return PLANNING

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "cancel_requested": self.cancel_requested.is_set(),
            "error": self.error,
            "blueprint": self.blueprint.as_dict() if self.blueprint is not None else None,
        }


@dataclass(slots=True)
class _OpenSession:
    request: PlanRequest
    workspace: SessionWorkspace
    budget_ms: float
    weights: dict[str, float]


def default_registry(
    settings: Settings,
    state: StateManager | None,
    *,
    reference_source: ReferenceSource | None = None,
    reference_templates: Sequence[str] = DEFAULT_REFERENCE_TEMPLATES,
) -> PluginRegistry:
    """Registry with the reference plugins; each session gets fresh instances."""

    def load_telemetry() -> list[TelemetryRecord]:
        if state is None:
            return []
        return state.recent_telemetry(settings.telemetry_lookback)

    registry = PluginRegistry()
    registry.register_factory(
        lambda: CostEstimatorPlugin(
            load_telemetry,
            high_cost_threshold_ms=settings.high_cost_threshold_ms,
            min_samples=settings.min_cost_samples,
            conservative_cost_ms=settings.conservative_cost_ms,
        )
    )
    registry.register_factory(PatternProposerPlugin)
    if reference_source is not None:
        registry.register_factory(
            lambda: ReferenceDataProposerPlugin(reference_source, reference_templates)
        )
    return registry


class PlanningRunner:
    """Composes host, coordinator, optimizer, planner and explorer per session.

    One explorer per strategy lives as long as the runner, so each one's
    decaying rate, plateau window and forced mode span sessions. Every
    reward reaches all of them.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        state: StateManager | None = None,
        registry: PluginRegistry | None = None,
        workspaces: WorkspaceRegistry | None = None,
        arm_table: BanditArmTable | None = None,
        policy: PolicyChecker | None = None,
        clock: Callable[[], float] = time.perf_counter,
        rng_factory: Callable[[], random.Random] | None = None,
        max_remembered_sessions: int = 256,
    ) -> None:
        self.settings = settings
        self.state = state
        self.registry = registry if registry is not None else default_registry(settings, state)
        self.workspaces = workspaces or WorkspaceRegistry(
            ttl_s=settings.session_ttl_s,
            max_trace_events=settings.max_trace_events,
        )
        self.arm_table = arm_table or BanditArmTable(state)
        self._clock = clock
        self._rng_factory = rng_factory or (lambda: random.Random(settings.exploration_seed))
        self.host = PlannerHost(max_rounds=settings.max_rounds, clock=clock)
        self.coordinator = DecisionCoordinator(
            state=state,
            policy=policy,
            blocked_hosts=settings.blocked_hosts,
            max_per_host=settings.max_per_host,
            high_cost_threshold_ms=settings.high_cost_threshold_ms,
            conservative_cost_ms=settings.conservative_cost_ms,
        )
        self._explorers = {strategy: self._new_explorer(strategy) for strategy in STRATEGIES}
        self._sessions: OrderedDict[str, SessionRecord] = OrderedDict()
        self._background: OrderedDict[str, BackgroundSession] = OrderedDict()
        self._sessions_lock = threading.Lock()
        self._max_sessions = max_remembered_sessions

    # explorers

    def _new_explorer(self, strategy: str) -> AdaptiveExplorer:
        return AdaptiveExplorer(
            self.arm_table,
            state=self.state,
            strategy=strategy,
            rng=self._rng_factory(),
            initial_epsilon=self.settings.initial_epsilon,
            epsilon_decay=self.settings.epsilon_decay,
            epsilon_min=self.settings.epsilon_min,
            low_time_threshold_s=self.settings.low_time_threshold_s,
        )

    def explorer(self, strategy: str | None = None) -> AdaptiveExplorer:
        """The runner's long-lived explorer for `strategy` (default from settings)."""
        strategy = strategy or self.settings.exploration_strategy
        explorer = self._explorers.get(strategy)
        if explorer is None:
            raise ValueError(f"Unknown exploration strategy: {strategy}")
        return explorer

    @property
    def feedback_explorer(self) -> AdaptiveExplorer:
        return self.explorer()

    def force_exploration(self, mode: str, duration_s: float = 10.0, strategy: str | None = None) -> None:
        """Force explore or exploit for `duration_s`; `mode="auto"` lifts the override."""
        explorer = self.explorer(strategy)
        if mode == "auto":
            explorer.clear_force()
            return
        explorer.force_mode(mode, duration_s)

    # sessions

    def run(self, request: PlanRequest) -> Blueprint:
        """Plan synchronously and return the blueprint."""
        return self._execute(self._open(request))

    def start(self, request: PlanRequest) -> str:
        """Open a session and plan it on a background thread; returns the session id at once.

        Request and conflict errors are raised here, before anything runs.
        """
        opened = self._open(request)
        handle = BackgroundSession(opened.workspace.session_id)
        with self._sessions_lock:
            self._background[handle.session_id] = handle
            self._forget_finished()
        thread = threading.Thread(
            target=self._run_background,
            args=(opened, handle),
            name=f"cpe-session-{handle.session_id[:8]}",
            daemon=True,
        )
        thread.start()
        logger.info("session_started_background session_id=%s", handle.session_id)
        return handle.session_id

    def session(self, session_id: str) -> BackgroundSession:
        with self._sessions_lock:
            handle = self._background.get(session_id)
        if handle is None:
            raise WorkspaceNotFoundError(session_id)
        return handle

    def wait(self, session_id: str, timeout_s: float | None = None) -> Blueprint | None:
        handle = self.session(session_id)
        handle.finished.wait(timeout_s)
        return handle.blueprint

    def cancel(self, session_id: str) -> bool:
        """Ask a background session to stop; False when it already finished."""
        handle = self.session(session_id)
        if handle.finished.is_set():
            return False
        handle.cancel_requested.set()
        logger.info("session_cancel_requested session_id=%s", session_id)
        return True

    def _run_background(self, opened: _OpenSession, handle: BackgroundSession) -> None:
        try:
            handle.blueprint = self._execute(opened, should_stop=handle.cancel_requested.is_set)
        except Exception as exc:
            handle.error = f"{type(exc).__name__}: {exc}"
            logger.exception("background_session_failed session_id=%s", handle.session_id)
        finally:
            handle.finished.set()

    def _forget_finished(self) -> None:
        for session_id, handle in list(self._background.items()):
            if len(self._background) <= self._max_sessions:
                break
            if handle.finished.is_set():
                del self._background[session_id]

    def _open(self, request: PlanRequest) -> _OpenSession:
        budget_ms = request.budget_ms if request.budget_ms is not None else self.settings.default_budget_ms
        if budget_ms <= 0:
            raise PlanRequestError(f"budget_ms must be positive, got {budget_ms}")
        if not request.candidates:
            raise PlanRequestError("A planning request needs at least one candidate")

        optimizer = MultiGoalOptimizer(state=self.state)
        try:
            weights = (
                optimizer.set_weights(request.goal_weights)
                if request.goal_weights
                else optimizer.set_weights(optimizer.recommended_weights(request.domain))
            )
            self.explorer(request.exploration_strategy)
        except ValueError as exc:
            raise PlanRequestError(str(exc)) from exc

        workspace = self.workspaces.open(
            request.context_key,
            request.candidates,
            metadata={"domain": request.domain, "budget_ms": budget_ms},
        )
        workspace.trace.emit(
            trace.SESSION_STARTED,
            context_key=request.context_key,
            domain=request.domain,
            candidates=len(request.candidates),
            budget_ms=budget_ms,
        )
        return _OpenSession(request, workspace, budget_ms, weights)

    def _execute(self, opened: _OpenSession, should_stop: Callable[[], bool] | None = None) -> Blueprint:
        request, workspace, budget_ms = opened.request, opened.workspace, opened.budget_ms
        status = PlanningStatus.FAILED
        try:
            started = self._clock()
            host_result = self.host.run(workspace, self.registry.instantiate(), budget_ms, should_stop=should_stop)
            if host_result.cancelled:
                blueprint = self._cancelled(workspace, host_result)
                status = blueprint.status
                return blueprint

            explorer = self.explorer(request.exploration_strategy)
            optimizer = MultiGoalOptimizer(state=self.state, explorer=explorer, weights=opened.weights)
            remaining_ms = budget_ms - (self._clock() - started) * 1000.0
            planner = None
            if remaining_ms > 0:
                planner = HierarchicalPlanner(
                    state=self.state,
                    lookahead=request.lookahead or self.settings.lookahead,
                    branching_factor=request.branching_factor or self.settings.branching_factor,
                    confidence_floor=self.settings.confidence_floor,
                    step_decay=self.settings.step_decay,
                    adaptive=request.lookahead is None and request.branching_factor is None,
                    clock=self._clock,
                )
            goal = PlanGoal(**request.goal) if request.goal else None

            blueprint = self.coordinator.coordinate(
                workspace,
                optimizer=optimizer,
                planner=planner,
                explorer=explorer,
                domain=request.domain,
                progress=ProgressState.from_dict(request.progress),
                time_remaining_s=request.time_remaining_s,
                goal=goal,
                planner_deadline_ms=remaining_ms,
            )
            if planner is None and blueprint.status is PlanningStatus.READY:
                blueprint.rationale.append("Lookahead skipped: planning budget exhausted")
            self._apply_host_result(blueprint, host_result)
            blueprint.warnings.extend(explorer.drain_warnings())
            status = blueprint.status
            self._remember(request.domain, explorer.strategy, blueprint)
            return blueprint
        finally:
            workspace.trace.emit(trace.SESSION_COMPLETED, status=status.value)
            self.workspaces.close(workspace.session_id, status=status.value)

    def _cancelled(self, workspace: SessionWorkspace, host_result: HostResult) -> Blueprint:
        blueprint = Blueprint(session_id=workspace.session_id, status=PlanningStatus.CANCELLED)
        blueprint.plugin_states = host_result.states()
        blueprint.rationale.append(
            f"Planning cancelled after {len(host_result.ticks)} tick(s) in {host_result.elapsed_ms:.0f} ms"
        )
        workspace.trace.emit(trace.SESSION_CANCELLED, ticks=len(host_result.ticks))
        return blueprint

    @staticmethod
    def _apply_host_result(blueprint: Blueprint, host_result: HostResult) -> None:
        blueprint.budget_exceeded = host_result.budget_exceeded
        blueprint.plugin_states = host_result.states()
        skipped = [run.name for run in host_result.runs if run.state is PluginState.SKIPPED]
        failed = [run for run in host_result.runs if run.state is PluginState.FAILED]
        if host_result.budget_exceeded:
            blueprint.rationale.append(
                f"Budget of {host_result.budget_ms:.0f} ms exhausted after {len(host_result.ticks)} tick(s); "
                f"skipped: {', '.join(skipped) or 'none'}"
            )
        for run in failed:
            blueprint.rationale.append(f"Plugin {run.name} failed: {run.error}")
        if blueprint.status is PlanningStatus.READY and (skipped or failed):
            blueprint.status = PlanningStatus.PARTIAL

    def _remember(self, domain: str, strategy: str, blueprint: Blueprint) -> None:
        lookahead = blueprint.lookahead or {}
        record = SessionRecord(
            session_id=blueprint.session_id,
            domain=domain,
            strategy=strategy,
            optimization_id=blueprint.optimization_id,
            plan_id=lookahead.get("plan_id"),
            predicted_outcome=lookahead.get("predicted_outcome"),
        )
        with self._sessions_lock:
            self._sessions[blueprint.session_id] = record
            while len(self._sessions) > self._max_sessions:
                self._sessions.popitem(last=False)

    # feedback

    def record_outcome(
        self,
        *,
        arm_key: str,
        reward: float,
        domain: str = "default",
        session_id: str | None = None,
        actual_value: float | None = None,
    ) -> dict[str, Any]:
        """Feed an executed action's normalized reward back into every learner."""
        with self._sessions_lock:
            record = self._sessions.get(session_id) if session_id else None
        explorer = self.explorer(record.strategy if record is not None else None)
        arm = explorer.update_outcome(arm_key, reward, domain=domain)
        warnings = explorer.drain_warnings()
        for other in self._explorers.values():
            if other is explorer:
                continue
            other.observe_reward(reward)

        if record is not None and self.state is not None:
            try:
                if record.optimization_id is not None:
                    MultiGoalOptimizer(state=self.state).record_success(record.optimization_id, reward)
                if record.plan_id is not None and actual_value is not None:
                    predicted = record.predicted_outcome or 0.0
                    success = actual_value >= predicted * self.settings.continue_threshold
                    self.state.close_plan(record.plan_id, actual_value, success)
            except SQLAlchemyError as exc:
                logger.warning("outcome_persist_failed session_id=%s error=%s", session_id, exc)
                warnings.append(f"outcome_persist_failed: {exc}")

        return {
            "arm": arm.key,
            "pulls": arm.pulls,
            "avg_reward": arm.average,
            "confidence": arm.confidence,
            "session_known": record is not None,
            "warnings": warnings,
        }

    def record_telemetry(self, record: TelemetryRecord) -> None:
        if self.state is None:
            raise RuntimeError("telemetry intake requires a state manager")
        self.state.record_telemetry(record)

    def decisions(self, session_id: str | None = None, limit: int = 100) -> list[Decision]:
        if self.state is None:
            return []
        return self.state.list_decisions(session_id=session_id, limit=limit)
