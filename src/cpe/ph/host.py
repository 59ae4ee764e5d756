"""Cooperative, budgeted plugin scheduler."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from cpe.core import trace
from cpe.core.plugins import PlannerPlugin, PluginState
from cpe.ws.workspace import SessionWorkspace, WorkspaceView

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PluginRun:
    """Per-session bookkeeping for one plugin's state machine."""

    name: str
    priority: int
    state: PluginState = PluginState.PENDING
    ticks: int = 0
    elapsed_ms: float = 0.0
    proposals: int = 0
    error: str | None = None

    def transition(self, target: PluginState) -> None:
        if not self.state.active:
            raise RuntimeError(f"plugin {self.name} is already {self.state.value}")
        self.state = target


@dataclass(slots=True)
class HostResult:
    """Outcome of one scheduling pass over a workspace."""

    session_id: str
    runs: list[PluginRun]
    rounds: int
    elapsed_ms: float
    budget_ms: float
    budget_exceeded: bool = False
    cancelled: bool = False
    ticks: list[tuple[str, float]] = field(default_factory=list)

    def states(self) -> dict[str, str]:
        return {run.name: run.state.value for run in self.runs}

    @property
    def tick_time_ms(self) -> float:
        return sum(duration for _, duration in self.ticks)


class PlannerHost:
    """Runs plugins cooperatively, in priority order, under a soft deadline.

    Budget expiry is graceful degradation: the host stops issuing ticks,
    marks the remaining plugins skipped and returns what it has. A tick in
    flight is never interrupted, so plugins self-limit using the remaining
    budget they are handed. Cancellation via `should_stop` is checked at the
    same points.
    """

    def __init__(
        self,
        *,
        max_rounds: int = 50,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._max_rounds = max_rounds
        self._clock = clock

    def run(
        self,
        workspace: SessionWorkspace,
        plugins: Sequence[PlannerPlugin],
        budget_ms: float,
        should_stop: Callable[[], bool] | None = None,
    ) -> HostResult:
        if budget_ms <= 0:
            raise ValueError(f"budget_ms must be positive, got {budget_ms}")

        started = self._clock()
        ordered = sorted(plugins, key=lambda plugin: -int(plugin.priority))
        runs = {plugin.name: PluginRun(plugin.name, int(plugin.priority)) for plugin in ordered}
        result = HostResult(
            session_id=workspace.session_id,
            runs=list(runs.values()),
            rounds=0,
            elapsed_ms=0.0,
            budget_ms=budget_ms,
        )
        view = workspace.view()

        while any(run.state.active for run in runs.values()) and not (result.budget_exceeded or result.cancelled):
            if result.rounds >= self._max_rounds:
                self._skip_remaining(workspace, runs, reason="max_rounds")
                break
            result.rounds += 1

            for plugin in ordered:
                run = runs[plugin.name]
                if not run.state.active:
                    continue
                if should_stop is not None and should_stop():
                    result.cancelled = True
                    logger.info("host_cancelled session_id=%s rounds=%s", workspace.session_id, result.rounds)
                    self._skip_remaining(workspace, runs, reason="cancelled")
                    break

                remaining_ms = budget_ms - self._elapsed_ms(started)
                expected_ms = self._expected_tick_ms(plugin, result)
                if remaining_ms <= 0 or remaining_ms < expected_ms:
                    result.budget_exceeded = True
                    logger.info(
                        "budget_exhausted session_id=%s remaining_ms=%.2f expected_tick_ms=%.2f",
                        workspace.session_id,
                        remaining_ms,
                        expected_ms,
                    )
                    workspace.trace.emit(
                        trace.BUDGET_EXHAUSTED,
                        remaining_ms=remaining_ms,
                        expected_tick_ms=expected_ms,
                        budget_ms=budget_ms,
                    )
                    self._skip_remaining(workspace, runs, reason="budget_exhausted")
                    break

                self._tick(workspace, view, plugin, run, remaining_ms, result)

        result.elapsed_ms = self._elapsed_ms(started)
        return result

    def _tick(
        self,
        workspace: SessionWorkspace,
        view: WorkspaceView,
        plugin: PlannerPlugin,
        run: PluginRun,
        remaining_ms: float,
        result: HostResult,
    ) -> None:
        if run.state is PluginState.PENDING:
            run.transition(PluginState.TICKING)

        tick_started = self._clock()
        try:
            outcome = plugin.tick(view, remaining_ms)
        except Exception as exc:
            duration = (self._clock() - tick_started) * 1000.0
            run.ticks += 1
            run.elapsed_ms += duration
            result.ticks.append((plugin.name, duration))
            run.error = f"{type(exc).__name__}: {exc}"
            run.transition(PluginState.FAILED)
            logger.warning(
                "plugin_failed session_id=%s plugin=%s error=%s",
                workspace.session_id,
                plugin.name,
                run.error,
            )
            workspace.trace.emit(trace.PLUGIN_FAILED, plugin=plugin.name, error=run.error)
            return

        duration = (self._clock() - tick_started) * 1000.0
        run.ticks += 1
        run.elapsed_ms += duration
        result.ticks.append((plugin.name, duration))

        for proposal in outcome.proposals:
            workspace.add_proposal(proposal)
            run.proposals += 1
            workspace.trace.emit(
                trace.PROPOSAL_EMITTED,
                plugin=plugin.name,
                proposal_id=proposal.proposal_id,
                target=proposal.candidate.target,
                confidence=proposal.confidence,
                rationale=proposal.rationale,
            )
        if outcome.annotations:
            workspace.annotate(outcome.annotations)

        if outcome.done:
            run.transition(PluginState.DONE)
            workspace.trace.emit(
                trace.PLUGIN_DONE,
                plugin=plugin.name,
                ticks=run.ticks,
                proposals=run.proposals,
            )

    def _skip_remaining(
        self,
        workspace: SessionWorkspace,
        runs: dict[str, PluginRun],
        *,
        reason: str,
    ) -> None:
        for run in runs.values():
            if not run.state.active:
                continue
            run.transition(PluginState.SKIPPED)
            workspace.trace.emit(trace.PLUGIN_SKIPPED, plugin=run.name, reason=reason, ticks=run.ticks)

    @staticmethod
    def _expected_tick_ms(plugin: PlannerPlugin, result: HostResult) -> float:
        """Declared tick cost, else the session's mean observed tick duration."""
        declared = getattr(plugin, "estimated_tick_ms", None)
        if declared is not None:
            return float(declared)
        if not result.ticks:
            return 0.0
        return result.tick_time_ms / len(result.ticks)

    def _elapsed_ms(self, started: float) -> float:
        return (self._clock() - started) * 1000.0
