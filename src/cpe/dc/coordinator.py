"""Decision Coordinator: validate, evaluate and arbitrate proposals into one plan."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError

from cpe.ax.explorer import AdaptiveExplorer
from cpe.core import trace
from cpe.core.types import (
    ActionCandidate,
    Blueprint,
    Decision,
    PlanningStatus,
    Scorecard,
    canonical_target,
    clamp_unit,
)
from cpe.hp.planner import HierarchicalPlanner, PlanGoal
from cpe.mgo.optimizer import MultiGoalOptimizer, ProgressState
from cpe.sm.manager import StateManager
from cpe.ws.workspace import SessionWorkspace

logger = logging.getLogger(__name__)

ScoringAxis = Callable[[ActionCandidate], float]

DEFAULT_AXES: dict[str, ScoringAxis] = {
    "yield": lambda candidate: clamp_unit(candidate.estimated_yield / 500.0),
}


@dataclass(slots=True, frozen=True)
class PolicyVerdict:
    allowed: bool
    score: float = 1.0
    reason: str = ""


class PolicyChecker(Protocol):
    def check(self, candidate: ActionCandidate) -> PolicyVerdict: ...


class AllowAllPolicy:
    """Policy checker used when no compliance collaborator is wired in."""

    def check(self, candidate: ActionCandidate) -> PolicyVerdict:
        return PolicyVerdict(allowed=True)


@dataclass(slots=True, frozen=True)
class Submission:
    """A candidate together with who offered it and how confident they were."""

    candidate: ActionCandidate
    source: str
    confidence: float
    compliance: float = 1.0


@dataclass(slots=True, frozen=True)
class Evaluated:
    submission: Submission
    scorecard: Scorecard
    expected_ms: float
    high_cost: bool


@dataclass(slots=True)
class ValidationResult:
    accepted: list[Submission] = field(default_factory=list)
    rejected: list[dict[str, Any]] = field(default_factory=list)


def safety_key(item: Evaluated) -> tuple[float, float, float, float, str]:
    """Higher compliance first, then lower risk, higher confidence, lower cost."""
    card = item.scorecard
    return (-card.compliance, card.risk, -card.confidence, card.cost, item.submission.candidate.target)


class DecisionCoordinator:
    """Turns everything a session collected into one authoritative decision."""

    def __init__(
        self,
        *,
        state: StateManager | None = None,
        policy: PolicyChecker | None = None,
        blocked_hosts: Iterable[str] = (),
        max_per_host: int | None = None,
        high_cost_threshold_ms: float = 500.0,
        conservative_cost_ms: float = 1000.0,
        axes: Mapping[str, ScoringAxis] | None = None,
    ) -> None:
        self._state = state
        self._policy = policy or AllowAllPolicy()
        self._blocked_hosts = {host.lower() for host in blocked_hosts}
        self._max_per_host = max_per_host
        self._high_cost_threshold_ms = high_cost_threshold_ms
        self._conservative_cost_ms = conservative_cost_ms
        self._cost_ceiling_ms = 2.0 * high_cost_threshold_ms
        self._axes = dict(DEFAULT_AXES if axes is None else axes)

    # validate

    def validate(self, submissions: Sequence[Submission]) -> ValidationResult:
        result = ValidationResult()
        by_target: dict[str, Submission] = {}
        order: list[str] = []

        for submission in submissions:
            canonical = canonical_target(submission.candidate.target)
            if canonical is None:
                result.rejected.append(self._rejection(submission, "malformed_target"))
                continue
            submission = replace(submission, candidate=replace(submission.candidate, target=canonical))
            current = by_target.get(canonical)
            if current is None:
                by_target[canonical] = submission
                order.append(canonical)
            elif submission.confidence > current.confidence:
                by_target[canonical] = submission
                result.rejected.append(self._rejection(current, f"duplicate_of:{submission.source}"))
            else:
                result.rejected.append(self._rejection(submission, f"duplicate_of:{current.source}"))

        allowed: list[Submission] = []
        for canonical in order:
            submission = by_target[canonical]
            host = submission.candidate.host
            if host in self._blocked_hosts:
                result.rejected.append(self._rejection(submission, "policy:blocked_host"))
                continue
            verdict = self._policy.check(submission.candidate)
            if not verdict.allowed:
                result.rejected.append(self._rejection(submission, f"policy:{verdict.reason or 'denied'}"))
                continue
            allowed.append(replace(submission, compliance=clamp_unit(verdict.score)))

        if self._max_per_host is None:
            result.accepted = allowed
            return result

        per_host: Counter[str] = Counter()
        kept: set[int] = set()
        for index in sorted(range(len(allowed)), key=lambda i: -allowed[i].confidence):
            host = allowed[index].candidate.host
            if per_host[host] < self._max_per_host:
                per_host[host] += 1
                kept.add(index)
            else:
                result.rejected.append(self._rejection(allowed[index], "rate_limited"))
        result.accepted = [item for index, item in enumerate(allowed) if index in kept]
        return result

    @staticmethod
    def _rejection(submission: Submission, reason: str) -> dict[str, Any]:
        return {
            "target": submission.candidate.target,
            "source": submission.source,
            "confidence": submission.confidence,
            "reason": reason,
        }

    # evaluate

    def evaluate(
        self,
        submission: Submission,
        annotations: Mapping[str, Any],
        category_counts: Mapping[str, int] | None = None,
    ) -> Evaluated:
        """Pure scoring of one validated submission; same inputs give the same scorecard."""
        candidate = submission.candidate
        estimates = annotations.get("cost_estimates", {})
        estimate = estimates.get(candidate.target) if isinstance(estimates, Mapping) else None
        if estimate is not None and estimate.get("known"):
            expected_ms, known = float(estimate["expected_ms"]), True
        elif candidate.estimated_latency_ms is not None:
            expected_ms, known = candidate.estimated_latency_ms, True
        else:
            expected_ms, known = self._conservative_cost_ms, False

        high_cost = candidate.target in annotations.get("high_cost_targets", ()) or (
            expected_ms > self._high_cost_threshold_ms
        )
        counts = category_counts or {}
        if candidate.category not in counts:
            coverage = 1.0
        elif counts[candidate.category] < 10:
            coverage = 0.7
        else:
            coverage = 0.3

        cost = clamp_unit(expected_ms / self._cost_ceiling_ms)
        compliance = submission.compliance
        risk = clamp_unit(
            0.4 * cost + 0.4 * (1.0 - compliance) + (0.1 if not known else 0.0) + (0.1 if high_cost else 0.0)
        )
        scorecard = Scorecard(
            coverage=coverage,
            cost=cost,
            compliance=compliance,
            risk=risk,
            confidence=submission.confidence,
            axes={name: clamp_unit(axis(candidate)) for name, axis in self._axes.items()},
            cost_known=known,
        )
        return Evaluated(submission, scorecard, expected_ms, high_cost)

    # arbitrate

    def arbitrate(
        self,
        session_id: str,
        evaluated: Sequence[Evaluated],
        validation_rejects: Sequence[dict[str, Any]] = (),
        *,
        explorer: AdaptiveExplorer | None = None,
        domain: str = "default",
        time_remaining_s: float | None = None,
    ) -> tuple[Decision, list[Evaluated], dict[str, Any] | None]:
        """Safety-first fusion; the explorer only breaks exact ties."""
        ranked = sorted(evaluated, key=safety_key)
        exploration = None
        head = safety_key(ranked[0])[:-1]
        tied = [item for item in ranked if safety_key(item)[:-1] == head]
        if explorer is not None and len(tied) > 1:
            choice = explorer.select(
                [item.submission.candidate.arm_key for item in tied],
                domain=domain,
                time_remaining_s=time_remaining_s,
            )
            winner = tied[choice.index]
            ranked.remove(winner)
            ranked.insert(0, winner)
            exploration = choice.as_dict()

        selected = ranked[0]
        card = selected.scorecard
        rejected = [
            {
                "target": item.submission.candidate.target,
                "source": item.submission.source,
                "confidence": item.scorecard.confidence,
                "risk": item.scorecard.risk,
                "reason": "outranked",
            }
            for item in ranked[1:]
        ] + [dict(item) for item in validation_rejects]
        rationale = (
            f"Selected {selected.submission.candidate.target} from {selected.submission.source}: "
            f"compliance={card.compliance:.2f}, risk={card.risk:.3f}, "
            f"confidence={card.confidence:.3f}, cost={card.cost:.3f}"
            f"{'' if card.cost_known else ' (cost unknown, conservative default)'}; "
            f"{len(ranked) - 1} alternative(s) outranked, {len(validation_rejects)} dropped in validation"
        )
        decision = Decision(
            session_id=session_id,
            selected={
                **selected.submission.candidate.to_dict(),
                "source": selected.submission.source,
                "scorecard": card.as_dict(),
            },
            rejected=tuple(rejected),
            rationale=rationale,
            confidence=card.confidence,
        )
        return decision, ranked, exploration

    # pipeline

    def coordinate(
        self,
        workspace: SessionWorkspace,
        *,
        optimizer: MultiGoalOptimizer | None = None,
        planner: HierarchicalPlanner | None = None,
        explorer: AdaptiveExplorer | None = None,
        domain: str = "default",
        progress: ProgressState | None = None,
        time_remaining_s: float | None = None,
        goal: PlanGoal | None = None,
        planner_deadline_ms: float | None = None,
    ) -> Blueprint:
        view = workspace.view()
        submissions = [Submission(c, c.source, c.confidence) for c in view.candidates] + [
            Submission(p.candidate, p.source, p.confidence) for p in view.proposals
        ]
        validation = self.validate(submissions)
        blueprint = Blueprint(session_id=workspace.session_id, status=PlanningStatus.READY)

        if not validation.accepted:
            blueprint.status = PlanningStatus.NO_ACTIONABLE_CANDIDATES
            blueprint.rationale.append(
                f"No actionable candidates: {len(submissions)} submitted, all eliminated during validation"
            )
            blueprint.rationale.extend(f"{item['target']}: {item['reason']}" for item in validation.rejected)
            logger.info(
                "no_actionable_candidates session_id=%s submitted=%s",
                workspace.session_id,
                len(submissions),
            )
            return blueprint

        progress = progress or ProgressState()
        evaluated = [
            self.evaluate(item, view.annotations, progress.category_counts) for item in validation.accepted
        ]
        decision, ranked, exploration = self.arbitrate(
            workspace.session_id,
            evaluated,
            validation.rejected,
            explorer=explorer,
            domain=domain,
            time_remaining_s=time_remaining_s,
        )
        blueprint.decision = decision
        blueprint.exploration = exploration
        blueprint.rationale.append(decision.rationale)
        blueprint.scorecards = {item.submission.candidate.target: item.scorecard.as_dict() for item in evaluated}

        order = [item.submission.candidate.target for item in ranked]
        by_target = {item.submission.candidate.target: item for item in ranked}
        candidates = [item.submission.candidate for item in ranked]

        if optimizer is not None:
            latencies = {
                item.submission.candidate.target: item.expected_ms * item.submission.candidate.estimated_requests
                for item in ranked
            }
            optimized = optimizer.optimize(
                candidates,
                progress,
                domain=domain,
                latencies=latencies,
                time_remaining_s=time_remaining_s,
            )
            blueprint.goal_scores = {
                candidate.target: score.as_dict() for candidate, score in zip(candidates, optimized.scores)
            }
            blueprint.pareto_frontier = [candidates[index].target for index in optimized.frontier]
            blueprint.rationale.append(f"Goals: {optimized.reasoning}")
            blueprint.warnings.extend(optimized.warnings)
            totals = {candidate.target: score.total for candidate, score in zip(candidates, optimized.scores)}
            order = [order[0]] + sorted(order[1:], key=lambda target: -totals[target])
            if optimized.optimization_id is not None:
                blueprint.optimization_id = optimized.optimization_id

        if planner is not None:
            lookahead = planner.plan(candidates, goal=goal, domain=domain, deadline_ms=planner_deadline_ms)
            blueprint.lookahead = lookahead.as_dict()
            blueprint.warnings.extend(lookahead.warnings)
            strategic = [step.action.target for step in lookahead.steps if step.action.target != order[0]]
            order = [order[0]] + strategic + [target for target in order[1:] if target not in strategic]
            blueprint.rationale.append(
                f"Lookahead: {len(lookahead.steps)} step(s), predicted={lookahead.predicted_outcome:.1f}, "
                f"confidence={lookahead.confidence:.2f}, nodes_explored={lookahead.nodes_explored}"
            )

        blueprint.plan = [
            {
                **by_target[target].submission.candidate.to_dict(),
                "source": by_target[target].submission.source,
                "expected_ms": by_target[target].expected_ms,
                "cost_known": by_target[target].scorecard.cost_known,
                "high_cost": by_target[target].high_cost,
            }
            for target in order
        ]

        self._persist(decision, blueprint)
        workspace.trace.emit(
            trace.DECISION_FINALIZED,
            decision_id=decision.decision_id,
            selected=decision.selected["target"],
            confidence=decision.confidence,
            rejected=len(decision.rejected),
        )
        return blueprint

    def _persist(self, decision: Decision, blueprint: Blueprint) -> None:
        if self._state is None:
            return
        try:
            self._state.save_decision(decision)
        except SQLAlchemyError as exc:
            logger.warning("decision_persist_failed session_id=%s error=%s", decision.session_id, exc)
            blueprint.warnings.append(f"decision_persist_failed: {exc}")
