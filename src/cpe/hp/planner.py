"""Hierarchical lookahead planner: branch-and-bound search with backtracking execution."""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from statistics import fmean
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from cpe.core.errors import NoCandidatesError
from cpe.core.types import ActionCandidate
from cpe.sm.manager import StateManager

logger = logging.getLogger(__name__)

PATTERN_SEPARATOR = ">"
TRANSFER_CONFIDENCE = 0.56


@dataclass(slots=True, frozen=True)
class SimState:
    """Simulated crawl state after a sequence of actions."""

    hubs_discovered: int = 0
    yield_collected: float = 0.0
    requests_made: float = 0.0
    momentum: float = 0.0


@dataclass(slots=True, frozen=True)
class PlanningProfile:
    """Search shape learned from a domain's closed plans."""

    domain: str
    avg_lookahead: float
    avg_branching: float
    sample_size: int
    shared_from: str | None = None

    @property
    def lookahead(self) -> int:
        return max(1, round(self.avg_lookahead))

    @property
    def branching_factor(self) -> int:
        return max(1, round(self.avg_branching))


@dataclass(slots=True, frozen=True)
class PlanGoal:
    yield_target: float | None = None
    hubs_target: int | None = None

    def reached(self, state: SimState) -> bool:
        if self.yield_target is not None and state.yield_collected >= self.yield_target:
            return True
        return self.hubs_target is not None and state.hubs_discovered >= self.hubs_target


@dataclass(slots=True)
class PlanNode:
    """One arena slot; parent and children are addressed by node id."""

    node_id: int
    parent_id: int | None
    action_index: int | None
    depth: int
    value: float
    cost: float
    confidence: float
    state: SimState
    children: list[int] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class Expansion:
    node_id: int
    value: float
    best_value: float


@dataclass(slots=True, frozen=True)
class PlanStep:
    action: ActionCandidate
    expected_value: float
    cost: float
    confidence: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "target": self.action.target,
            "operation": self.action.operation,
            "category": self.action.category,
            "expected_value": self.expected_value,
            "cost": self.cost,
            "confidence": self.confidence,
        }


@dataclass(slots=True)
class PlanResult:
    steps: list[PlanStep]
    predicted_outcome: float
    total_cost: float
    confidence: float
    nodes_explored: int
    goal_reached: bool
    candidates: list[ActionCandidate]
    nodes: list[PlanNode]
    expansions: list[Expansion]
    domain: str | None = None
    plan_id: int | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def sequence(self) -> list[ActionCandidate]:
        return [step.action for step in self.steps]

    @property
    def feasible(self) -> bool:
        return self.predicted_outcome > self.total_cost * 1.5

    def as_dict(self) -> dict[str, Any]:
        return {
            "sequence": [step.as_dict() for step in self.steps],
            "predicted_outcome": self.predicted_outcome,
            "total_cost": self.total_cost,
            "confidence": self.confidence,
            "nodes_explored": self.nodes_explored,
            "goal_reached": self.goal_reached,
            "feasible": self.feasible,
            "plan_id": self.plan_id,
        }


@dataclass(slots=True)
class Simulation:
    steps: list[PlanStep]
    final_state: SimState
    total_value: float
    total_cost: float
    stopped_early: bool

    @property
    def feasible(self) -> bool:
        return self.total_value > self.total_cost * 1.5


@dataclass(slots=True, frozen=True)
class StepOutcome:
    value: float
    success: bool = True


@dataclass(slots=True)
class ExecutionResult:
    executed: list[tuple[PlanStep, StepOutcome]]
    sequence: list[PlanStep]
    backtracks: int
    completed: bool
    accepted_final: bool = False

    @property
    def actual_outcome(self) -> float:
        return sum(outcome.value for _, outcome in self.executed)


StepExecutor = Callable[[ActionCandidate, int], "StepOutcome | float"]


def action_key(action: ActionCandidate) -> str:
    return action.arm_key


class HierarchicalPlanner:
    """Simulates multi-step action sequences before committing to them.

    Search runs over an explicit node arena with a max-heap on cumulative
    value. Nodes below half the best value seen are discarded unexpanded;
    nodes whose running confidence fell below `confidence_floor` are kept as
    leaves but never extended. With `adaptive` on, a domain's learned
    profile supplies lookahead and branching unless the caller passes them.
    """

    def __init__(
        self,
        *,
        state: StateManager | None = None,
        lookahead: int = 5,
        branching_factor: int = 10,
        confidence_floor: float = 0.3,
        step_decay: float = 0.9,
        prune_ratio: float = 0.5,
        adaptive: bool = True,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._state = state
        self.lookahead = lookahead
        self.branching_factor = branching_factor
        self.confidence_floor = confidence_floor
        self.step_decay = step_decay
        self.prune_ratio = prune_ratio
        self.adaptive = adaptive
        self._clock = clock
        self._hints: dict[str, dict[str, float]] = {}
        self._profiles: dict[str, PlanningProfile | None] = {}

    # simulation

    def predict(self, action: ActionCandidate, state: SimState) -> tuple[float, float, SimState]:
        """Return (value, cost, next state) for one simulated step."""
        base_value = action.estimated_yield
        value = base_value * (1.0 + state.momentum)
        next_state = SimState(
            hubs_discovered=state.hubs_discovered + 1,
            yield_collected=state.yield_collected + value,
            requests_made=state.requests_made + action.estimated_requests,
            momentum=state.momentum * 0.9 + ((value / base_value - 1.0) * 0.1 if base_value else 0.0),
        )
        return value, action.estimated_requests, next_state

    def simulate(self, sequence: Sequence[ActionCandidate], initial: SimState | None = None) -> Simulation:
        """Predict a fixed sequence step by step, stopping once confidence is too low."""
        current = initial or SimState()
        confidence = 1.0
        steps: list[PlanStep] = []
        total_value = total_cost = 0.0
        stopped_early = False
        for index, action in enumerate(sequence):
            value, cost, current = self.predict(action, current)
            confidence *= self.step_decay * action.confidence
            steps.append(PlanStep(action, value, cost, confidence))
            total_value += value
            total_cost += cost
            if confidence < self.confidence_floor:
                stopped_early = index < len(sequence) - 1
                logger.debug("simulation_stopped step=%s confidence=%.3f", index + 1, confidence)
                break
        return Simulation(steps, current, total_value, total_cost, stopped_early)

    # search

    def plan(
        self,
        actions: Sequence[ActionCandidate],
        *,
        lookahead: int | None = None,
        branching_factor: int | None = None,
        goal: PlanGoal | None = None,
        domain: str | None = None,
        initial: SimState | None = None,
        deadline_ms: float | None = None,
        record: bool = True,
    ) -> PlanResult:
        if not actions:
            raise NoCandidatesError("No actions to plan over")

        profile = None
        if domain and self.adaptive and lookahead is None and branching_factor is None:
            profile = self.profile(domain)
        lookahead = lookahead or (profile.lookahead if profile else self.lookahead)
        branching = branching_factor or (profile.branching_factor if profile else self.branching_factor)
        goal = goal or PlanGoal()
        hints = self.hints(domain) if domain else {}
        started = self._clock()

        arena = [PlanNode(0, None, None, 0, 0.0, 0.0, 1.0, initial or SimState())]
        counter = itertools.count()
        heap: list[tuple[float, int, int]] = [(-0.0, next(counter), 0)]
        expansions: list[Expansion] = []
        best_id, best_value = 0, 0.0
        goal_id: int | None = None
        nodes_explored = 0

        while heap and nodes_explored < branching * lookahead:
            if deadline_ms is not None and (self._clock() - started) * 1000.0 >= deadline_ms:
                logger.info("plan_deadline_reached nodes_explored=%s", nodes_explored)
                break
            _, _, node_id = heapq.heappop(heap)
            node = arena[node_id]
            nodes_explored += 1

            if node_id != 0 and goal.reached(node.state):
                if goal_id is None or node.value > arena[goal_id].value:
                    goal_id = node_id
                continue
            if node.depth >= lookahead:
                continue
            if node_id != 0 and node.confidence < self.confidence_floor:
                continue
            if node.value < best_value * self.prune_ratio:
                continue

            expansions.append(Expansion(node_id, node.value, best_value))
            for index in self._branch_order(actions, arena, node, hints)[:branching]:
                action = actions[index]
                value, cost, next_state = self.predict(action, node.state)
                child = PlanNode(
                    node_id=len(arena),
                    parent_id=node_id,
                    action_index=index,
                    depth=node.depth + 1,
                    value=node.value + value,
                    cost=node.cost + cost,
                    confidence=node.confidence * self.step_decay * action.confidence,
                    state=next_state,
                )
                arena.append(child)
                node.children.append(child.node_id)
                if child.value > best_value:
                    best_id, best_value = child.node_id, child.value
                heapq.heappush(heap, (-child.value, next(counter), child.node_id))

        final_id = goal_id if goal_id is not None else best_id
        result = self._extract(arena, final_id, actions, nodes_explored, expansions)
        result.goal_reached = goal_id is not None
        result.domain = domain
        logger.info(
            "plan_built domain=%s nodes_explored=%s steps=%s predicted=%.2f goal_reached=%s",
            domain,
            nodes_explored,
            len(result.steps),
            result.predicted_outcome,
            result.goal_reached,
        )
        if record and domain and self._state is not None and result.steps:
            try:
                result.plan_id = self._state.record_plan(
                    domain,
                    [step.as_dict() for step in result.steps],
                    result.predicted_outcome,
                    branching_factor=branching,
                )
            except SQLAlchemyError as exc:
                logger.warning("plan_record_failed domain=%s error=%s", domain, exc)
                result.warnings.append(f"plan_record_failed: {exc}")
        return result

    def _branch_order(
        self,
        actions: Sequence[ActionCandidate],
        arena: list[PlanNode],
        node: PlanNode,
        hints: dict[str, float],
    ) -> list[int]:
        """Unused actions, most promising first; learned hints only reorder them."""
        path = self._path_indices(arena, node.node_id)
        used = set(path)
        recent = [action_key(actions[i]) for i in path[-2:]]

        def priority(index: int) -> float:
            key = action_key(actions[index])
            hint = max(
                hints.get(PATTERN_SEPARATOR.join(recent[-n:] + [key]), 0.0) if len(recent) >= n else 0.0
                for n in (1, 2)
            )
            return actions[index].estimated_yield * (1.0 + 0.25 * hint)

        remaining = [index for index in range(len(actions)) if index not in used]
        return sorted(remaining, key=lambda index: (-priority(index), index))

    @staticmethod
    def _path_indices(arena: list[PlanNode], node_id: int) -> list[int]:
        path: list[int] = []
        current: int | None = node_id
        while current is not None:
            node = arena[current]
            if node.action_index is not None:
                path.append(node.action_index)
            current = node.parent_id
        path.reverse()
        return path

    def _extract(
        self,
        arena: list[PlanNode],
        node_id: int,
        actions: Sequence[ActionCandidate],
        nodes_explored: int,
        expansions: list[Expansion],
    ) -> PlanResult:
        steps: list[PlanStep] = []
        node = arena[node_id]
        while node.parent_id is not None and node.action_index is not None:
            parent = arena[node.parent_id]
            steps.append(
                PlanStep(
                    action=actions[node.action_index],
                    expected_value=node.value - parent.value,
                    cost=node.cost - parent.cost,
                    confidence=node.confidence,
                )
            )
            node = parent
        steps.reverse()
        final = arena[node_id]
        return PlanResult(
            steps=steps,
            predicted_outcome=final.value,
            total_cost=final.cost,
            confidence=final.confidence,
            nodes_explored=nodes_explored,
            goal_reached=False,
            candidates=list(actions),
            nodes=arena,
            expansions=expansions,
        )

    # execution

    def execute(
        self,
        plan: PlanResult,
        step_executor: StepExecutor,
        *,
        max_backtracks: int = 3,
        continue_threshold: float = 0.5,
    ) -> ExecutionResult:
        """Run a plan step by step, re-planning the remainder when a step underperforms."""
        sequence = list(plan.steps)
        excluded: set[str] = set()
        result = ExecutionResult(executed=[], sequence=sequence, backtracks=0, completed=False)
        state = SimState()
        position = 0

        while position < len(sequence):
            step = sequence[position]
            raw = step_executor(step.action, position)
            outcome = raw if isinstance(raw, StepOutcome) else StepOutcome(float(raw))
            result.executed.append((step, outcome))
            _, _, state = self.predict(step.action, state)

            underperformed = not outcome.success or outcome.value < step.expected_value * continue_threshold
            if not underperformed or result.accepted_final:
                position += 1
                continue

            if result.backtracks >= max_backtracks:
                logger.warning("plan_backtracks_exhausted domain=%s step=%s", plan.domain, position)
                result.accepted_final = True
                position += 1
                continue

            result.backtracks += 1
            excluded.add(step.action.target)
            done = {executed.action.target for executed, _ in result.executed}
            pool = [a for a in plan.candidates if a.target not in done and a.target not in excluded]
            logger.info(
                "plan_backtrack domain=%s step=%s backtracks=%s remaining=%s",
                plan.domain,
                position,
                result.backtracks,
                len(pool),
            )
            position += 1
            if not pool:
                sequence = sequence[:position]
                continue
            replanned = self.plan(
                pool,
                lookahead=max(1, len(plan.steps) - position),
                domain=plan.domain,
                initial=state,
                record=False,
            )
            sequence = sequence[:position] + replanned.steps

        result.sequence = sequence
        result.completed = not result.accepted_final
        self._close(plan, result, continue_threshold)
        return result

    def _close(self, plan: PlanResult, result: ExecutionResult, continue_threshold: float) -> None:
        if plan.plan_id is None or self._state is None:
            return
        success = result.completed and result.actual_outcome >= plan.predicted_outcome * continue_threshold
        executed = [step.as_dict() for step, _ in result.executed]
        try:
            self._state.close_plan(plan.plan_id, result.actual_outcome, success, plan=executed)
        except SQLAlchemyError as exc:
            logger.warning("plan_close_failed plan_id=%s error=%s", plan.plan_id, exc)
            plan.warnings.append(f"plan_close_failed: {exc}")

    # heuristics

    def hints(self, domain: str) -> dict[str, float]:
        if domain not in self._hints and self._state is not None:
            try:
                rows = self._state.heuristics(domain)
            except SQLAlchemyError as exc:
                logger.warning("heuristics_load_failed domain=%s error=%s", domain, exc)
                rows = []
            self._hints[domain] = {row["pattern"]: row["confidence"] for row in rows}
        return self._hints.get(domain, {})

    def profile(self, domain: str) -> PlanningProfile | None:
        if domain not in self._profiles:
            row = None
            if self._state is not None:
                try:
                    row = self._state.get_planning_profile(domain)
                except SQLAlchemyError as exc:
                    logger.warning("planning_profile_load_failed domain=%s error=%s", domain, exc)
            self._profiles[domain] = (
                PlanningProfile(
                    domain=domain,
                    avg_lookahead=row["avg_lookahead"],
                    avg_branching=row["branching_factor"],
                    sample_size=row["sample_size"],
                    shared_from=row["shared_from"],
                )
                if row is not None
                else None
            )
        return self._profiles[domain]

    def learn_heuristics(self, domain: str, limit: int = 200, *, share: bool = True) -> list[dict[str, Any]]:
        """Mine recurring 2-3 action subsequences from closed plans, ranked by success count.

        Also learns the domain's average plan length and branching factor.
        With `share`, the patterns seed every other planned domain that has
        no heuristics of its own, at `TRANSFER_CONFIDENCE`.
        """
        if self._state is None:
            return []
        try:
            rows = self._state.plan_history(domain, limit=limit)
        except SQLAlchemyError as exc:
            logger.warning("heuristics_learn_failed domain=%s error=%s", domain, exc)
            return []

        seen_in_success: Counter[str] = Counter()
        seen_total: Counter[str] = Counter()
        for row in rows:
            keys = [f"{step['category']}:{step['operation']}" for step in row["plan"]]
            patterns = self._subsequences(keys)
            seen_total.update(patterns)
            if row["success"]:
                seen_in_success.update(patterns)

        learned = []
        for pattern, successes in seen_in_success.most_common(10):
            total = seen_total[pattern]
            learned.append(
                {
                    "pattern": pattern,
                    "success_count": successes,
                    "total_count": total,
                    "confidence": successes / total,
                }
            )
        profile = self._profile_from(domain, rows)

        try:
            self._state.drop_shared_heuristics(domain)
            for item in learned:
                self._state.upsert_heuristic(domain=domain, **item)
            if profile is not None:
                self._state.save_planning_profile(
                    domain=domain,
                    avg_lookahead=profile.avg_lookahead,
                    branching_factor=profile.avg_branching,
                    sample_size=profile.sample_size,
                )
        except SQLAlchemyError as exc:
            logger.warning("heuristics_persist_failed domain=%s error=%s", domain, exc)

        self._hints[domain] = {item["pattern"]: item["confidence"] for item in learned}
        if profile is not None:
            self._profiles[domain] = profile
        logger.info("heuristics_learned domain=%s patterns=%s plans=%s", domain, len(learned), len(rows))
        if share and learned:
            self.share_heuristics(domain, [item["pattern"] for item in learned], profile)
        return learned

    def share_heuristics(
        self,
        source: str,
        patterns: Sequence[str],
        profile: PlanningProfile | None = None,
    ) -> list[str]:
        """Seed planned domains without heuristics from `source`; returns the domains seeded."""
        if self._state is None or not patterns:
            return []
        seeded: list[str] = []
        try:
            for target in self._state.planned_domains():
                if target == source:
                    continue
                if not self._state.seed_heuristics(
                    domain=target,
                    patterns=patterns,
                    confidence=TRANSFER_CONFIDENCE,
                    shared_from=source,
                ):
                    continue
                seeded.append(target)
                self._hints.pop(target, None)
                if profile is not None and self._state.get_planning_profile(target) is None:
                    self._state.save_planning_profile(
                        domain=target,
                        avg_lookahead=profile.avg_lookahead,
                        branching_factor=profile.avg_branching,
                        sample_size=0,
                        shared_from=source,
                    )
                    self._profiles.pop(target, None)
        except SQLAlchemyError as exc:
            logger.warning("heuristics_share_failed source=%s error=%s", source, exc)
        if seeded:
            logger.info("heuristics_shared source=%s targets=%s", source, ",".join(seeded))
        return seeded

    def _profile_from(self, domain: str, rows: Sequence[dict[str, Any]]) -> PlanningProfile | None:
        if not rows:
            return None
        branching = [row["branching_factor"] for row in rows if row.get("branching_factor")]
        return PlanningProfile(
            domain=domain,
            avg_lookahead=fmean(len(row["plan"]) for row in rows),
            avg_branching=fmean(branching) if branching else float(self.branching_factor),
            sample_size=len(rows),
        )

    @staticmethod
    def _subsequences(keys: Sequence[str]) -> set[str]:
        patterns: set[str] = set()
        for length in (2, 3):
            for start in range(len(keys) - length + 1):
                patterns.add(PATTERN_SEPARATOR.join(keys[start : start + length]))
        return patterns

    def stats(self) -> dict[str, Any]:
        return {
            "lookahead": self.lookahead,
            "branching_factor": self.branching_factor,
            "confidence_floor": self.confidence_floor,
            "step_decay": self.step_decay,
            "adaptive": self.adaptive,
            "domains_with_heuristics": len(self._hints),
            "domains_with_profiles": sum(1 for item in self._profiles.values() if item is not None),
        }
