from pathlib import Path

import pytest
from sqlalchemy.exc import OperationalError

from cpe.core.errors import NoCandidatesError
from cpe.core.types import ActionCandidate
from cpe.hp.planner import TRANSFER_CONFIDENCE, HierarchicalPlanner, PlanGoal, SimState, StepOutcome
from cpe.sm.manager import StateManager


def _actions(confidence: float = 0.9) -> list[ActionCandidate]:
    return [
        ActionCandidate(
            f"https://news.example/{name}/",
            category=category,
            estimated_yield=value,
            estimated_requests=requests,
            confidence=confidence,
        )
        for name, category, value, requests in (
            ("world", "section", 100, 10),
            ("places", "place-hub", 80, 5),
            ("sport", "section", 60, 8),
            ("archive", "archive", 5, 30),
            ("tags", "tag", 2, 20),
        )
    ]


def test_planner_only_expands_nodes_within_prune_ratio() -> None:
    planner = HierarchicalPlanner(lookahead=4, branching_factor=5)

    result = planner.plan(_actions())

    assert result.expansions
    for expansion in result.expansions:
        assert expansion.value >= planner.prune_ratio * expansion.best_value
    expanded = {expansion.node_id for expansion in result.expansions}
    for node in result.nodes:
        if node.children:
            assert node.node_id in expanded
    assert result.nodes_explored <= 5 * 4


def test_planner_never_extends_low_confidence_nodes() -> None:
    planner = HierarchicalPlanner(lookahead=4, branching_factor=3)

    result = planner.plan(_actions(confidence=0.5)[:3])

    low = [node for node in result.nodes if node.node_id != 0 and node.confidence < 0.3]
    assert low
    assert all(not node.children for node in low)
    assert len(result.steps) <= 2


def test_planner_returns_best_sequence_without_repeating_actions() -> None:
    planner = HierarchicalPlanner(lookahead=3, branching_factor=5)

    result = planner.plan(_actions())

    targets = [step.action.target for step in result.steps]
    assert len(targets) == len(set(targets)) == 3
    assert targets[0] == "https://news.example/world/"
    assert result.predicted_outcome == pytest.approx(sum(step.expected_value for step in result.steps))
    assert result.confidence == pytest.approx((0.9 * 0.9) ** 3)
    assert result.feasible
    assert result.as_dict()["sequence"][0]["category"] == "section"


def test_planner_stops_at_goal() -> None:
    planner = HierarchicalPlanner(lookahead=5, branching_factor=5)

    result = planner.plan(_actions(), goal=PlanGoal(yield_target=150))

    assert result.goal_reached
    assert result.predicted_outcome >= 150
    assert all(not node.children for node in result.nodes if node.node_id != 0 and node.state.yield_collected >= 150)


def test_planner_rejects_empty_actions() -> None:
    with pytest.raises(NoCandidatesError):
        HierarchicalPlanner().plan([])


def test_planner_simulation_stops_when_confidence_collapses() -> None:
    planner = HierarchicalPlanner()

    simulation = planner.simulate(_actions(confidence=0.5)[:3])

    assert len(simulation.steps) == 2
    assert simulation.stopped_early
    assert simulation.final_state == SimState(hubs_discovered=2, yield_collected=180.0, requests_made=15.0)


def test_planner_execution_backtracks_and_excludes_failed_targets() -> None:
    planner = HierarchicalPlanner(lookahead=3, branching_factor=5)
    plan = planner.plan(_actions())
    failing = plan.steps[0].action.target

    def executor(action: ActionCandidate, position: int) -> StepOutcome:
        _ = position
        if action.target == failing:
            return StepOutcome(0.0, success=False)
        return StepOutcome(action.estimated_yield)

    result = planner.execute(plan, executor, max_backtracks=3)

    assert result.backtracks == 1
    assert result.completed
    assert not result.accepted_final
    executed = [step.action.target for step, _ in result.executed]
    assert executed[0] == failing
    assert failing not in executed[1:]
    assert len(executed) == 3


def test_planner_execution_accepts_plan_after_max_backtracks() -> None:
    planner = HierarchicalPlanner(lookahead=3, branching_factor=5)
    plan = planner.plan(_actions())

    result = planner.execute(plan, lambda action, position: 0.0, max_backtracks=2)

    assert result.backtracks == 2
    assert result.accepted_final
    assert not result.completed
    assert len(result.executed) == 3
    assert result.actual_outcome == 0.0


def test_planner_learns_heuristics_from_successful_plans(tmp_path: Path) -> None:
    sm = StateManager(f"sqlite:///{tmp_path / 'plans.db'}")
    planner = HierarchicalPlanner(state=sm, lookahead=3, branching_factor=5)

    for _ in range(3):
        plan = planner.plan(_actions(), domain="news.example")
        assert plan.plan_id is not None
        planner.execute(plan, lambda action, position: action.estimated_yield)

    learned = planner.learn_heuristics("news.example")

    patterns = {item["pattern"]: item for item in learned}
    assert "section:fetch>place-hub:fetch" in patterns
    assert patterns["section:fetch>place-hub:fetch"]["success_count"] == 3
    assert patterns["section:fetch>place-hub:fetch"]["confidence"] == 1.0
    assert HierarchicalPlanner(state=sm).hints("news.example")["section:fetch>place-hub:fetch"] == 1.0


def _train(planner: HierarchicalPlanner, domain: str, runs: int) -> None:
    for _ in range(runs):
        plan = planner.plan(_actions(), domain=domain)
        planner.execute(plan, lambda action, position: action.estimated_yield)


def test_planner_learned_profile_becomes_domain_default(tmp_path: Path) -> None:
    sm = StateManager(f"sqlite:///{tmp_path / 'profile.db'}")
    _train(HierarchicalPlanner(state=sm, lookahead=3, branching_factor=5), "news.example", runs=3)
    HierarchicalPlanner(state=sm).learn_heuristics("news.example", share=False)

    planner = HierarchicalPlanner(state=sm, lookahead=5, branching_factor=10)
    profile = planner.profile("news.example")

    assert profile is not None
    assert (profile.lookahead, profile.branching_factor, profile.sample_size) == (3, 5, 3)
    assert len(planner.plan(_actions(), domain="news.example", record=False).steps) == 3
    assert len(planner.plan(_actions(), domain="news.example", lookahead=2, record=False).steps) == 2
    fixed = HierarchicalPlanner(state=sm, lookahead=5, branching_factor=10, adaptive=False)
    assert len(fixed.plan(_actions(), domain="news.example", record=False).steps) == 5


def test_planner_shares_patterns_with_domains_that_have_none(tmp_path: Path) -> None:
    sm = StateManager(f"sqlite:///{tmp_path / 'share.db'}")
    trainer = HierarchicalPlanner(state=sm, lookahead=3, branching_factor=5)
    other_plan = trainer.plan(_actions(), domain="other.example")
    trainer.plan(_actions(), domain="own.example")
    sm.upsert_heuristic(
        domain="own.example", pattern="tag:fetch>archive:fetch", success_count=1, total_count=1, confidence=1.0
    )
    _train(trainer, "news.example", runs=2)

    learned = trainer.learn_heuristics("news.example")

    reader = HierarchicalPlanner(state=sm)
    shared = reader.hints("other.example")
    assert set(shared) == {item["pattern"] for item in learned}
    assert set(shared.values()) == {TRANSFER_CONFIDENCE}
    assert reader.hints("own.example") == {"tag:fetch>archive:fetch": 1.0}
    profile = reader.profile("other.example")
    assert profile is not None
    assert profile.shared_from == "news.example"
    assert profile.lookahead == 3
    assert reader.profile("own.example") is None

    assert other_plan.plan_id is not None
    sm.close_plan(other_plan.plan_id, actual_outcome=0.0, success=False)
    assert reader.learn_heuristics("other.example") == []
    assert HierarchicalPlanner(state=sm).hints("other.example") == {}
    assert sm.get_planning_profile("other.example")["shared_from"] is None


class UnreadableHistory(StateManager):
    def plan_history(self, domain: str, limit: int = 200) -> list[dict]:
        raise OperationalError("SELECT hierarchical_plans", {}, Exception("disk I/O error"))


class UnwritableHeuristics(StateManager):
    def drop_shared_heuristics(self, domain: str) -> int:
        raise OperationalError("DELETE planning_heuristics", {}, Exception("database is locked"))


def test_planner_heuristic_learning_is_best_effort(tmp_path: Path) -> None:
    unreadable = HierarchicalPlanner(state=UnreadableHistory(f"sqlite:///{tmp_path / 'read.db'}"))
    assert unreadable.learn_heuristics("news.example") == []

    sm = UnwritableHeuristics(f"sqlite:///{tmp_path / 'write.db'}")
    planner = HierarchicalPlanner(state=sm, lookahead=3, branching_factor=5)
    _train(planner, "news.example", runs=1)

    learned = planner.learn_heuristics("news.example")

    assert learned
    assert planner.hints("news.example") == {item["pattern"]: item["confidence"] for item in learned}
    assert sm.heuristics("news.example") == []
