"""State Manager backed by SQLite via SQLAlchemy.

Holds the planning engine's persisted records: decisions, telemetry, goal
optimization history, hierarchical plans, planning heuristics and profiles,
exploration decisions/outcomes, learned domain coefficients and shared bandit
arms.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    DateTime,
    Engine,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    desc,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from cpe.core.types import Decision, TelemetryRecord


def _now() -> datetime:
    return datetime.now(UTC)


def _utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on reload; stored values are always UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Base(DeclarativeBase):
    """Declarative base for SQLite models."""


class DecisionRow(Base):
    """Append-only arbitration audit log."""

    __tablename__ = "decisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    decision_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    selected_json: Mapped[str] = mapped_column(Text, nullable=False)
    rejected_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    rationale: Mapped[str] = mapped_column(Text, nullable=False, default="")
    confidence: Mapped[float] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class TelemetryRow(Base):
    """Append-only operation cost observations reported by the fetch layer."""

    __tablename__ = "telemetry"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    host: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    duration_ms: Mapped[float] = mapped_column(nullable=False)
    result_count: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class GoalOptimizationRow(Base):
    """Goal scoring history used to learn per-domain weight profiles."""

    __tablename__ = "goal_optimizations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    breadth: Mapped[float] = mapped_column(nullable=False)
    depth: Mapped[float] = mapped_column(nullable=False)
    speed: Mapped[float] = mapped_column(nullable=False)
    efficiency: Mapped[float] = mapped_column(nullable=False)
    total: Mapped[float] = mapped_column(nullable=False)
    weights_json: Mapped[str] = mapped_column(Text, nullable=False)
    selected_target: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_pareto: Mapped[bool] = mapped_column(nullable=False, default=False)
    success_score: Mapped[float | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class HierarchicalPlanRow(Base):
    """Surviving lookahead plans and, once executed, their actual outcome."""

    __tablename__ = "hierarchical_plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    plan_json: Mapped[str] = mapped_column(Text, nullable=False)
    predicted_outcome: Mapped[float] = mapped_column(nullable=False)
    actual_outcome: Mapped[float | None] = mapped_column(nullable=True)
    success: Mapped[bool | None] = mapped_column(nullable=True)
    branching_factor: Mapped[int | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class PlanningHeuristicRow(Base):
    """Recurring action subsequences mined from successful plans."""

    __tablename__ = "planning_heuristics"
    __table_args__ = (UniqueConstraint("domain", "pattern", name="uq_heuristic_domain_pattern"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    pattern: Mapped[str] = mapped_column(Text, nullable=False)
    success_count: Mapped[int] = mapped_column(nullable=False, default=0)
    total_count: Mapped[int] = mapped_column(nullable=False, default=0)
    confidence: Mapped[float] = mapped_column(nullable=False, default=0.0)
    shared_from: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class PlanningProfileRow(Base):
    """Learned per-domain search shape: average plan length and branching."""

    __tablename__ = "planning_profiles"

    domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    avg_lookahead: Mapped[float] = mapped_column(nullable=False)
    branching_factor: Mapped[float] = mapped_column(nullable=False)
    sample_size: Mapped[int] = mapped_column(nullable=False, default=0)
    shared_from: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class ExplorationDecisionRow(Base):
    """One explore/exploit selection."""

    __tablename__ = "exploration_decisions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    strategy: Mapped[str] = mapped_column(String(32), nullable=False)
    exploration_rate: Mapped[float] = mapped_column(nullable=False)
    selected_arm: Mapped[str] = mapped_column(String(255), nullable=False)
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default="exploit")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class ExplorationOutcomeRow(Base):
    """Observed reward for one pulled arm."""

    __tablename__ = "exploration_outcomes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    arm: Mapped[str] = mapped_column(String(255), nullable=False)
    reward: Mapped[float] = mapped_column(nullable=False)
    exploration_rate: Mapped[float] = mapped_column(nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class DomainExplorationCoefficientRow(Base):
    """Learned optimal exploration rate per domain."""

    __tablename__ = "domain_exploration_coefficients"

    domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    optimal_epsilon: Mapped[float] = mapped_column(nullable=False)
    sample_size: Mapped[int] = mapped_column(nullable=False)
    average_reward: Mapped[float] = mapped_column(nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class BanditArmRow(Base):
    """Shared cross-session bandit statistics."""

    __tablename__ = "bandit_arms"

    domain: Mapped[str] = mapped_column(String(255), primary_key=True)
    arm_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    pulls: Mapped[int] = mapped_column(nullable=False, default=0)
    total_reward: Mapped[float] = mapped_column(nullable=False, default=0.0)
    alpha: Mapped[float] = mapped_column(nullable=False, default=1.0)
    beta: Mapped[float] = mapped_column(nullable=False, default=1.0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now)


class StateManager:
    """CRUD gateway for the planning engine's persisted records."""

    def __init__(self, db_url: str) -> None:
        self._engine: Engine = create_engine(db_url, future=True)
        Base.metadata.create_all(self._engine)

    def dispose(self) -> None:
        self._engine.dispose()

    # decisions

    def save_decision(self, decision: Decision) -> None:
        """Append one finalized decision."""
        with Session(self._engine) as session:
            session.add(
                DecisionRow(
                    decision_id=decision.decision_id,
                    session_id=decision.session_id,
                    selected_json=json.dumps(decision.selected, ensure_ascii=False),
                    rejected_json=json.dumps(list(decision.rejected), ensure_ascii=False),
                    rationale=decision.rationale,
                    confidence=decision.confidence,
                    created_at=decision.created_at,
                )
            )
            session.commit()

    def get_decision(self, decision_id: str) -> Decision | None:
        with Session(self._engine) as session:
            row = session.execute(
                select(DecisionRow).where(DecisionRow.decision_id == decision_id)
            ).scalar_one_or_none()
            return self._decision_from_row(row) if row is not None else None

    def list_decisions(self, session_id: str | None = None, limit: int = 100) -> list[Decision]:
        """Decisions in finalization order, optionally for one session."""
        query = select(DecisionRow).order_by(DecisionRow.id)
        if session_id is not None:
            query = query.where(DecisionRow.session_id == session_id)
        with Session(self._engine) as session:
            rows = session.execute(query.limit(max(0, limit))).scalars()
            return [self._decision_from_row(row) for row in rows]

    @staticmethod
    def _decision_from_row(row: DecisionRow) -> Decision:
        return Decision(
            session_id=row.session_id,
            selected=json.loads(row.selected_json),
            rejected=tuple(json.loads(row.rejected_json)),
            rationale=row.rationale,
            confidence=row.confidence,
            decision_id=row.decision_id,
            created_at=_utc(row.created_at),
        )

    # telemetry

    def record_telemetry(self, record: TelemetryRecord) -> None:
        with Session(self._engine) as session:
            session.add(
                TelemetryRow(
                    operation=record.operation,
                    host=record.host.lower(),
                    duration_ms=record.duration_ms,
                    result_count=record.result_count,
                    created_at=record.created_at,
                )
            )
            session.commit()

    def recent_telemetry(self, limit: int = 1000) -> list[TelemetryRecord]:
        """Most recent telemetry records ordered from oldest to newest."""
        with Session(self._engine) as session:
            rows = list(
                session.execute(
                    select(TelemetryRow).order_by(desc(TelemetryRow.id)).limit(max(0, limit))
                ).scalars()
            )
        rows.reverse()
        return [
            TelemetryRecord(
                operation=row.operation,
                host=row.host,
                duration_ms=row.duration_ms,
                result_count=row.result_count,
                created_at=_utc(row.created_at),
            )
            for row in rows
        ]

    # goal optimizations

    def record_goal_optimization(
        self,
        *,
        domain: str,
        breadth: float,
        depth: float,
        speed: float,
        efficiency: float,
        total: float,
        weights: Mapping[str, float],
        selected_target: str = "",
        is_pareto: bool = False,
    ) -> int:
        with Session(self._engine) as session:
            row = GoalOptimizationRow(
                domain=domain,
                breadth=breadth,
                depth=depth,
                speed=speed,
                efficiency=efficiency,
                total=total,
                weights_json=json.dumps(dict(weights), sort_keys=True),
                selected_target=selected_target,
                is_pareto=is_pareto,
            )
            session.add(row)
            session.commit()
            return row.id

    def update_goal_success(self, optimization_id: int, success_score: float) -> bool:
        with Session(self._engine) as session:
            result = session.execute(
                update(GoalOptimizationRow)
                .where(GoalOptimizationRow.id == optimization_id)
                .values(success_score=success_score)
            )
            session.commit()
            return result.rowcount > 0

    def get_goal_optimization(self, optimization_id: int) -> dict[str, Any] | None:
        with Session(self._engine) as session:
            row = session.get(GoalOptimizationRow, optimization_id)
            return self._goal_row_to_dict(row) if row is not None else None

    def goal_history(self, domain: str, limit: int = 100, *, scored_only: bool = True) -> list[dict[str, Any]]:
        """Newest-first goal optimization rows for a domain."""
        query = select(GoalOptimizationRow).where(GoalOptimizationRow.domain == domain)
        if scored_only:
            query = query.where(GoalOptimizationRow.success_score.is_not(None))
        query = query.order_by(desc(GoalOptimizationRow.id)).limit(max(0, limit))
        with Session(self._engine) as session:
            return [self._goal_row_to_dict(row) for row in session.execute(query).scalars()]

    @staticmethod
    def _goal_row_to_dict(row: GoalOptimizationRow) -> dict[str, Any]:
        return {
            "id": row.id,
            "domain": row.domain,
            "breadth": row.breadth,
            "depth": row.depth,
            "speed": row.speed,
            "efficiency": row.efficiency,
            "total": row.total,
            "weights": json.loads(row.weights_json),
            "selected_target": row.selected_target,
            "is_pareto": row.is_pareto,
            "success_score": row.success_score,
            "created_at": _utc(row.created_at),
        }

    # hierarchical plans

    def record_plan(
        self,
        domain: str,
        plan: Sequence[Mapping[str, Any]],
        predicted_outcome: float,
        branching_factor: int | None = None,
    ) -> int:
        with Session(self._engine) as session:
            row = HierarchicalPlanRow(
                domain=domain,
                plan_json=json.dumps([dict(step) for step in plan], ensure_ascii=False),
                predicted_outcome=predicted_outcome,
                branching_factor=branching_factor,
            )
            session.add(row)
            session.commit()
            return row.id

    def close_plan(
        self,
        plan_id: int,
        actual_outcome: float,
        success: bool,
        plan: Sequence[Mapping[str, Any]] | None = None,
    ) -> bool:
        """Attach the actual outcome; `plan` replaces the steps when execution re-planned."""
        values: dict[str, Any] = {"actual_outcome": actual_outcome, "success": success}
        if plan is not None:
            values["plan_json"] = json.dumps([dict(step) for step in plan], ensure_ascii=False)
        with Session(self._engine) as session:
            result = session.execute(
                update(HierarchicalPlanRow).where(HierarchicalPlanRow.id == plan_id).values(**values)
            )
            session.commit()
            return result.rowcount > 0

    def plan_history(self, domain: str, limit: int = 200) -> list[dict[str, Any]]:
        """Newest-first closed plans for a domain."""
        query = (
            select(HierarchicalPlanRow)
            .where(HierarchicalPlanRow.domain == domain)
            .where(HierarchicalPlanRow.success.is_not(None))
            .order_by(desc(HierarchicalPlanRow.id))
            .limit(max(0, limit))
        )
        with Session(self._engine) as session:
            return [
                {
                    "id": row.id,
                    "domain": row.domain,
                    "plan": json.loads(row.plan_json),
                    "predicted_outcome": row.predicted_outcome,
                    "actual_outcome": row.actual_outcome,
                    "success": row.success,
                    "branching_factor": row.branching_factor,
                    "created_at": _utc(row.created_at),
                }
                for row in session.execute(query).scalars()
            ]

    def planned_domains(self) -> list[str]:
        query = select(HierarchicalPlanRow.domain).distinct().order_by(HierarchicalPlanRow.domain)
        with Session(self._engine) as session:
            return list(session.execute(query).scalars())

    # planning heuristics

    def upsert_heuristic(
        self,
        *,
        domain: str,
        pattern: str,
        success_count: int,
        total_count: int,
        confidence: float,
    ) -> None:
        with Session(self._engine) as session:
            row = session.execute(
                select(PlanningHeuristicRow)
                .where(PlanningHeuristicRow.domain == domain)
                .where(PlanningHeuristicRow.pattern == pattern)
            ).scalar_one_or_none()
            if row is None:
                row = PlanningHeuristicRow(domain=domain, pattern=pattern)
                session.add(row)
            row.success_count = success_count
            row.total_count = total_count
            row.confidence = confidence
            row.shared_from = None
            row.updated_at = _now()
            session.commit()

    def seed_heuristics(
        self,
        *,
        domain: str,
        patterns: Sequence[str],
        confidence: float,
        shared_from: str,
    ) -> bool:
        """Copy patterns into a domain that has none yet; False if it already has its own."""
        with Session(self._engine) as session:
            existing = session.execute(
                select(PlanningHeuristicRow.id).where(PlanningHeuristicRow.domain == domain).limit(1)
            ).first()
            if existing is not None:
                return False
            for pattern in patterns:
                session.add(
                    PlanningHeuristicRow(
                        domain=domain,
                        pattern=pattern,
                        confidence=confidence,
                        shared_from=shared_from,
                    )
                )
            session.commit()
            return True

    def drop_shared_heuristics(self, domain: str) -> int:
        """Remove patterns another domain seeded here, before the domain learns its own."""
        with Session(self._engine) as session:
            result = session.execute(
                delete(PlanningHeuristicRow)
                .where(PlanningHeuristicRow.domain == domain)
                .where(PlanningHeuristicRow.shared_from.is_not(None))
            )
            session.commit()
            return result.rowcount

    def heuristics(self, domain: str) -> list[dict[str, Any]]:
        query = (
            select(PlanningHeuristicRow)
            .where(PlanningHeuristicRow.domain == domain)
            .order_by(desc(PlanningHeuristicRow.confidence), PlanningHeuristicRow.pattern)
        )
        with Session(self._engine) as session:
            return [
                {
                    "domain": row.domain,
                    "pattern": row.pattern,
                    "success_count": row.success_count,
                    "total_count": row.total_count,
                    "confidence": row.confidence,
                    "shared_from": row.shared_from,
                    "updated_at": _utc(row.updated_at),
                }
                for row in session.execute(query).scalars()
            ]

    def save_planning_profile(
        self,
        *,
        domain: str,
        avg_lookahead: float,
        branching_factor: float,
        sample_size: int,
        shared_from: str | None = None,
    ) -> None:
        with Session(self._engine) as session:
            row = session.get(PlanningProfileRow, domain)
            if row is None:
                row = PlanningProfileRow(domain=domain, avg_lookahead=avg_lookahead, branching_factor=branching_factor)
                session.add(row)
            row.avg_lookahead = avg_lookahead
            row.branching_factor = branching_factor
            row.sample_size = sample_size
            row.shared_from = shared_from
            row.updated_at = _now()
            session.commit()

    def get_planning_profile(self, domain: str) -> dict[str, Any] | None:
        with Session(self._engine) as session:
            row = session.get(PlanningProfileRow, domain)
            if row is None:
                return None
            return {
                "domain": row.domain,
                "avg_lookahead": row.avg_lookahead,
                "branching_factor": row.branching_factor,
                "sample_size": row.sample_size,
                "shared_from": row.shared_from,
                "updated_at": _utc(row.updated_at),
            }

    # exploration

    def record_exploration_decision(
        self,
        *,
        domain: str,
        strategy: str,
        exploration_rate: float,
        selected_arm: str,
        mode: str,
    ) -> None:
        with Session(self._engine) as session:
            session.add(
                ExplorationDecisionRow(
                    domain=domain,
                    strategy=strategy,
                    exploration_rate=exploration_rate,
                    selected_arm=selected_arm,
                    mode=mode,
                )
            )
            session.commit()

    def exploration_decision_count(self, domain: str) -> int:
        with Session(self._engine) as session:
            rows = session.execute(
                select(ExplorationDecisionRow.id).where(ExplorationDecisionRow.domain == domain)
            )
            return len(rows.scalars().all())

    def record_exploration_outcome(
        self,
        *,
        domain: str,
        arm: str,
        reward: float,
        exploration_rate: float,
    ) -> None:
        with Session(self._engine) as session:
            session.add(
                ExplorationOutcomeRow(
                    domain=domain,
                    arm=arm,
                    reward=reward,
                    exploration_rate=exploration_rate,
                )
            )
            session.commit()

    def exploration_outcomes(self, domain: str, limit: int = 100) -> list[dict[str, Any]]:
        query = (
            select(ExplorationOutcomeRow)
            .where(ExplorationOutcomeRow.domain == domain)
            .order_by(desc(ExplorationOutcomeRow.id))
            .limit(max(0, limit))
        )
        with Session(self._engine) as session:
            return [
                {
                    "arm": row.arm,
                    "reward": row.reward,
                    "exploration_rate": row.exploration_rate,
                    "created_at": _utc(row.created_at),
                }
                for row in session.execute(query).scalars()
            ]

    def save_domain_coefficient(
        self,
        *,
        domain: str,
        optimal_epsilon: float,
        sample_size: int,
        average_reward: float,
        updated_at: datetime | None = None,
    ) -> None:
        with Session(self._engine) as session:
            row = session.get(DomainExplorationCoefficientRow, domain)
            if row is None:
                row = DomainExplorationCoefficientRow(domain=domain)
                session.add(row)
            row.optimal_epsilon = optimal_epsilon
            row.sample_size = sample_size
            row.average_reward = average_reward
            row.updated_at = updated_at or _now()
            session.commit()

    def get_domain_coefficient(self, domain: str) -> dict[str, Any] | None:
        with Session(self._engine) as session:
            row = session.get(DomainExplorationCoefficientRow, domain)
            if row is None:
                return None
            return {
                "domain": row.domain,
                "optimal_epsilon": row.optimal_epsilon,
                "sample_size": row.sample_size,
                "average_reward": row.average_reward,
                "updated_at": _utc(row.updated_at),
            }

    # bandit arms

    def increment_arm(self, domain: str, arm_key: str, reward: float) -> None:
        """Apply one pull atomically in SQL so concurrent sessions never lose updates."""
        statement = (
            update(BanditArmRow)
            .where(BanditArmRow.domain == domain)
            .where(BanditArmRow.arm_key == arm_key)
            .values(
                pulls=BanditArmRow.pulls + 1,
                total_reward=BanditArmRow.total_reward + reward,
                alpha=BanditArmRow.alpha + reward,
                beta=BanditArmRow.beta + (1.0 - reward),
                updated_at=_now(),
            )
        )
        for attempt in range(2):
            with Session(self._engine) as session:
                if session.execute(statement).rowcount > 0:
                    session.commit()
                    return
                session.add(
                    BanditArmRow(
                        domain=domain,
                        arm_key=arm_key,
                        pulls=1,
                        total_reward=reward,
                        alpha=1.0 + reward,
                        beta=1.0 + (1.0 - reward),
                    )
                )
                try:
                    session.commit()
                    return
                except IntegrityError:
                    session.rollback()
                    if attempt == 1:
                        raise

    def load_arms(self, domain: str) -> list[dict[str, Any]]:
        query = select(BanditArmRow).where(BanditArmRow.domain == domain).order_by(BanditArmRow.arm_key)
        with Session(self._engine) as session:
            return [
                {
                    "arm_key": row.arm_key,
                    "pulls": row.pulls,
                    "total_reward": row.total_reward,
                    "alpha": row.alpha,
                    "beta": row.beta,
                }
                for row in session.execute(query).scalars()
            ]
