"""Canonical domain types shared across planning layers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from urllib.parse import urlsplit, urlunsplit
from uuid import uuid4


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= float(value) <= 1.0:
        raise ValueError(f"{name} must be normalized between 0 and 1, got {value!r}")


def clamp_unit(value: float) -> float:
    """Clamp a score into the [0, 1] range."""
    return max(0.0, min(1.0, float(value)))


def canonical_target(target: str) -> str | None:
    """Normalized http(s) URL without fragment, or None when malformed."""
    try:
        parts = urlsplit(target.strip())
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        return None
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or "/", parts.query, ""))


class PlanningStatus(str, Enum):
    """Terminal status of one planning session."""

    READY = "ready"
    PARTIAL = "partial"
    NO_ACTIONABLE_CANDIDATES = "no-actionable-candidates"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(slots=True)
class ActionCandidate:
    """Canonical action descriptor under evaluation."""

    target: str
    operation: str = "fetch"
    category: str = "unknown"
    estimated_yield: float = 50.0
    estimated_requests: float = 10.0
    estimated_latency_ms: float | None = None
    confidence: float = 0.7
    source: str = "upstream"
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _check_unit("candidate confidence", self.confidence)

    @property
    def host(self) -> str:
        return (urlsplit(self.target).hostname or "").lower()

    @property
    def arm_key(self) -> str:
        """Bandit arm key: target category x action type."""
        return f"{self.category}:{self.operation}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActionCandidate:
        latency = data.get("estimated_latency_ms")
        return cls(
            target=str(data["target"]),
            operation=str(data.get("operation", "fetch")),
            category=str(data.get("category", "unknown")),
            estimated_yield=float(data.get("estimated_yield", 50.0)),
            estimated_requests=float(data.get("estimated_requests", 10.0)),
            estimated_latency_ms=float(latency) if latency is not None else None,
            confidence=float(data.get("confidence", 0.7)),
            source=str(data.get("source", "upstream")),
            metadata=dict(data.get("metadata", {})),
        )


@dataclass(slots=True, frozen=True)
class PluginProposal:
    """One plugin's suggested action; never mutated after creation."""

    source: str
    candidate: ActionCandidate
    confidence: float
    rationale: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    proposal_id: str = field(default_factory=lambda: str(uuid4()))

    def __post_init__(self) -> None:
        _check_unit("proposal confidence", self.confidence)


@dataclass(slots=True, frozen=True)
class Scorecard:
    """Multi-dimensional evaluation of one candidate."""

    coverage: float
    cost: float
    compliance: float
    risk: float
    confidence: float
    axes: dict[str, float] = field(default_factory=dict)
    cost_known: bool = True

    def __post_init__(self) -> None:
        for name in ("coverage", "cost", "compliance", "risk", "confidence"):
            _check_unit(name, getattr(self, name))
        for name, value in self.axes.items():
            _check_unit(name, value)

    def as_dict(self) -> dict[str, Any]:
        return {
            "coverage": self.coverage,
            "cost": self.cost,
            "compliance": self.compliance,
            "risk": self.risk,
            "confidence": self.confidence,
            "axes": dict(self.axes),
            "cost_known": self.cost_known,
        }


@dataclass(slots=True, frozen=True)
class Decision:
    """Append-only audit record of one arbitration outcome."""

    session_id: str
    selected: dict[str, Any]
    rejected: tuple[dict[str, Any], ...]
    rationale: str
    confidence: float
    decision_id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def as_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "session_id": self.session_id,
            "selected": self.selected,
            "rejected": list(self.rejected),
            "rationale": self.rationale,
            "confidence": self.confidence,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True, frozen=True)
class TelemetryRecord:
    """One observed operation cost reported by the fetch layer."""

    operation: str
    host: str
    duration_ms: float
    result_count: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(slots=True, frozen=True)
class CostEstimate:
    """Derived cost summary for one (operation, host) key.

    `known` is False when too few samples exist; the duration fields are then
    None and callers must apply their own conservative default.
    """

    operation: str
    host: str
    samples: int
    mean_ms: float | None = None
    p50_ms: float | None = None
    p95_ms: float | None = None

    @property
    def known(self) -> bool:
        return self.mean_ms is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation,
            "host": self.host,
            "samples": self.samples,
            "mean_ms": self.mean_ms,
            "p50_ms": self.p50_ms,
            "p95_ms": self.p95_ms,
            "known": self.known,
        }


@dataclass(slots=True, frozen=True)
class GoalScores:
    """Per-candidate Pareto scoring result."""

    breadth: float
    depth: float
    speed: float
    efficiency: float
    total: float = 0.0
    is_pareto: bool = False

    def vector(self) -> tuple[float, float, float, float]:
        return (self.breadth, self.depth, self.speed, self.efficiency)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class TraceEvent:
    """Structured real-time event emitted while a session plans."""

    kind: str
    session_id: str
    seq: int
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "session_id": self.session_id,
            "seq": self.seq,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class Blueprint:
    """Final planning output: ordered plan, scorecards and rationale."""

    session_id: str
    status: PlanningStatus
    plan: list[dict[str, Any]] = field(default_factory=list)
    scorecards: dict[str, dict[str, Any]] = field(default_factory=dict)
    rationale: list[str] = field(default_factory=list)
    decision: Decision | None = None
    budget_exceeded: bool = False
    plugin_states: dict[str, str] = field(default_factory=dict)
    goal_scores: dict[str, dict[str, Any]] = field(default_factory=dict)
    pareto_frontier: list[str] = field(default_factory=list)
    lookahead: dict[str, Any] | None = None
    exploration: dict[str, Any] | None = None
    optimization_id: int | None = None
    warnings: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "plan": self.plan,
            "scorecards": self.scorecards,
            "rationale": self.rationale,
            "decision": self.decision.as_dict() if self.decision else None,
            "budget_exceeded": self.budget_exceeded,
            "plugin_states": self.plugin_states,
            "goal_scores": self.goal_scores,
            "pareto_frontier": self.pareto_frontier,
            "lookahead": self.lookahead,
            "exploration": self.exploration,
            "optimization_id": self.optimization_id,
            "warnings": self.warnings,
        }
