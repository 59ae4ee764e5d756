"""Plan request intake layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jsonschema import Draft202012Validator

from cpe.core.errors import PlanRequestError
from cpe.core.types import ActionCandidate


@dataclass(slots=True)
class PlanRequest:
    """Validated planning request with per-request overrides."""

    context_key: str
    domain: str
    candidates: list[ActionCandidate]
    budget_ms: float | None = None
    goal_weights: dict[str, float] | None = None
    progress: dict[str, Any] = field(default_factory=dict)
    exploration_strategy: str | None = None
    lookahead: int | None = None
    branching_factor: int | None = None
    time_remaining_s: float | None = None
    goal: dict[str, float] | None = None


class PlanRequestProcessor:
    """Validates incoming plan requests against JSON Schema."""

    def __init__(self, schema_path: str) -> None:
        schema = json.loads(Path(schema_path).read_text(encoding="utf-8"))
        self._validator = Draft202012Validator(schema)

    def ingest(self, raw_request: dict[str, Any]) -> PlanRequest:
        """Validate a raw request and convert it to a `PlanRequest`."""
        errors = sorted(self._validator.iter_errors(raw_request), key=str)
        if errors:
            details = "; ".join(err.message for err in errors)
            raise PlanRequestError(
                f"Invalid plan request: {details}",
                {"errors": [err.message for err in errors]},
            )

        context_key = str(raw_request["context_key"])
        weights = raw_request.get("goal_weights")
        lookahead = raw_request.get("lookahead")
        branching = raw_request.get("branching_factor")
        budget = raw_request.get("budget_ms")
        remaining = raw_request.get("time_remaining_s")
        return PlanRequest(
            context_key=context_key,
            domain=str(raw_request.get("domain", context_key)),
            candidates=[ActionCandidate.from_dict(item) for item in raw_request["candidates"]],
            budget_ms=float(budget) if budget is not None else None,
            goal_weights={key: float(value) for key, value in weights.items()} if weights else None,
            progress=dict(raw_request.get("progress", {})),
            exploration_strategy=raw_request.get("exploration_strategy"),
            lookahead=int(lookahead) if lookahead is not None else None,
            branching_factor=int(branching) if branching is not None else None,
            time_remaining_s=float(remaining) if remaining is not None else None,
            goal=dict(raw_request["goal"]) if raw_request.get("goal") else None,
        )
