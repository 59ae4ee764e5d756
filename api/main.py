"""FastAPI interface for the crawl-planning engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from cpe.core import trace
from cpe.core.config import Settings
from cpe.core.errors import PlanRequestError, WorkspaceConflictError, WorkspaceNotFoundError
from cpe.core.types import TelemetryRecord, TraceEvent
from cpe.epl.processor import PlanRequestProcessor
from cpe.ps.runner import PLANNING, PlanningRunner
from cpe.sm.manager import StateManager

logger = logging.getLogger(__name__)

SSE_QUEUE_SIZE = 200
SSE_KEEPALIVE_S = 15.0


class TelemetryIn(BaseModel):
    """One observed operation cost reported by the fetch layer."""

    operation: str = Field(min_length=1)
    host: str = Field(min_length=1)
    duration_ms: float = Field(ge=0)
    result_count: int = Field(default=0, ge=0)


class OutcomeIn(BaseModel):
    """Executed action result fed back into the learners."""

    arm_key: str = Field(min_length=1)
    reward: float = Field(ge=0, le=1)
    domain: str = "default"
    session_id: str | None = None
    actual_value: float | None = None


class ForceIn(BaseModel):
    mode: str = Field(pattern="^(explore|exploit|auto)$")
    duration_s: float = Field(default=10.0, gt=0)
    strategy: str | None = Field(default=None, pattern="^(epsilon-greedy|ucb|thompson-sampling)$")


def _sse_format(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


def build_app(
    state_manager: StateManager | None = None,
    settings: Settings | None = None,
    runner: PlanningRunner | None = None,
) -> FastAPI:
    """Build FastAPI app with an explicit dependency container in ``app.state``."""
    settings = settings or Settings()
    sm = state_manager or StateManager(settings.db_url)

    app = FastAPI(title="Crawl Planning Engine API", version="0.1.0")
    app.state.settings = settings
    app.state.sm = sm
    app.state.epl = PlanRequestProcessor(settings.request_schema_path)
    app.state.runner = runner or PlanningRunner(settings, state=sm)

    @app.post("/plans")
    def create_plan(request: Request, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        """Run one planning session and return its blueprint."""
        try:
            plan_request = request.app.state.epl.ingest(payload)
            blueprint = request.app.state.runner.run(plan_request)
        except PlanRequestError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except WorkspaceConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return blueprint.as_dict()

    @app.post("/plans/start", status_code=202)
    def start_plan(request: Request, payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
        """Open a session and plan it in the background; follow it on /plans/{id}/events."""
        try:
            plan_request = request.app.state.epl.ingest(payload)
            session_id = request.app.state.runner.start(plan_request)
        except PlanRequestError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except WorkspaceConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"session_id": session_id, "status": PLANNING}

    @app.get("/plans/{session_id}")
    def get_plan(request: Request, session_id: str) -> dict[str, Any]:
        try:
            return request.app.state.runner.session(session_id).as_dict()
        except WorkspaceNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/plans/{session_id}/cancel")
    def cancel_plan(request: Request, session_id: str) -> dict[str, Any]:
        try:
            cancelled = request.app.state.runner.cancel(session_id)
        except WorkspaceNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"session_id": session_id, "cancelled": cancelled}

    @app.get("/plans/{session_id}/events")
    async def stream_plan_events(
        request: Request,
        session_id: str,
        since: int = Query(0, ge=0),
    ) -> StreamingResponse:
        """Replay a session's buffered trace events, then follow it live until it completes."""
        try:
            workspace = request.app.state.runner.workspaces.get(session_id)
        except WorkspaceNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[TraceEvent] = asyncio.Queue(maxsize=SSE_QUEUE_SIZE)

        def offer(event: TraceEvent) -> None:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("sse_queue_full session_id=%s dropping seq=%s", session_id, event.seq)

        unsubscribe = workspace.trace.subscribe(lambda event: loop.call_soon_threadsafe(offer, event))
        backlog = workspace.trace.history(since_seq=since)
        finished = workspace.status != PLANNING

        async def event_iterator() -> AsyncIterator[str]:
            last_seq = since
            try:
                for event in backlog:
                    last_seq = event.seq
                    yield _sse_format(event.kind, event.as_dict())
                    if event.kind == trace.SESSION_COMPLETED:
                        return
                while not (finished and queue.empty()):
                    if await request.is_disconnected():
                        break
                    try:
                        event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_S)
                    except TimeoutError:
                        if workspace.status != PLANNING and queue.empty():
                            break
                        yield ": keepalive\n\n"
                        continue
                    if event.seq <= last_seq:
                        continue
                    last_seq = event.seq
                    yield _sse_format(event.kind, event.as_dict())
                    if event.kind == trace.SESSION_COMPLETED:
                        break
            finally:
                unsubscribe()

        return StreamingResponse(event_iterator(), media_type="text/event-stream")

    @app.post("/telemetry")
    def ingest_telemetry(request: Request, body: TelemetryIn) -> dict[str, object]:
        record = TelemetryRecord(
            operation=body.operation,
            host=body.host.lower(),
            duration_ms=body.duration_ms,
            result_count=body.result_count,
        )
        try:
            request.app.state.runner.record_telemetry(record)
        except SQLAlchemyError as exc:
            logger.warning("telemetry_persist_failed host=%s error=%s", record.host, exc)
            raise HTTPException(status_code=503, detail="telemetry_persist_failed") from exc
        return {"status": "recorded", "operation": record.operation, "host": record.host}

    @app.post("/outcomes")
    def ingest_outcome(request: Request, body: OutcomeIn) -> dict[str, object]:
        try:
            return request.app.state.runner.record_outcome(
                arm_key=body.arm_key,
                reward=body.reward,
                domain=body.domain,
                session_id=body.session_id,
                actual_value=body.actual_value,
            )
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc

    @app.get("/decisions")
    def list_decisions(
        request: Request,
        session_id: str | None = Query(None),
        limit: int = Query(100, ge=1, le=1000),
    ) -> dict[str, object]:
        decisions = request.app.state.runner.decisions(session_id=session_id, limit=limit)
        return {"items": [decision.as_dict() for decision in decisions]}

    @app.get("/explorer/stats")
    def explorer_stats(
        request: Request,
        domain: str = Query("default"),
        strategy: str | None = Query(None, pattern="^(epsilon-greedy|ucb|thompson-sampling)$"),
    ) -> dict[str, object]:
        return request.app.state.runner.explorer(strategy).stats(domain)

    @app.post("/explorer/force")
    def force_exploration(request: Request, body: ForceIn) -> dict[str, object]:
        """Force pure explore or exploit for a while; ``auto`` lifts the override."""
        runner = request.app.state.runner
        runner.force_exploration(body.mode, body.duration_s, strategy=body.strategy)
        explorer = runner.explorer(body.strategy)
        return {
            "strategy": explorer.strategy,
            "mode": body.mode,
            "forced_rate": explorer.forced_rate(),
        }

    return app


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the crawl-planning engine API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    import uvicorn

    uvicorn.run(app, host=args.host, port=args.port)
    return 0


app = build_app()

__all__ = ["app", "build_app", "main"]


if __name__ == "__main__":
    raise SystemExit(main())
