"""Session-scoped shared workspace and its lifecycle registry."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any
from uuid import uuid4

from cpe.core.errors import WorkspaceConflictError, WorkspaceNotFoundError
from cpe.core.trace import TraceStream
from cpe.core.types import ActionCandidate, PluginProposal

logger = logging.getLogger(__name__)

DEFAULT_TTL_S = 10 * 60.0
DEFAULT_TERMINAL_TTL_S = 2 * 60.0


@dataclass(slots=True)
class SessionWorkspace:
    """Shared mutable state for one planning run.

    Only the host loop mutates a workspace; plugins see a `WorkspaceView`.
    """

    session_id: str
    context_key: str
    candidates: list[ActionCandidate]
    trace: TraceStream
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    last_touched: float = 0.0
    status: str = "planning"
    proposals: list[PluginProposal] = field(default_factory=list)
    annotations: dict[str, Any] = field(default_factory=dict)

    def add_proposal(self, proposal: PluginProposal) -> None:
        self.proposals.append(proposal)

    def annotate(self, annotations: Mapping[str, Any]) -> None:
        """Merge annotations: dicts update, lists extend, scalars overwrite."""
        for key, value in annotations.items():
            current = self.annotations.get(key)
            if isinstance(current, dict) and isinstance(value, Mapping):
                current.update(value)
            elif isinstance(current, list) and isinstance(value, (list, tuple)):
                current.extend(value)
            elif isinstance(value, Mapping):
                self.annotations[key] = dict(value)
            elif isinstance(value, (list, tuple)):
                self.annotations[key] = list(value)
            else:
                self.annotations[key] = value

    def view(self) -> WorkspaceView:
        return WorkspaceView(self)


class WorkspaceView:
    """Read-only window over a workspace handed to plugin ticks."""

    __slots__ = ("_workspace",)

    def __init__(self, workspace: SessionWorkspace) -> None:
        self._workspace = workspace

    @property
    def session_id(self) -> str:
        return self._workspace.session_id

    @property
    def context_key(self) -> str:
        return self._workspace.context_key

    @property
    def candidates(self) -> tuple[ActionCandidate, ...]:
        return tuple(self._workspace.candidates)

    @property
    def proposals(self) -> tuple[PluginProposal, ...]:
        return tuple(self._workspace.proposals)

    @property
    def metadata(self) -> Mapping[str, Any]:
        return MappingProxyType(self._workspace.metadata)

    @property
    def annotations(self) -> Mapping[str, Any]:
        return MappingProxyType(self._workspace.annotations)

    def targets(self) -> list[ActionCandidate]:
        """Upstream candidates followed by proposed candidates, in arrival order."""
        return list(self._workspace.candidates) + [
            proposal.candidate for proposal in self._workspace.proposals
        ]


class WorkspaceRegistry:
    """Creates, tracks and reclaims session workspaces.

    At most one active workspace exists per context key. Workspaces expire
    after `ttl_s` without activity; finished ones stay readable for
    `terminal_ttl_s` so observers can replay their trace.
    """

    def __init__(
        self,
        *,
        ttl_s: float = DEFAULT_TTL_S,
        terminal_ttl_s: float = DEFAULT_TERMINAL_TTL_S,
        max_trace_events: int = 200,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self._ttl_s = ttl_s
        self._terminal_ttl_s = terminal_ttl_s
        self._max_trace_events = max_trace_events
        self._clock = clock
        self._id_factory = id_factory
        self._sessions: dict[str, SessionWorkspace] = {}
        self._keys: dict[str, str] = {}
        self._lock = threading.Lock()

    def open(
        self,
        context_key: str,
        candidates: Iterable[ActionCandidate],
        metadata: Mapping[str, Any] | None = None,
    ) -> SessionWorkspace:
        self.purge_expired()
        with self._lock:
            existing_id = self._keys.get(context_key)
            if existing_id is not None:
                raise WorkspaceConflictError(context_key, existing_id)

            session_id = self._id_factory()
            now = self._clock()
            workspace = SessionWorkspace(
                session_id=session_id,
                context_key=context_key,
                candidates=list(candidates),
                trace=TraceStream(session_id, max_events=self._max_trace_events),
                metadata=dict(metadata or {}),
                created_at=now,
                last_touched=now,
            )
            self._sessions[session_id] = workspace
            self._keys[context_key] = session_id

        logger.info("workspace_opened session_id=%s context_key=%s", session_id, context_key)
        return workspace

    def get(self, session_id: str) -> SessionWorkspace:
        with self._lock:
            workspace = self._sessions.get(session_id)
            if workspace is None:
                raise WorkspaceNotFoundError(session_id)
            workspace.last_touched = self._clock()
            return workspace

    def close(self, session_id: str, status: str = "ready") -> SessionWorkspace:
        """Mark a workspace terminal and release its context key."""
        with self._lock:
            workspace = self._sessions.get(session_id)
            if workspace is None:
                raise WorkspaceNotFoundError(session_id)
            workspace.status = status
            workspace.last_touched = self._clock()
            if self._keys.get(workspace.context_key) == session_id:
                del self._keys[workspace.context_key]
        logger.info("workspace_closed session_id=%s status=%s", session_id, status)
        return workspace

    def purge_expired(self) -> list[str]:
        """Drop workspaces past their inactivity or terminal TTL."""
        now = self._clock()
        purged: list[str] = []
        with self._lock:
            for session_id, workspace in list(self._sessions.items()):
                active = workspace.status == "planning"
                ttl = self._ttl_s if active else self._terminal_ttl_s
                if now - workspace.last_touched < ttl:
                    continue
                if active:
                    workspace.status = "expired"
                del self._sessions[session_id]
                if self._keys.get(workspace.context_key) == session_id:
                    del self._keys[workspace.context_key]
                purged.append(session_id)
        for session_id in purged:
            logger.info("workspace_expired session_id=%s", session_id)
        return purged

    def active_count(self) -> int:
        with self._lock:
            return len(self._keys)
