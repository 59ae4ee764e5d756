"""Reference-data-aware proposer: ranks external entities into URL templates."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import urlsplit

import httpx

from cpe.core.errors import ReferenceDataError
from cpe.core.plugins import TickResult
from cpe.core.types import ActionCandidate, PluginProposal
from cpe.ws.workspace import WorkspaceView

logger = logging.getLogger(__name__)

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(value: str) -> str:
    return _SLUG_RE.sub("-", value.lower()).strip("-")


@dataclass(slots=True, frozen=True)
class ReferenceEntity:
    name: str
    score: float = 0.0
    slug: str = ""

    @property
    def path_slug(self) -> str:
        return self.slug or slugify(self.name)


class ReferenceSource(Protocol):
    def fetch(self, timeout_s: float) -> list[ReferenceEntity]: ...


class StaticReferenceSource:
    """In-memory entity list."""

    def __init__(self, entities: Sequence[ReferenceEntity]) -> None:
        self._entities = list(entities)

    def fetch(self, timeout_s: float) -> list[ReferenceEntity]:
        _ = timeout_s
        return list(self._entities)


class HttpReferenceSource:
    """Fetches `[{"name", "score", "slug"?}, ...]` from an HTTP endpoint with a hard timeout."""

    def __init__(
        self,
        url: str,
        *,
        timeout_s: float = 2.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url
        self._timeout_s = timeout_s
        self._transport = transport

    def fetch(self, timeout_s: float) -> list[ReferenceEntity]:
        timeout = httpx.Timeout(max(0.01, min(self._timeout_s, timeout_s)))
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                response = client.get(self._url)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as exc:
            raise ReferenceDataError(f"Reference data timeout: {self._url}") from exc
        except httpx.HTTPStatusError as exc:
            raise ReferenceDataError(
                f"Reference data request failed (status={exc.response.status_code})",
                {"url": self._url},
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise ReferenceDataError(f"Reference data request failed: {exc}", {"url": self._url}) from exc

        if not isinstance(body, list):
            raise ReferenceDataError("Reference data response must be a JSON list", {"url": self._url})
        return [_entity_from_payload(item) for item in body if isinstance(item, dict) and item.get("name")]


def _entity_from_payload(item: dict[str, Any]) -> ReferenceEntity:
    return ReferenceEntity(
        name=str(item["name"]),
        score=float(item.get("score", 0.0)),
        slug=str(item.get("slug", "")),
    )


class ReferenceDataProposerPlugin:
    """First tick loads and ranks entities; later ticks emit one batch each."""

    def __init__(
        self,
        source: ReferenceSource,
        templates: Sequence[str],
        *,
        hosts: Sequence[str] | None = None,
        batch_size: int = 5,
        max_entities: int = 20,
        confidence: float = 0.65,
        category: str = "place-hub",
        estimated_yield: float = 60.0,
        name: str = "reference-data-proposer",
        priority: int = 20,
    ) -> None:
        self.name = name
        self.priority = priority
        self._source = source
        self._templates = list(templates)
        self._hosts = list(hosts) if hosts is not None else None
        self._batch_size = batch_size
        self._max_entities = max_entities
        self._confidence = confidence
        self._category = category
        self._estimated_yield = estimated_yield
        self._queue: list[tuple[str, ReferenceEntity]] | None = None

    def tick(self, workspace: WorkspaceView, remaining_budget_ms: float) -> TickResult:
        if self._queue is None:
            entities = self._source.fetch(timeout_s=remaining_budget_ms / 1000.0)
            ranked = sorted(entities, key=lambda entity: (-entity.score, entity.name))[: self._max_entities]
            hosts = self._hosts if self._hosts is not None else self._candidate_hosts(workspace)
            self._queue = [(host, entity) for entity in ranked for host in hosts]
            logger.debug(
                "reference_entities_ranked session_id=%s entities=%s hosts=%s",
                workspace.session_id,
                len(ranked),
                len(hosts),
            )
            return TickResult(done=not self._queue)

        batch, self._queue = self._queue[: self._batch_size], self._queue[self._batch_size :]
        proposals = []
        for host, entity in batch:
            for template in self._templates:
                target = template.format(host=host, slug=entity.path_slug)
                proposals.append(
                    PluginProposal(
                        source=self.name,
                        candidate=ActionCandidate(
                            target=target,
                            category=self._category,
                            estimated_yield=self._estimated_yield,
                            confidence=self._confidence,
                            source=self.name,
                            metadata={"entity": entity.name, "score": entity.score},
                        ),
                        confidence=self._confidence,
                        rationale=f"reference entity {entity.name} (score {entity.score:.2f}) in {template}",
                    )
                )
        return TickResult(done=not self._queue, proposals=proposals)

    @staticmethod
    def _candidate_hosts(workspace: WorkspaceView) -> list[str]:
        hosts: list[str] = []
        for candidate in workspace.candidates:
            host = urlsplit(candidate.target).netloc.lower()
            if host and host not in hosts:
                hosts.append(host)
        return hosts
