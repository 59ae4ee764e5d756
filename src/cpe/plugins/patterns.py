"""Single-tick plugin proposing well-known hub paths under each target's origin."""

from __future__ import annotations

from collections.abc import Sequence
from urllib.parse import urljoin, urlsplit

from cpe.core.plugins import TickResult
from cpe.core.types import ActionCandidate, PluginProposal
from cpe.ws.workspace import WorkspaceView

DEFAULT_PATTERNS = ("/news/", "/world/", "/sitemap.xml")


class PatternProposerPlugin:
    """Offers fixed-confidence candidate paths; finishes after one tick."""

    def __init__(
        self,
        *,
        patterns: Sequence[str] = DEFAULT_PATTERNS,
        base_urls: Sequence[str] | None = None,
        confidence: float = 0.6,
        category: str = "hub",
        estimated_yield: float = 40.0,
        name: str = "pattern-proposer",
        priority: int = 30,
    ) -> None:
        self.name = name
        self.priority = priority
        self._patterns = list(patterns)
        self._base_urls = list(base_urls) if base_urls is not None else None
        self._confidence = confidence
        self._category = category
        self._estimated_yield = estimated_yield

    def tick(self, workspace: WorkspaceView, remaining_budget_ms: float) -> TickResult:
        _ = remaining_budget_ms
        bases = self._base_urls if self._base_urls is not None else self._origins(workspace)
        known = {candidate.target for candidate in workspace.targets()}
        proposals = []
        for base in bases:
            for pattern in self._patterns:
                target = urljoin(base, pattern)
                if target in known:
                    continue
                known.add(target)
                proposals.append(
                    PluginProposal(
                        source=self.name,
                        candidate=ActionCandidate(
                            target=target,
                            category=self._category,
                            estimated_yield=self._estimated_yield,
                            confidence=self._confidence,
                            source=self.name,
                        ),
                        confidence=self._confidence,
                        rationale=f"known hub pattern {pattern} under {base}",
                    )
                )
        return TickResult(done=True, proposals=proposals)

    @staticmethod
    def _origins(workspace: WorkspaceView) -> list[str]:
        origins: list[str] = []
        for candidate in workspace.candidates:
            parts = urlsplit(candidate.target)
            if parts.scheme not in ("http", "https") or not parts.netloc:
                continue
            origin = f"{parts.scheme}://{parts.netloc}/"
            if origin not in origins:
                origins.append(origin)
        return origins
