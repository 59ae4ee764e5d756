"""Plugin contracts and registry for planning strategy plugins."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from cpe.core.types import PluginProposal

if TYPE_CHECKING:
    from cpe.ws.workspace import WorkspaceView


class PluginState(str, Enum):
    """Lifecycle of one plugin inside one planning session."""

    PENDING = "pending"
    TICKING = "ticking"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def active(self) -> bool:
        return self in (PluginState.PENDING, PluginState.TICKING)


@dataclass(slots=True)
class TickResult:
    """What one cooperative tick hands back to the host."""

    done: bool
    proposals: list[PluginProposal] = field(default_factory=list)
    annotations: dict[str, Any] = field(default_factory=dict)


class PlannerPlugin(Protocol):
    name: str
    priority: int

    def tick(self, workspace: WorkspaceView, remaining_budget_ms: float) -> TickResult: ...


PluginFactory = Callable[[], PlannerPlugin]


@dataclass(slots=True)
class PluginRegistry:
    """Registry of plugin factories; each session gets fresh plugin instances."""

    _factories: list[PluginFactory] = field(default_factory=list)

    def register(self, plugin: PlannerPlugin) -> None:
        """Register a shared, stateless plugin instance."""
        self._factories.append(lambda: plugin)

    def register_factory(self, factory: PluginFactory) -> None:
        """Register a factory for plugins that keep per-session tick state."""
        self._factories.append(factory)

    def instantiate(self) -> list[PlannerPlugin]:
        """Build the session's plugin set in descending priority order.

        Ties keep registration order, so execution order is deterministic.
        """
        plugins = [factory() for factory in self._factories]
        names = [plugin.name for plugin in plugins]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate plugin names registered: {sorted(names)}")
        return sorted(plugins, key=lambda plugin: -int(plugin.priority))

    def __len__(self) -> int:
        return len(self._factories)
