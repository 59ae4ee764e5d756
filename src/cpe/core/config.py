"""Planning engine runtime configuration definitions."""

from pathlib import Path
from typing import ClassVar

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from env and .env files."""

    app_name: str = "crawl-planning-engine"
    environment: str = Field(default="dev", pattern="^(dev|test|prod)$")
    db_url: str = "sqlite:///./cpe_state.db"
    _package_root: ClassVar[Path] = Path(__file__).resolve().parents[1]
    request_schema_path: str = str(_package_root / "contracts/plan_request.schema.json")

    default_budget_ms: float = Field(default=2000.0, gt=0)
    max_rounds: int = Field(default=50, ge=1)
    session_ttl_s: float = Field(default=600.0, gt=0)
    max_trace_events: int = Field(default=200, ge=1)

    high_cost_threshold_ms: float = Field(default=500.0, gt=0)
    conservative_cost_ms: float = Field(default=1000.0, gt=0)
    min_cost_samples: int = Field(default=5, ge=1)
    telemetry_lookback: int = Field(default=1000, ge=1)

    lookahead: int = Field(default=5, ge=1)
    branching_factor: int = Field(default=10, ge=1)
    confidence_floor: float = Field(default=0.3, ge=0.0, le=1.0)
    step_decay: float = Field(default=0.9, gt=0.0, le=1.0)
    max_backtracks: int = Field(default=3, ge=0)
    continue_threshold: float = Field(default=0.5, ge=0.0)

    exploration_strategy: str = Field(
        default="thompson-sampling",
        pattern="^(epsilon-greedy|ucb|thompson-sampling)$",
    )
    initial_epsilon: float = Field(default=0.2, ge=0.0, le=1.0)
    epsilon_decay: float = Field(default=0.99, gt=0.0, le=1.0)
    epsilon_min: float = Field(default=0.05, ge=0.0, le=1.0)
    low_time_threshold_s: float = Field(default=300.0, ge=0.0)
    exploration_seed: int | None = None

    max_per_host: int | None = Field(default=None, ge=1)
    blocked_hosts: list[str] = Field(default_factory=list)

    model_config = SettingsConfigDict(env_file=".env", env_prefix="CPE_")

    @classmethod
    def _resolve_contract_path(cls, configured_path: str) -> str:
        """Resolve the request contract path against CWD, then the package."""
        path = Path(configured_path)
        if path.is_absolute():
            return str(path)

        candidates = [
            Path.cwd() / path,
            cls._package_root / path,
            cls._package_root / "contracts" / path.name,
        ]
        for candidate in candidates:
            if candidate.exists():
                return str(candidate.resolve())

        return configured_path

    @model_validator(mode="after")
    def _normalize_paths(self) -> "Settings":
        self.request_schema_path = self._resolve_contract_path(self.request_schema_path)
        return self
