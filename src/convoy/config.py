"""Configuration loading for Convoy.

Reads .convoy/config.yaml.  Pydantic models validate the schema; a handful of
environment variables override deployment-specific values.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from convoy.models import IssueDetail
from convoy.retry import DEFAULT_BASE_DELAY_MS, DEFAULT_MAX_DELAY_MS
from convoy.sandbox.models import IsolationPolicy

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str
    repo_path: str = "."
    base_branch: str = "main"


class OptionsConfig(BaseModel):
    """Run options.  CLI flags override these per run."""

    max_parallel_issues: int = Field(default=3, ge=1)
    resume: bool = False
    dry_run: bool = False  # Stop each issue after planning (phase 2)
    token_budget: int | None = Field(default=None, ge=1)  # Per issue
    fleet_token_budget: int | None = Field(default=None, ge=1)
    ambiguity_threshold: int = Field(default=5, ge=0)
    halt_on_ambiguity: bool = False


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay_ms: int = Field(default=DEFAULT_BASE_DELAY_MS, ge=0)
    max_delay_ms: int = Field(default=DEFAULT_MAX_DELAY_MS, ge=0)


class AgentConfig(BaseModel):
    """How agents are launched.

    ``command`` is an argv template, e.g.
    ``["claude", "--agent", "{agent}", "--context", "{context_path}"]``.
    """

    command: list[str] = Field(
        default_factory=lambda: ["convoy-agent", "{agent}", "{context_path}", "{output_path}"]
    )
    timeout_seconds: float = Field(default=1800, gt=0)
    phase_agents: dict[int, str] = Field(default_factory=dict)

    @field_validator("command")
    @classmethod
    def _validate_command(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("agent.command must contain at least the executable")
        return v


class IsolationConfig(BaseModel):
    provider: str = "host"
    allow_fallback_to_host: bool = False
    policy: IsolationPolicy = Field(default_factory=IsolationPolicy)
    phases: list[int] = Field(default_factory=lambda: [3, 4])  # Phases that need a sandboxed session


class ConvoyConfig(BaseModel):
    """Top-level Convoy configuration (matches .convoy/config.yaml)."""

    project: ProjectConfig
    options: OptionsConfig = Field(default_factory=OptionsConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    isolation: IsolationConfig = Field(default_factory=IsolationConfig)
    issues: list[IssueDetail] = Field(default_factory=list)
    state_dir: str = ".convoy"

    @model_validator(mode="after")
    def _unique_issue_numbers(self) -> ConvoyConfig:
        numbers = [issue.number for issue in self.issues]
        duplicates = sorted({n for n in numbers if numbers.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate issue numbers in config: {duplicates}")
        return self

    def repo_root(self, base: Path) -> Path:
        return (base / self.project.repo_path).resolve()

    def state_path(self, base: Path) -> Path:
        return (base / self.state_dir).resolve()


# ── Config Loader ────────────────────────────────────────────────────────────


def load_config(convoy_dir: Path) -> ConvoyConfig:
    """Load Convoy configuration from a .convoy/ directory.

    Args:
        convoy_dir: Path to the .convoy/ directory.

    Returns:
        Validated ConvoyConfig.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ValueError: If config validation fails.
    """
    config_path = convoy_dir / CONFIG_FILENAME
    if not config_path.exists():
        raise FileNotFoundError(f"Convoy config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = ConvoyConfig(**raw)

    # Environment variable overrides for deployment
    max_parallel = os.environ.get("CONVOY_MAX_PARALLEL")
    if max_parallel:
        try:
            value = int(max_parallel)
        except ValueError:
            raise ValueError(f"CONVOY_MAX_PARALLEL must be an integer, got {max_parallel!r}") from None
        if value < 1:
            raise ValueError(f"CONVOY_MAX_PARALLEL must be >= 1, got {value}")
        config.options.max_parallel_issues = value

    state_dir = os.environ.get("CONVOY_STATE_DIR")
    if state_dir:
        config.state_dir = state_dir

    provider = os.environ.get("CONVOY_ISOLATION_PROVIDER")
    if provider:
        config.isolation.provider = provider

    logger.info("Loaded Convoy config: project=%s, issues=%d", config.project.name, len(config.issues))
    return config
