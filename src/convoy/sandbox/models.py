"""Isolation policy and provider capability models.

A policy is what a caller asks for; capabilities are what a provider
declares it can do.  Both are plain data owned by their producer and never
mutated by the negotiator.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, Field

# Provider-declared network modes are free-form strings; these are the
# modes the host and container providers understand.
NetworkMode = Literal["none", "bridge", "allowlist", "full", "host"]


class MountSpec(BaseModel):
    """A host path made visible inside a session."""

    path: str
    target: str | None = None  # Defaults to ``path`` inside the session
    read_only: bool = True


class SecretBinding(BaseModel):
    """A secret exposed to the session as an environment variable."""

    name: str
    env_var: str | None = None
    value: str = Field(default="", repr=False)


class UlimitSpec(BaseModel):
    name: str
    soft: int
    hard: int


class ResourceLimits(BaseModel):
    """Resource ceilings for one session.  ``None`` means unlimited."""

    cpu_shares: int | None = None
    memory_mb: int | None = None
    pids_limit: int | None = None
    ulimits: list[UlimitSpec] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return (
            self.cpu_shares is None
            and self.memory_mb is None
            and self.pids_limit is None
            and not self.ulimits
        )


class IsolationPolicy(BaseModel):
    """Requested isolation attributes for one session.

    Empty collections and ``None`` mean "not requested"; only requested
    attributes take part in negotiation.
    """

    mounts: list[MountSpec] = Field(default_factory=list)
    network_mode: str | None = None
    env_allowlist: list[str] = Field(default_factory=list)
    secrets: list[SecretBinding] = Field(default_factory=list)
    resources: ResourceLimits | None = None


class IsolationCapabilities(BaseModel):
    """What a provider declares it supports."""

    mounts: bool = False
    network_modes: list[str] = Field(default_factory=list)
    env_allowlist: bool = False
    secrets: bool = False
    resources: bool = False


@dataclass
class ExecResult:
    """Outcome of one command run inside a session."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out
