"""Capability negotiation between an isolation policy and a provider.

Pure functions of their inputs.  Negotiation runs once per session request;
nothing is cached between calls.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

from convoy.errors import CapabilityMismatchError
from convoy.sandbox.models import ExecResult, IsolationCapabilities, IsolationPolicy

logger = logging.getLogger(__name__)


@runtime_checkable
class IsolationProvider(Protocol):
    """A sandboxing backend.

    Every session operation raises :class:`~convoy.errors.SessionError` when
    the session id is unknown or the session is no longer running.
    """

    name: str

    def capabilities(self) -> IsolationCapabilities: ...

    async def start(self, policy: IsolationPolicy) -> str: ...

    async def exec(
        self,
        session_id: str,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult: ...

    async def stop(self, session_id: str) -> None: ...

    async def destroy(self, session_id: str) -> None: ...


def find_mismatches(
    capabilities: IsolationCapabilities, policy: IsolationPolicy
) -> list[str]:
    """Names of every requested policy attribute the provider cannot honour.

    Each attribute is checked independently; order is stable
    (mounts, network mode, env allowlist, secrets, resources).
    """
    mismatches: list[str] = []

    if policy.mounts and not capabilities.mounts:
        mismatches.append("mounts")

    if policy.network_mode is not None and policy.network_mode not in capabilities.network_modes:
        mismatches.append(f"networkMode({policy.network_mode})")

    if policy.env_allowlist and not capabilities.env_allowlist:
        mismatches.append("envAllowlist")

    if policy.secrets and not capabilities.secrets:
        mismatches.append("secrets")

    if policy.resources is not None and not policy.resources.is_empty() and not capabilities.resources:
        mismatches.append("resources")

    return mismatches


def negotiate_policy(
    provider: IsolationProvider,
    policy: IsolationPolicy,
    *,
    allow_fallback_to_host: bool = False,
    host_provider: IsolationProvider | None = None,
) -> IsolationProvider:
    """Pick the provider a session request may run on.

    Returns ``provider`` unchanged when it supports everything requested.
    With mismatches, returns ``host_provider`` if fallback is allowed and one
    was supplied.

    Raises:
        CapabilityMismatchError: mismatches exist and no fallback applies.
    """
    mismatches = find_mismatches(provider.capabilities(), policy)
    if not mismatches:
        return provider

    if allow_fallback_to_host and host_provider is not None:
        logger.warning(
            "Provider %s does not support %s; falling back to %s",
            provider.name,
            ", ".join(mismatches),
            host_provider.name,
        )
        return host_provider

    raise CapabilityMismatchError(provider.name, mismatches)
