"""Isolation sandboxes: policy models, capability negotiation and providers."""

from convoy.sandbox.host import HostProvider
from convoy.sandbox.models import (
    ExecResult,
    IsolationCapabilities,
    IsolationPolicy,
    MountSpec,
    ResourceLimits,
    SecretBinding,
    UlimitSpec,
)
from convoy.sandbox.negotiation import IsolationProvider, find_mismatches, negotiate_policy
from convoy.sandbox.registry import ProviderRegistry

__all__ = [
    "ExecResult",
    "HostProvider",
    "IsolationCapabilities",
    "IsolationPolicy",
    "IsolationProvider",
    "MountSpec",
    "ProviderRegistry",
    "ResourceLimits",
    "SecretBinding",
    "UlimitSpec",
    "find_mismatches",
    "negotiate_policy",
]
