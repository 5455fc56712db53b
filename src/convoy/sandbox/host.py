"""Host isolation provider — runs session commands as local subprocesses.

Provides no real isolation.  It declares no mount, env-allowlist, secret or
resource support and only the ``full`` network mode, so negotiation picks it
only for policies that request nothing it cannot do, or as an explicit
fallback.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from convoy.errors import SessionError
from convoy.sandbox.models import ExecResult, IsolationCapabilities, IsolationPolicy

logger = logging.getLogger(__name__)


@dataclass
class _HostSession:
    session_id: str
    policy: IsolationPolicy
    running: bool = True


class HostProvider:
    """Isolation provider backed by plain ``asyncio`` subprocesses."""

    name = "host"

    def __init__(self) -> None:
        self._sessions: dict[str, _HostSession] = {}

    def capabilities(self) -> IsolationCapabilities:
        return IsolationCapabilities(
            mounts=False,
            network_modes=["full"],
            env_allowlist=False,
            secrets=False,
            resources=False,
        )

    async def start(self, policy: IsolationPolicy) -> str:
        session_id = f"host-{uuid.uuid4().hex[:12]}"
        self._sessions[session_id] = _HostSession(session_id=session_id, policy=policy)
        logger.debug("Started host session %s", session_id)
        return session_id

    async def exec(
        self,
        session_id: str,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run ``command`` and wait for it, killing it once ``timeout`` expires."""
        self._require_running(session_id)
        if not command:
            raise ValueError("exec requires a non-empty command")

        proc_env = None
        if env is not None:
            proc_env = {**os.environ, **env}

        proc = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=proc_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Command %s in session %s timed out after %ss, killing",
                command[0],
                session_id,
                timeout,
            )
            proc.kill()
            stdout, stderr = await proc.communicate()
            return ExecResult(
                exit_code=proc.returncode if proc.returncode is not None else -1,
                stdout=stdout.decode(errors="replace"),
                stderr=stderr.decode(errors="replace"),
                timed_out=True,
            )
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        return ExecResult(
            exit_code=proc.returncode if proc.returncode is not None else 1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

    async def stop(self, session_id: str) -> None:
        self._require_running(session_id).running = False

    async def destroy(self, session_id: str) -> None:
        """Forget a session.  Stopped sessions may be destroyed."""
        if self._sessions.pop(session_id, None) is None:
            raise SessionError(f"Unknown session: {session_id}")
        logger.debug("Destroyed host session %s", session_id)

    def _require_running(self, session_id: str) -> _HostSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionError(f"Unknown session: {session_id}")
        if not session.running:
            raise SessionError(f"Session {session_id} is not running")
        return session
