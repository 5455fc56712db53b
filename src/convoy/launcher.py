"""Agent launcher — runs agent CLI invocations inside an isolation session.

An invocation is rendered from the configured argv template and executed
through the session's provider with a hard timeout.  Expiry kills the
process and comes back as a timed-out failure, which the retry layer treats
like any other failure.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from convoy.budget import TokenTracker
from convoy.errors import AgentTimeoutError
from convoy.retry import ExhaustedHook, RetryExecutor, RetryOptions, RetryResult
from convoy.sandbox.models import ExecResult
from convoy.sandbox.negotiation import IsolationProvider

logger = logging.getLogger(__name__)

# Agents report usage on stdout as e.g. "tokens_used: 1234"
_TOKEN_PATTERN = re.compile(r"\btokens?(?:[ _]used)?\s*[:=]\s*(\d+)", re.IGNORECASE)


@dataclass(frozen=True)
class SessionHandle:
    """A live isolation session owned by one issue pipeline."""

    provider: IsolationProvider
    session_id: str

    async def exec(
        self,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        return await self.provider.exec(self.session_id, command, cwd=cwd, env=env, timeout=timeout)


@dataclass(frozen=True)
class AgentInvocation:
    agent: str
    issue_number: int
    phase: int
    context_path: str
    output_path: str
    timeout_seconds: float | None = None


@dataclass
class AgentResult:
    agent: str
    success: bool
    exit_code: int | None
    timed_out: bool
    duration: float
    stdout: str
    stderr: str
    token_usage: int | None
    output_path: str
    output_exists: bool
    error: str | None = None


def parse_token_usage(stdout: str) -> int | None:
    """Last token count reported on stdout, if any."""
    matches = _TOKEN_PATTERN.findall(stdout)
    return int(matches[-1]) if matches else None


class AgentLauncher:
    """Renders and runs agent commands.

    ``command`` is an argv template; ``{agent}``, ``{context_path}``,
    ``{output_path}``, ``{issue_number}``, ``{phase}`` and ``{worktree}``
    are substituted per invocation.
    """

    def __init__(self, command: Sequence[str], timeout_seconds: float = 1800) -> None:
        if not command:
            raise ValueError("Agent command template must not be empty")
        self.command = list(command)
        self.timeout_seconds = timeout_seconds

    def render(self, invocation: AgentInvocation, worktree_path: Path) -> list[str]:
        values = {
            "agent": invocation.agent,
            "context_path": invocation.context_path,
            "output_path": invocation.output_path,
            "issue_number": str(invocation.issue_number),
            "phase": str(invocation.phase),
            "worktree": str(worktree_path),
        }
        return [part.format(**values) for part in self.command]

    async def launch(
        self,
        invocation: AgentInvocation,
        worktree_path: Path,
        session: SessionHandle,
    ) -> AgentResult:
        timeout = invocation.timeout_seconds or self.timeout_seconds
        argv = self.render(invocation, worktree_path)
        env = {
            "CONVOY_AGENT": invocation.agent,
            "CONVOY_ISSUE_NUMBER": str(invocation.issue_number),
            "CONVOY_PHASE": str(invocation.phase),
            "CONVOY_CONTEXT_PATH": invocation.context_path,
            "CONVOY_OUTPUT_PATH": invocation.output_path,
        }

        logger.info(
            "Launching agent %s for issue #%d phase %d",
            invocation.agent,
            invocation.issue_number,
            invocation.phase,
            extra={"issue_number": invocation.issue_number, "phase": invocation.phase},
        )
        start = time.monotonic()
        result = await session.exec(argv, cwd=str(worktree_path), env=env, timeout=timeout)
        duration = time.monotonic() - start

        output_exists = Path(invocation.output_path).exists()
        error = None
        if result.timed_out:
            error = f"Agent {invocation.agent} timed out after {timeout}s"
        elif result.exit_code != 0:
            stderr_tail = result.stderr.strip().splitlines()[-1:] or [""]
            error = f"Agent {invocation.agent} exited with code {result.exit_code}: {stderr_tail[0]}"
        elif not output_exists:
            error = f"Agent {invocation.agent} did not write {invocation.output_path}"

        return AgentResult(
            agent=invocation.agent,
            success=error is None,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
            duration=duration,
            stdout=result.stdout,
            stderr=result.stderr,
            token_usage=parse_token_usage(result.stdout),
            output_path=invocation.output_path,
            output_exists=output_exists,
            error=error,
        )


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30_000


async def launch_with_retry(
    launcher: AgentLauncher,
    invocation: AgentInvocation,
    *,
    worktree_path: Path,
    session: SessionHandle,
    retry_executor: RetryExecutor,
    settings: RetrySettings,
    token_tracker: TokenTracker | None = None,
    on_exhausted: ExhaustedHook | None = None,
) -> RetryResult[AgentResult]:
    """Launch an agent through the retry executor and record its token usage."""

    async def attempt(n: int) -> AgentResult:
        result = await launcher.launch(invocation, worktree_path, session)
        if result.timed_out:
            raise AgentTimeoutError(
                result.error or "Agent timed out",
                agent=invocation.agent,
                timeout_seconds=invocation.timeout_seconds or launcher.timeout_seconds,
            )
        if not result.success:
            raise RuntimeError(result.error or f"Agent {invocation.agent} failed")
        return result

    retry_result = await retry_executor.execute(
        RetryOptions(
            fn=attempt,
            max_attempts=settings.max_attempts,
            base_delay_ms=settings.base_delay_ms,
            max_delay_ms=settings.max_delay_ms,
            on_exhausted=on_exhausted,
            description=f"agent {invocation.agent} (issue #{invocation.issue_number})",
        )
    )

    if token_tracker is not None and retry_result.result is not None:
        tokens = retry_result.result.token_usage or 0
        token_tracker.record(invocation.issue_number, invocation.agent, invocation.phase, tokens)
    return retry_result
