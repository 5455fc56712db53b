"""Tests for agent command rendering, launching and retry."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from convoy.budget import TokenTracker
from convoy.errors import AgentTimeoutError
from convoy.launcher import (
    AgentInvocation,
    AgentLauncher,
    RetrySettings,
    SessionHandle,
    launch_with_retry,
    parse_token_usage,
)
from convoy.retry import RetryExecutor
from convoy.sandbox import ExecResult, HostProvider, IsolationPolicy


async def no_sleep(_seconds: float) -> None:
    return None


def make_invocation(tmp_path: Path, **overrides) -> AgentInvocation:
    values = dict(
        agent="issue-analyst",
        issue_number=12,
        phase=1,
        context_path=str(tmp_path / "ctx.json"),
        output_path=str(tmp_path / "analysis.md"),
    )
    values.update(overrides)
    return AgentInvocation(**values)


def fake_session(*results: ExecResult) -> tuple[SessionHandle, AsyncMock]:
    provider = AsyncMock()
    provider.name = "fake"
    provider.exec = AsyncMock(side_effect=list(results))
    return SessionHandle(provider=provider, session_id="s-1"), provider


class TestParseTokenUsage:
    @pytest.mark.parametrize(
        "stdout,expected",
        [
            ("done\ntokens_used: 1234\n", 1234),
            ("Tokens used = 7", 7),
            ("token: 5\ntokens: 9", 9),
            ("no usage here", None),
        ],
    )
    def test_parse(self, stdout, expected):
        assert parse_token_usage(stdout) == expected


class TestAgentLauncher:
    def test_render_substitutes_placeholders(self, tmp_path):
        launcher = AgentLauncher(["run-agent", "--agent={agent}", "{context_path}", "#{issue_number}/{phase}", "{worktree}"])
        argv = launcher.render(make_invocation(tmp_path), Path("/wt"))
        assert argv == ["run-agent", "--agent=issue-analyst", str(tmp_path / "ctx.json"), "#12/1", "/wt"]

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError):
            AgentLauncher([])

    async def test_success_requires_output_file(self, tmp_path):
        session, provider = fake_session(ExecResult(exit_code=0, stdout="tokens_used: 40"))
        launcher = AgentLauncher(["agent"], timeout_seconds=30)

        missing = await launcher.launch(make_invocation(tmp_path), tmp_path, session)
        assert not missing.success
        assert "did not write" in missing.error

        (tmp_path / "analysis.md").write_text("ok")
        provider.exec.side_effect = [ExecResult(exit_code=0, stdout="tokens_used: 40")]
        result = await launcher.launch(make_invocation(tmp_path), tmp_path, session)
        assert result.success
        assert result.token_usage == 40

        call = provider.exec.call_args
        assert call.kwargs["timeout"] == 30
        assert call.kwargs["env"]["CONVOY_ISSUE_NUMBER"] == "12"
        assert call.kwargs["cwd"] == str(tmp_path)

    async def test_non_zero_exit(self, tmp_path):
        session, _ = fake_session(ExecResult(exit_code=2, stderr="warn\nfatal: bad input\n"))
        result = await AgentLauncher(["agent"]).launch(make_invocation(tmp_path), tmp_path, session)
        assert not result.success
        assert result.error == "Agent issue-analyst exited with code 2: fatal: bad input"

    async def test_invocation_timeout_overrides_default(self, tmp_path):
        session, provider = fake_session(ExecResult(exit_code=-9, timed_out=True))
        launcher = AgentLauncher(["agent"], timeout_seconds=30)
        result = await launcher.launch(make_invocation(tmp_path, timeout_seconds=5), tmp_path, session)
        assert result.timed_out
        assert provider.exec.call_args.kwargs["timeout"] == 5

    async def test_real_host_session(self, tmp_path):
        host = HostProvider()
        session = SessionHandle(host, await host.start(IsolationPolicy()))
        launcher = AgentLauncher(["sh", "-c", 'echo report > "$CONVOY_OUTPUT_PATH"; echo "tokens_used: 3"'])
        result = await launcher.launch(make_invocation(tmp_path), tmp_path, session)
        assert result.success
        assert result.token_usage == 3
        assert (tmp_path / "analysis.md").read_text().strip() == "report"


class TestLaunchWithRetry:
    async def test_retries_then_succeeds(self, tmp_path):
        (tmp_path / "analysis.md").write_text("ok")
        session, provider = fake_session(
            ExecResult(exit_code=1, stderr="flaky"),
            ExecResult(exit_code=0, stdout="tokens: 11"),
        )
        tracker = TokenTracker()
        result = await launch_with_retry(
            AgentLauncher(["agent"]),
            make_invocation(tmp_path),
            worktree_path=tmp_path,
            session=session,
            retry_executor=RetryExecutor(sleep=no_sleep),
            settings=RetrySettings(max_attempts=3, base_delay_ms=0),
            token_tracker=tracker,
        )
        assert result.success
        assert result.attempts == 2
        assert tracker.issue_total(12) == 11
        assert provider.exec.await_count == 2

    async def test_timeout_surfaces_as_agent_timeout(self, tmp_path):
        session, _ = fake_session(ExecResult(exit_code=-9, timed_out=True))
        result = await launch_with_retry(
            AgentLauncher(["agent"], timeout_seconds=2),
            make_invocation(tmp_path),
            worktree_path=tmp_path,
            session=session,
            retry_executor=RetryExecutor(sleep=no_sleep),
            settings=RetrySettings(max_attempts=1),
        )
        assert not result.success
        assert isinstance(result.error, AgentTimeoutError)
        assert result.error.timeout_seconds == 2
