"""Tests for the retrying executor."""

import pytest
from conftest import ScriptedRunner

from forge_deploy.modules.deployments.retry import (
    RetryingExecutor,
    matches_non_retryable,
    output_tail,
    redact,
)


class LogSink:
    def __init__(self):
        self.lines = []

    def __call__(self, deployment_id, message):
        self.lines.append((deployment_id, message))

    def messages(self):
        return [m for _, m in self.lines]


def make_executor(runner):
    log = LogSink()
    sleeps = []
    executor = RetryingExecutor(log, runner=runner, sleep=sleeps.append)
    return executor, log, sleeps


def test_fails_twice_then_succeeds():
    runner = ScriptedRunner({("deploy",): [(False, "ETIMEDOUT"), (False, "503 from upstream"), (True, "done")]})
    executor, log, sleeps = make_executor(runner)

    ok, output = executor.run_with_retry(["deploy"], step_name="Deploy", deployment_id="d1", max_retries=3)

    assert ok is True
    assert output == "done"
    assert len(runner.calls) == 3
    messages = log.messages()
    assert sum("retrying" in m for m in messages) == 2
    assert sum("failed after" in m for m in messages) == 0
    assert sleeps == [2.0, 4.0]


def test_exhausts_retries():
    runner = ScriptedRunner({("deploy",): [(False, "network unreachable")]})
    executor, log, sleeps = make_executor(runner)

    ok, output = executor.run_with_retry(
        ["deploy"], step_name="Deploy", deployment_id="d1", max_retries=3, backoff_base=3.0
    )

    assert ok is False
    assert output == "network unreachable"
    assert len(runner.calls) == 3
    assert sleeps == [3.0, 9.0]
    messages = log.messages()
    assert sum("retrying" in m for m in messages) == 2
    assert messages[-1].startswith("❌ Deploy failed after 3 attempts")


def test_non_retryable_pattern_short_circuits():
    runner = ScriptedRunner({("gh",): [(False, "GraphQL: Name already exists on this account")]})
    executor, log, sleeps = make_executor(runner)

    ok, _ = executor.run_with_retry(
        ["gh", "repo", "create"],
        step_name="GitHub repo create",
        deployment_id="d1",
        max_retries=3,
        non_retryable_patterns=["name already exists", "authentication"],
    )

    assert ok is False
    assert len(runner.calls) == 1
    assert sleeps == []
    assert len(log.lines) == 1
    assert "non-retryable" in log.messages()[0]


def test_success_first_try_logs_nothing():
    runner = ScriptedRunner()
    executor, log, sleeps = make_executor(runner)

    ok, _ = executor.run_with_retry(["true"], step_name="Noop", deployment_id="d1")

    assert ok is True
    assert log.lines == []
    assert sleeps == []


def test_registered_secrets_are_masked_in_log_lines():
    runner = ScriptedRunner({("psql",): [(False, "auth failed for password hunter2-very-secret")]})
    executor, log, _ = make_executor(runner)
    executor.register_secret("hunter2-very-secret")

    executor.run_with_retry(["psql"], step_name="Migrate", deployment_id="d1", max_retries=1)

    assert "hunter2-very-secret" not in log.messages()[0]
    assert "***" in log.messages()[0]


def test_passes_command_options_through_to_runner():
    runner = ScriptedRunner()
    executor = RetryingExecutor(lambda *a: None, runner=runner, sleep=lambda s: None, default_timeout=42)

    executor.run_with_retry(
        ["vercel", "deploy"], step_name="Deploy", deployment_id="d1",
        cwd="/tmp/build", env={"VERCEL_TOKEN": "t"},
    )

    _, kwargs = runner.calls[0]
    assert kwargs["cwd"] == "/tmp/build"
    assert kwargs["env"] == {"VERCEL_TOKEN": "t"}
    assert kwargs["timeout"] == 42


def test_matches_non_retryable_is_case_insensitive():
    assert matches_non_retryable("Error: PROJECT LIMIT reached", ["project limit"]) == "project limit"
    assert matches_non_retryable("timeout", ["quota"]) is None
    assert matches_non_retryable("anything", None) is None


def test_output_tail_and_redact():
    long_output = "\n".join(f"line {i}" for i in range(200))
    tail = output_tail(long_output, limit=50)
    assert tail.startswith("...")
    assert tail.endswith("line 199")
    assert redact("key=abc key2=abcdef", ["abc", "abcdef"]) == "key=*** key2=***"


def test_runner_exception_is_not_retried():
    def broken(command, **kwargs):
        raise OSError("fork failed")

    executor, log, sleeps = make_executor(broken)
    with pytest.raises(OSError, match="fork failed"):
        executor.run_with_retry(["deploy"], step_name="Deploy", deployment_id="d1", max_retries=3)
    assert sleeps == []
    assert log.lines == []


def test_single_attempt_when_max_retries_is_zero():
    runner = ScriptedRunner({("deploy",): [(False, "boom")]})
    executor, log, sleeps = make_executor(runner)

    ok, _ = executor.run_with_retry(["deploy"], step_name="Deploy", deployment_id="d1", max_retries=0)

    assert ok is False
    assert len(runner.calls) == 1
    assert sleeps == []
    assert log.messages() == ["❌ Deploy failed after 1 attempts: boom"]
