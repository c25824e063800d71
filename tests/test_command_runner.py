"""Tests for the single-attempt command runner (uses /bin/sh)."""

from forge_deploy.modules.deployments.command_runner import run_command


def test_success_merges_stdout_and_stderr():
    ok, output = run_command(["sh", "-c", "echo out; echo err 1>&2"])
    assert ok is True
    assert "out" in output
    assert "err" in output


def test_non_zero_exit_is_reported_not_raised():
    ok, output = run_command(["sh", "-c", "echo boom; exit 3"])
    assert ok is False
    assert "boom" in output


def test_timeout_is_a_failure_with_marker():
    ok, output = run_command(["sh", "-c", "exec sleep 5"], timeout=0.5)
    assert ok is False
    assert "timed out" in output


def test_missing_executable():
    ok, output = run_command(["definitely-not-a-real-binary-xyz"])
    assert ok is False
    assert "command not found" in output


def test_env_overrides_and_cwd(tmp_path):
    ok, output = run_command(
        ["sh", "-c", 'echo "$FORGE_TEST_VALUE"; pwd'],
        cwd=str(tmp_path),
        env={"FORGE_TEST_VALUE": "from-override"},
    )
    assert ok is True
    assert "from-override" in output
    assert str(tmp_path) in output


def test_input_text_goes_to_stdin():
    ok, output = run_command(["cat"], input_text="piped-secret")
    assert ok is True
    assert output == "piped-secret"
