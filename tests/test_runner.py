"""Tests for the command runner and the bounded polling loop."""
from __future__ import annotations

import pytest
from conftest import FakeRunner, fail, ok

from harmonyctl.config import WaitBudget
from harmonyctl.errors import MissingToolError, ProviderAPIError
from harmonyctl.polling import PollOutcome, poll_until
from harmonyctl.runner import CommandRunner


def test_run_raises_provider_error_with_stderr() -> None:
    runner = FakeRunner({"aws efs describe-file-systems": fail("AccessDenied", returncode=254)})

    with pytest.raises(ProviderAPIError) as excinfo:
        runner.run(["aws", "efs", "describe-file-systems"])

    error = excinfo.value
    assert str(error) == "aws efs describe-file-systems failed (exit 254): AccessDenied"
    assert error.returncode == 254
    assert error.stderr == "AccessDenied"
    assert error.command == ("aws", "efs", "describe-file-systems")


def test_unchecked_helpers_swallow_failures() -> None:
    runner = FakeRunner({"kubectl cluster-info": fail(), "kubectl version": ok("not json")})

    assert runner.succeeds(["kubectl", "cluster-info"]) is False
    assert runner.output(["kubectl", "cluster-info"], check=False) == ""
    assert runner.json(["kubectl", "cluster-info"], check=False) is None
    with pytest.raises(ProviderAPIError, match="invalid JSON"):
        runner.json(["kubectl", "version"])


def test_json_parses_stdout() -> None:
    runner = FakeRunner({"az account show": ok({"id": "0000"})})

    assert runner.json(["az", "account", "show"]) == {"id": "0000"}


def test_missing_tool_is_reported_by_name() -> None:
    runner = FakeRunner(missing=("gcloud",))

    with pytest.raises(MissingToolError, match="'gcloud'"):
        runner.run(["gcloud", "auth", "list"], check=False)


def test_real_runner_reports_missing_executable() -> None:
    with pytest.raises(MissingToolError) as excinfo:
        CommandRunner().run(["harmonyctl-no-such-binary-7f3a"])

    assert excinfo.value.tool == "harmonyctl-no-such-binary-7f3a"


def test_poll_until_returns_on_first_success() -> None:
    sleeps: list[float] = []

    result = poll_until(lambda: True, WaitBudget(5, 10.0), sleep=sleeps.append)

    assert result.outcome is PollOutcome.READY
    assert result.attempts == 1
    assert sleeps == []


def test_poll_until_times_out_without_sleeping_after_last_attempt() -> None:
    sleeps: list[float] = []
    progress: list[tuple[int, int]] = []

    result = poll_until(
        lambda: False,
        WaitBudget(3, 2.0, backoff=2.0),
        sleep=sleeps.append,
        on_retry=lambda attempt, attempts: progress.append((attempt, attempts)),
    )

    assert result.outcome is PollOutcome.TIMED_OUT
    assert result.ready is False
    assert sleeps == [2.0, 4.0]
    assert result.waited_seconds == 6.0
    assert progress == [(1, 3), (2, 3)]


def test_poll_until_propagates_check_errors() -> None:
    """A check may abort the wait by raising."""
    answers = iter([False, "boom"])

    def check() -> bool:
        value = next(answers)
        if value == "boom":
            raise ProviderAPIError("file system entered the error state")
        return bool(value)

    with pytest.raises(ProviderAPIError, match="error state"):
        poll_until(check, WaitBudget(5, 1.0), sleep=lambda _seconds: None)
