"""Pytest configuration helpers and scripted CLI fakes for the test suite."""

from __future__ import annotations

import json
import subprocess
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import pytest
from rich.console import Console

from harmonyctl.config import AppConfig, load_config
from harmonyctl.providers.base import ProviderContext
from harmonyctl.reporting import Reporter
from harmonyctl.runner import CommandRunner


@dataclass
class Reply:
    """Canned result of one external command."""

    returncode: int = 0
    stdout: str = ""
    stderr: str = ""


def ok(data: object = None) -> Reply:
    """Successful reply; mappings and lists are serialised as JSON."""
    if data is None:
        return Reply()
    if isinstance(data, str):
        return Reply(stdout=data)
    return Reply(stdout=json.dumps(data))


def fail(stderr: str = "error", returncode: int = 1) -> Reply:
    """Failed reply carrying *stderr*."""
    return Reply(returncode=returncode, stderr=stderr)


Response = Reply | Callable[[list[str]], Reply] | list[Reply]


class FakeRunner(CommandRunner):
    """Runner answering from a table of command substrings.

    The longest key contained in the joined command wins. A list of replies is
    consumed in order and its last entry repeats. Unknown commands fail.
    """

    def __init__(
        self,
        responses: Mapping[str, Response] | None = None,
        *,
        missing: tuple[str, ...] = (),
    ) -> None:
        self.responses: dict[str, Response] = dict(responses or {})
        self.missing = set(missing)
        self.calls: list[list[str]] = []
        self.inputs: list[str | None] = []

    def on(self, key: str, response: Response) -> None:
        self.responses[key] = response

    def which(self, tool: str) -> str | None:
        if tool in self.missing:
            return None
        return f"/usr/bin/{tool}"

    def commands(self, needle: str = "") -> list[str]:
        """Return joined commands containing *needle*, in call order."""
        joined = [" ".join(call) for call in self.calls]
        return [command for command in joined if needle in command]

    def _execute(
        self,
        command: list[str],
        input_text: str | None,
    ) -> subprocess.CompletedProcess[str]:
        self.calls.append(command)
        self.inputs.append(input_text)
        if command[0] in self.missing:
            raise FileNotFoundError(command[0])
        joined = " ".join(command)
        matches = [key for key in self.responses if key in joined]
        if not matches:
            reply = fail(f"unexpected command: {joined}")
        else:
            response = self.responses[max(matches, key=len)]
            if isinstance(response, list):
                reply = response.pop(0) if len(response) > 1 else response[0]
            elif callable(response):
                reply = response(command)
            else:
                reply = response
        return subprocess.CompletedProcess(
            command, reply.returncode, stdout=reply.stdout, stderr=reply.stderr
        )


@dataclass
class Harness:
    """Collaborators for driving a provider directly."""

    config: AppConfig
    runner: FakeRunner
    reporter: Reporter
    sleeps: list[float] = field(default_factory=list)

    @property
    def context(self) -> ProviderContext:
        return ProviderContext(
            config=self.config,
            runner=self.runner,
            reporter=self.reporter,
            sleep=self.sleeps.append,
        )


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Config rooted in *tmp_path* with short delays."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "work_dir": str(tmp_path / "work"),
            "state_dir": str(tmp_path / "state"),
            "lock_timeout": 0.5,
        },
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def harness(app_config: AppConfig, fake_runner: FakeRunner) -> Harness:
    console = Console(record=True, width=200)
    return Harness(config=app_config, runner=fake_runner, reporter=Reporter(console))
