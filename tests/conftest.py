"""Shared fixtures."""

import subprocess
from typing import List, Optional, Sequence, Tuple, Union

import pytest

from horizon.models.snapshot import ConfigSnapshot, ServiceConfig
from horizon.utils.process import CommandResult, CommandRunner


Outcome = Union[CommandResult, BaseException]


class FakeRunner(CommandRunner):
    """Records every command and answers from scripted rules.

    A rule matches when its prefix equals the start of the command. The most
    recently added matching rule wins; unmatched commands succeed with no
    output.
    """

    def __init__(self):
        super().__init__(default_timeout=5)
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.timeouts: List[Optional[float]] = []
        self._rules: List[Tuple[Tuple[str, ...], Outcome]] = []

    def on(self, *prefix: str, returncode: int = 0, stdout: str = "",
           stderr: str = "") -> "FakeRunner":
        self._rules.append((prefix, CommandResult(returncode, stdout, stderr)))
        return self

    def fail(self, *prefix: str, stderr: str = "boom", returncode: int = 1) -> "FakeRunner":
        return self.on(*prefix, returncode=returncode, stderr=stderr)

    def raise_on(self, *prefix: str, error: BaseException) -> "FakeRunner":
        self._rules.append((prefix, error))
        return self

    def _outcome(self, args: Sequence[str]) -> Outcome:
        for prefix, outcome in reversed(self._rules):
            if tuple(args[:len(prefix)]) == prefix:
                return outcome
        return CommandResult(0)

    async def run(self, args, check=False, timeout=None, input=None) -> CommandResult:
        args = list(args)
        self.calls.append(args)
        self.inputs.append(input)
        self.timeouts.append(timeout)
        outcome = self._outcome(args)
        if isinstance(outcome, BaseException):
            raise outcome
        if check and not outcome.ok:
            error = subprocess.CalledProcessError(outcome.returncode, args)
            error.stdout = outcome.stdout
            error.stderr = outcome.stderr
            raise error
        return outcome

    def called(self, *prefix: str) -> List[List[str]]:
        """Recorded commands starting with ``prefix``."""
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]


@pytest.fixture
def runner():
    """A scripted command runner."""
    return FakeRunner()


@pytest.fixture
def base_snapshot():
    """A small applied configuration."""
    return (
        ConfigSnapshot.builder("workstation")
        .timezone("UTC")
        .packages("git", "vim")
        .service("sshd")
        .service("nginx", config=ServiceConfig(environment={"WORKERS": "2"}))
        .user("alice", uid=1000, groups=["wheel"])
        .build()
    )
