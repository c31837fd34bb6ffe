"""Shared pytest fixtures for devcluster tests.

The cmd-mox plugin is registered globally via pyproject.toml.
"""

from __future__ import annotations

import dataclasses
import os
import subprocess
import typing as typ

import pytest

from devcluster.config import Config

if typ.TYPE_CHECKING:
    from pathlib import Path

Handler = typ.Callable[[list[str], dict[str, object]], tuple[int, str, str]]


@pytest.fixture
def test_env(tmp_path: Path) -> dict[str, str]:
    """Create a test environment with a temporary KUBECONFIG path.

    Returns a copy of the current environment with KUBECONFIG pointing to
    a temporary file, allowing cmd-mox shims to work properly during testing.

    """
    env = dict(os.environ)
    env["KUBECONFIG"] = str(tmp_path / "kubeconfig-test.yaml")
    return env


@pytest.fixture
def cfg(tmp_path: Path) -> Config:
    """Default configuration writing generated files under ``tmp_path``."""
    return Config(scratch_dir=tmp_path / "scratch")


@dataclasses.dataclass(slots=True)
class _Rule:
    prefix: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    handler: Handler | None


@dataclasses.dataclass(slots=True)
class ScriptedRun:
    """Stand-in for subprocess.run answering by command prefix.

    Rules registered later take precedence, so a test can start from broad
    defaults and override single commands. Unmatched commands succeed with
    empty output.
    """

    rules: list[_Rule] = dataclasses.field(default_factory=list)
    calls: list[tuple[str, ...]] = dataclasses.field(default_factory=list)
    inputs: list[str | None] = dataclasses.field(default_factory=list)

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        handler: Handler | None = None,
    ) -> ScriptedRun:
        """Register a response for commands starting with ``prefix``."""
        self.rules.append(_Rule(prefix, returncode, stdout, stderr, handler))
        return self

    def called(self, *prefix: str) -> list[tuple[str, ...]]:
        """Return recorded calls starting with ``prefix``."""
        return [call for call in self.calls if call[: len(prefix)] == prefix]

    def __call__(
        self, args: list[str], **kwargs: object
    ) -> subprocess.CompletedProcess[str]:
        """Handle a subprocess.run call."""
        call = tuple(str(arg) for arg in args)
        self.calls.append(call)
        self.inputs.append(typ.cast("str | None", kwargs.get("input")))

        returncode, stdout, stderr = 0, "", ""
        for rule in reversed(self.rules):
            if call[: len(rule.prefix)] == rule.prefix:
                if rule.handler is not None:
                    returncode, stdout, stderr = rule.handler(list(call), kwargs)
                else:
                    returncode, stdout, stderr = (
                        rule.returncode,
                        rule.stdout,
                        rule.stderr,
                    )
                break

        if kwargs.get("check") and returncode != 0:
            raise subprocess.CalledProcessError(returncode, args, stdout, stderr)
        return subprocess.CompletedProcess(
            args=args, returncode=returncode, stdout=stdout, stderr=stderr
        )


@pytest.fixture
def scripted_run(monkeypatch: pytest.MonkeyPatch) -> ScriptedRun:
    """Patch subprocess.run with a ScriptedRun and return it."""
    fake = ScriptedRun()
    monkeypatch.setattr("subprocess.run", fake)
    return fake
