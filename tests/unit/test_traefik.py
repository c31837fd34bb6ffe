"""Unit tests for the Traefik log helper."""

from __future__ import annotations

import dataclasses as dc
import datetime as dt
import io
import subprocess
import typing as typ

import pytest

from devcluster.traefik import (
    find_traefik_pods,
    logs_command,
    outfile_path,
    stream_traefik_logs,
)
from devcluster.validation import MissingResourceError

if typ.TYPE_CHECKING:
    from devcluster.config import Config
    from tests.conftest import ScriptedRun

_HELM_SELECTOR = "--selector=app.kubernetes.io/name=traefik"
_LEGACY_SELECTOR = "--selector=k8s-app=traefik"


def _pods(scripted_run: ScriptedRun, selector: str, stdout: str) -> None:
    scripted_run.on(
        "kubectl",
        "get",
        "pods",
        "--namespace=kube-system",
        selector,
        stdout=stdout,
    )


class TestFindTraefikPods:
    """Tests for pod discovery."""

    def test_helm_label_first(
        self, scripted_run: ScriptedRun, test_env: dict[str, str]
    ) -> None:
        """The Helm chart label is tried before the legacy one."""
        _pods(scripted_run, _HELM_SELECTOR, "pod/traefik-abc\n")

        selector, pods = find_traefik_pods("kube-system", test_env)

        assert selector == "app.kubernetes.io/name=traefik"
        assert pods == ["pod/traefik-abc"]
        assert len(scripted_run.calls) == 1

    def test_legacy_label_fallback(
        self, scripted_run: ScriptedRun, test_env: dict[str, str]
    ) -> None:
        """An empty result moves on to the next selector."""
        _pods(scripted_run, _LEGACY_SELECTOR, "pod/traefik-1\npod/traefik-2\n")

        selector, pods = find_traefik_pods("kube-system", test_env)

        assert selector == "k8s-app=traefik"
        assert pods == ["pod/traefik-1", "pod/traefik-2"]

    def test_no_pods(
        self, scripted_run: ScriptedRun, test_env: dict[str, str]
    ) -> None:
        """No matching pods is a missing resource."""
        with pytest.raises(MissingResourceError, match="kube-system"):
            find_traefik_pods("kube-system", test_env)
        assert len(scripted_run.calls) == 2


@pytest.mark.parametrize(
    ("kwargs", "extra"),
    [
        ({}, []),
        ({"follow": True}, ["--follow"]),
        (
            {"since": "10m", "container": "traefik"},
            ["--since=10m", "--container=traefik"],
        ),
    ],
)
def test_logs_command(kwargs: dict[str, typ.Any], extra: list[str]) -> None:
    """Optional flags are appended after the selector."""
    assert logs_command("kube-system", "k8s-app=traefik", **kwargs) == [
        "kubectl",
        "logs",
        "--namespace=kube-system",
        "--selector=k8s-app=traefik",
        "--prefix",
        *extra,
    ]


def test_outfile_path(cfg: Config) -> None:
    """Log files are named after the local timestamp."""
    now = dt.datetime(2026, 3, 4, 5, 6, 7, tzinfo=dt.UTC)
    expected = cfg.scratch_dir / "traefik-logs-20260304-050607.log"
    assert outfile_path(cfg, now) == expected


@dc.dataclass
class _FakePopen:
    lines: list[str]
    returncode: int = 0
    args: list[str] = dc.field(default_factory=list)

    def __post_init__(self) -> None:
        self.stdout = io.StringIO("".join(self.lines))

    def __enter__(self) -> _FakePopen:
        return self

    def __exit__(self, *_exc: object) -> None:
        return None


class TestStreamTraefikLogs:
    """Tests for stream_traefik_logs."""

    def test_prints_with_timeout(
        self, scripted_run: ScriptedRun, test_env: dict[str, str], cfg: Config
    ) -> None:
        """A one-shot read runs kubectl logs directly."""
        _pods(scripted_run, _HELM_SELECTOR, "pod/traefik-abc\n")
        timeouts: list[object] = []

        def record(
            _args: list[str], kwargs: dict[str, object]
        ) -> tuple[int, str, str]:
            timeouts.append(kwargs.get("timeout"))
            return 0, "", ""

        scripted_run.on("kubectl", "logs", handler=record)

        assert stream_traefik_logs(cfg, test_env, since="5m") is None
        assert scripted_run.called("kubectl", "logs")[0][-1] == "--since=5m"
        assert timeouts == [60]

    def test_follow_has_no_timeout(
        self, scripted_run: ScriptedRun, test_env: dict[str, str], cfg: Config
    ) -> None:
        """Following logs runs until interrupted."""
        _pods(scripted_run, _HELM_SELECTOR, "pod/traefik-abc\n")
        timeouts: list[object] = []

        def record(
            _args: list[str], kwargs: dict[str, object]
        ) -> tuple[int, str, str]:
            timeouts.append(kwargs.get("timeout", "unset"))
            return 0, "", ""

        scripted_run.on("kubectl", "logs", handler=record)

        stream_traefik_logs(cfg, test_env, follow=True)

        assert timeouts == [None]

    def test_outfile_tees_output(
        self,
        scripted_run: ScriptedRun,
        monkeypatch: pytest.MonkeyPatch,
        test_env: dict[str, str],
        cfg: Config,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Lines go to stdout and to the timestamped file."""
        _pods(scripted_run, _HELM_SELECTOR, "pod/traefik-abc\n")
        lines = ["[pod/traefik-abc] GET /\n", "[pod/traefik-abc] 200\n"]
        monkeypatch.setattr(
            "subprocess.Popen", lambda args, **_kw: _FakePopen(lines, args=args)
        )
        now = dt.datetime(2026, 3, 4, 5, 6, 7, tzinfo=dt.UTC)

        path = stream_traefik_logs(cfg, test_env, outfile=True, now=now)

        assert path == cfg.scratch_dir / "traefik-logs-20260304-050607.log"
        assert path.read_text(encoding="utf-8") == "".join(lines)
        assert capsys.readouterr().out == "".join(lines)

    def test_outfile_failure_raises(
        self,
        scripted_run: ScriptedRun,
        monkeypatch: pytest.MonkeyPatch,
        test_env: dict[str, str],
        cfg: Config,
    ) -> None:
        """A failing kubectl logs is reported after the output is saved."""
        _pods(scripted_run, _HELM_SELECTOR, "pod/traefik-abc\n")
        monkeypatch.setattr(
            "subprocess.Popen",
            lambda args, **_kw: _FakePopen(["partial\n"], returncode=1, args=args),
        )

        with pytest.raises(subprocess.CalledProcessError):
            stream_traefik_logs(cfg, test_env, outfile=True)
