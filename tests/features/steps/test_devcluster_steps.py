"""Behavioural coverage for the devcluster commands against a fake cluster."""

from __future__ import annotations

import base64
import io
import json
import subprocess
import typing as typ
from contextlib import redirect_stdout
from pathlib import Path

import pytest
from pytest_bdd import given, parsers, scenario, then, when

from devcluster.cli import app

REPO_ROOT = Path(__file__).resolve().parents[3]
ISSUER_TEMPLATE = REPO_ROOT / "k8s" / "step-cluster-issuer.yaml"
ROOT_PEM = "-----BEGIN CERTIFICATE-----\nMIIBfake\n-----END CERTIFICATE-----\n"
TOKEN = "eyJhbGciOi.fake.token"  # noqa: S105


class ClusterContext(typ.TypedDict, total=False):
    """Shared mutable scenario state."""

    cluster: FakeCluster
    scratch: Path
    stdout: str
    exit_code: int


class FakeCluster:
    """Stand-in for subprocess.run backed by an in-memory cluster."""

    def __init__(self) -> None:
        """Start with an empty kubeconfig and no objects."""
        self.contexts: list[str] = []
        self.active: str | None = None
        self.objects: set[tuple[str, str]] = set()
        self.step_secrets: dict[str, dict[str, str]] = {}
        self.calls: list[tuple[str, ...]] = []
        self.created: list[dict[str, typ.Any]] = []
        self.applied: list[str] = []
        self._handlers: dict[
            str, typ.Callable[[list[str], dict[str, object]], tuple[str, int]]
        ] = {
            "kubectl": self._handle_kubectl,
            "argo": self._handle_argo,
        }

    def _handle_argo(
        self, _args: list[str], _kwargs: dict[str, object]
    ) -> tuple[str, int]:
        return "", 0

    def _handle_config(self, args: list[str]) -> tuple[str, int]:
        if args[2] == "current-context":
            return (f"{self.active}\n", 0) if self.active else ("", 1)
        if args[2] == "get-contexts":
            return "".join(f"{name}\n" for name in self.contexts), 0
        if args[2] == "use-context":
            self.active = args[3]
        return "", 0

    def _handle_get(self, args: list[str]) -> tuple[str, int]:
        kind = args[2]
        if kind in {"secrets", "configmaps"}:
            items = (
                [
                    {"kind": "Secret", "metadata": {"name": name}, "data": data}
                    for name, data in self.step_secrets.items()
                ]
                if kind == "secrets"
                else []
            )
            return json.dumps({"items": items}), 0
        return "", 0 if (kind, args[3]) in self.objects else 1

    def _handle_create(
        self, args: list[str], kwargs: dict[str, object]
    ) -> tuple[str, int]:
        if args[2] == "token":
            return TOKEN, 0
        manifest = json.loads(str(kwargs["input"]))
        self.created.append(manifest)
        self.objects.add((manifest["kind"].lower(), manifest["metadata"]["name"]))
        return "", 0

    def _handle_kubectl(
        self, args: list[str], kwargs: dict[str, object]
    ) -> tuple[str, int]:
        verb = args[1]
        if verb == "config":
            return self._handle_config(args)
        if verb == "get":
            return self._handle_get(args)
        if verb == "create":
            return self._handle_create(args, kwargs)
        if verb == "apply":
            self.applied.append(args[-1])
            self.objects.add(
                ("stepclusterissuer.certmanager.step.sm", "step-ca-cluster-issuer")
            )
        return "", 0

    def __call__(
        self, args: list[str], **kwargs: object
    ) -> subprocess.CompletedProcess[str]:
        """Handle a subprocess.run call."""
        self.calls.append(tuple(args))
        handler = self._handlers.get(args[0], lambda _a, _k: ("", 0))
        stdout, returncode = handler(list(args), kwargs)
        if kwargs.get("check") and returncode != 0:
            raise subprocess.CalledProcessError(returncode, args, stdout, "")
        return subprocess.CompletedProcess(
            args=args, returncode=returncode, stdout=stdout, stderr=""
        )


@scenario("../devcluster.feature", "An explicit context is used verbatim")
def test_explicit_context_used_verbatim() -> None:
    """Wrap the pytest-bdd scenario for the context override."""


@scenario(
    "../devcluster.feature",
    "Several k3d contexts without an active one are refused",
)
def test_ambiguous_contexts_refused() -> None:
    """Wrap the pytest-bdd scenario for ambiguous contexts."""


@scenario(
    "../devcluster.feature",
    "Provisioning the Argo admin writes login instructions",
)
def test_argo_admin_writes_instructions() -> None:
    """Wrap the pytest-bdd scenario for argo-admin."""


@scenario("../devcluster.feature", "Provisioning twice changes nothing")
def test_argo_admin_idempotent() -> None:
    """Wrap the pytest-bdd scenario for repeated argo-admin runs."""


@scenario("../devcluster.feature", "A missing root CA needs manual intervention")
def test_missing_root_ca() -> None:
    """Wrap the pytest-bdd scenario for ca-root without a CA."""


@scenario(
    "../devcluster.feature",
    "An issuer with unresolved placeholders is not applied",
)
def test_unresolved_issuer_not_applied() -> None:
    """Wrap the pytest-bdd scenario for an incomplete issuer."""


@scenario(
    "../devcluster.feature",
    "A discovered root CA and password complete the issuer",
)
def test_discovered_issuer_applied() -> None:
    """Wrap the pytest-bdd scenario for a complete issuer."""


@pytest.fixture
def cluster_context(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> ClusterContext:
    """Provide shared scenario state with an isolated environment."""
    for name in ("K3D_CONTEXT", "ARGO_NS", "SA_NAME", "STEP_NAMESPACE"):
        monkeypatch.delenv(name, raising=False)
    for name in ("TEMPLATE_FILE", "OUTPUT_FILE", "NAMESPACE", "PRINT_ONLY"):
        monkeypatch.delenv(name, raising=False)
    scratch = tmp_path / "scratch"
    monkeypatch.setenv("DEVCLUSTER_SCRATCH_DIR", str(scratch))
    return {"cluster": FakeCluster(), "scratch": scratch, "exit_code": -1}


@given("the CLI tools kubectl and argo are available")
def given_tools_available(monkeypatch: pytest.MonkeyPatch) -> None:
    """Report every executable as installed."""
    monkeypatch.setattr("shutil.which", lambda name: f"/usr/bin/{name}")


@given(parsers.parse("the kubeconfig contexts {names} with no active context"))
def given_contexts_inactive(cluster_context: ClusterContext, names: str) -> None:
    """Configure contexts with nothing selected."""
    cluster_context["cluster"].contexts = names.split(",")


@given(parsers.parse("the kubeconfig contexts {names} with {active} active"))
def given_contexts_active(
    cluster_context: ClusterContext, names: str, active: str
) -> None:
    """Configure contexts with one selected."""
    cluster = cluster_context["cluster"]
    cluster.contexts = names.split(",")
    cluster.active = active


@given("the Argo admin account already exists")
def given_admin_exists(cluster_context: ClusterContext) -> None:
    """Pre-create every object argo-admin manages."""
    cluster_context["cluster"].objects.update(
        {
            ("namespace", "argo"),
            ("serviceaccount", "argo-admin"),
            ("clusterrolebinding", "argo-admin-cluster-admin"),
        }
    )


@given("step-ca publishes its root CA and provisioner password")
def given_step_ca_secrets(cluster_context: ClusterContext) -> None:
    """Expose well-known step-ca secrets."""

    def b64(text: str) -> str:
        return base64.b64encode(text.encode()).decode()

    cluster_context["cluster"].step_secrets = {
        "step-certificates-root-ca": {"ca.crt": b64(ROOT_PEM)},
        "step-certificates-provisioner-password": {"password": b64("pw")},
    }


def _run_command(
    ctx: ClusterContext, monkeypatch: pytest.MonkeyPatch, args: list[str]
) -> None:
    """Execute a CLI command against the fake cluster and capture output."""
    monkeypatch.setattr("subprocess.run", ctx["cluster"])

    captured = io.StringIO()
    with redirect_stdout(captured):
        try:
            exit_code = app(args)
            ctx["exit_code"] = exit_code if isinstance(exit_code, int) else 0
        except SystemExit as e:
            ctx["exit_code"] = e.code if isinstance(e.code, int) else 1

    ctx["stdout"] = captured.getvalue()


@when(parsers.parse("I run devcluster {command}"))
def when_run(
    cluster_context: ClusterContext, monkeypatch: pytest.MonkeyPatch, command: str
) -> None:
    """Run a devcluster subcommand."""
    args = command.split()
    if args[0] == "step-issuer":
        args += ["--template", str(ISSUER_TEMPLATE)]
    _run_command(cluster_context, monkeypatch, args)


@then(parsers.parse("the command exits with code {code:d}"))
def then_exit_code(cluster_context: ClusterContext, code: int) -> None:
    """Check the exit status."""
    assert cluster_context["exit_code"] == code


@then(parsers.parse('the output is "{text}"'))
def then_output(cluster_context: ClusterContext, text: str) -> None:
    """Check stdout."""
    assert cluster_context["stdout"].strip() == text


@then("kubectl was not run")
def then_no_kubectl(cluster_context: ClusterContext) -> None:
    """The override path never reads the kubeconfig."""
    assert cluster_context["cluster"].calls == []


@then(parsers.parse("a {kind} named {name} was created"))
def then_created(cluster_context: ClusterContext, kind: str, name: str) -> None:
    """Check a manifest was sent to kubectl create."""
    created = {
        (manifest["kind"], manifest["metadata"]["name"])
        for manifest in cluster_context["cluster"].created
    }
    assert (kind, name) in created


@then("no objects were created")
def then_nothing_created(cluster_context: ClusterContext) -> None:
    """Existing objects are left alone; only the policy config map is new."""
    kinds = [manifest["kind"] for manifest in cluster_context["cluster"].created]
    assert kinds == ["ConfigMap"]


@then("the instructions file contains the bearer token")
def then_instructions(cluster_context: ClusterContext) -> None:
    """The login instructions carry the token."""
    path = cluster_context["scratch"] / "argo-admin-instructions.txt"
    assert TOKEN in path.read_text(encoding="utf-8")
    assert f"Wrote instructions to: {path}" in cluster_context["stdout"]


def _rendered_issuer(ctx: ClusterContext) -> str:
    return (ctx["scratch"] / "step-cluster-issuer.yaml").read_text(encoding="utf-8")


@then(parsers.parse("the rendered issuer still contains {token}"))
def then_issuer_contains(cluster_context: ClusterContext, token: str) -> None:
    """The output is kept for manual editing."""
    assert token in _rendered_issuer(cluster_context)


@then("the rendered issuer has no placeholders")
def then_issuer_complete(cluster_context: ClusterContext) -> None:
    """Every placeholder was substituted."""
    assert "REPLACE_" not in _rendered_issuer(cluster_context)


@then("nothing was applied")
def then_not_applied(cluster_context: ClusterContext) -> None:
    """kubectl apply never ran."""
    assert cluster_context["cluster"].applied == []


@then("the issuer was applied")
def then_applied(cluster_context: ClusterContext) -> None:
    """kubectl apply received the rendered manifest."""
    expected = str(cluster_context["scratch"] / "step-cluster-issuer.yaml")
    assert cluster_context["cluster"].applied == [expected]
