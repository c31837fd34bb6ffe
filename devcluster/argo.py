"""Argo Workflows admin account and workflow submission.

Public API:
    configure_admin_account: Namespace, service account, cluster-admin
        binding, RBAC policy and token for the Argo admin principal.
    write_admin_instructions: Render login instructions to the scratch dir.
    probe_submit_mode: Detect how the installed ``argo`` CLI can submit.
    submit_workflow: Submit a workflow file or URL as the admin account.

Example:
    >>> cfg = Config.from_env()
    >>> account = configure_admin_account(cfg, env, context="k3d-k3s-default")
    >>> write_admin_instructions(cfg, account)
    >>> submit_workflow(cfg, env, "flow.yaml", watch=True, mode=probe_submit_mode(env))

"""

from __future__ import annotations

import contextlib
import dataclasses as dc
import datetime as dt
import enum
import socket
import subprocess
import tempfile
import time
import typing as typ
from pathlib import Path

import httpx
import msgspec

from devcluster.k8s import (
    EnsureOutcome,
    ResourceRef,
    ensure_cluster_role_binding,
    ensure_config_map,
    ensure_namespace,
    ensure_service_account,
    get_object,
    namespace_exists,
    patch_config_map,
    resource_exists,
)
from devcluster.logging import get_logger, log_info, log_warning
from devcluster.templates import dump_documents, load_documents, set_service_account
from devcluster.tokens import get_token
from devcluster.validation import (
    InvalidYAMLError,
    MissingResourceError,
    PortForwardError,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from devcluster.config import Config

logger = get_logger(__name__)

WORKFLOW_CONTROLLER_CONFIGMAP = "workflow-controller-configmap"
ADMIN_ROLE_POLICY = "p, role:admin, *, *, *, allow"
DEFAULT_POLICY = "role:admin"
ARGO_SERVER_NAME = "argo-server"
ARGO_SERVER_PORT = 2746
PORT_FORWARD_ATTEMPTS = 30


@dc.dataclass(frozen=True, slots=True)
class AdminAccount:
    """Credentials for the Argo admin service account."""

    context: str | None
    namespace: str
    service_account: str
    token: str = dc.field(repr=False)


class SubmitMode(enum.StrEnum):
    """Ways the local ``argo`` CLI can submit a workflow."""

    SERVER_BEARER = "server-bearer"
    KUBE_API = "kube-api"


def admin_policy_lines(namespace: str, service_account: str) -> list[str]:
    """Casbin lines granting ``role:admin`` to the service account."""
    return [
        ADMIN_ROLE_POLICY,
        f"g, system:serviceaccount:{namespace}:{service_account}, role:admin",
    ]


def merge_policy(existing: str, required: cabc.Iterable[str]) -> str:
    """Append each line of ``required`` missing from ``existing``.

    Existing lines are kept verbatim and in order.
    """
    merged = existing.rstrip("\n")
    for line in required:
        if line not in existing:
            merged = f"{merged}\n{line}" if merged else line
    return merged


def grant_admin_policy(cfg: Config, env: dict[str, str]) -> None:
    """Make the workflow controller treat the admin account as ``role:admin``.

    Creates ``workflow-controller-configmap`` with the policy when absent;
    otherwise appends the missing policy lines. Failures are logged and
    ignored since the cluster-admin binding already grants API access.
    """
    lines = admin_policy_lines(cfg.argo_namespace, cfg.service_account)
    data = {"policy.csv": "\n".join(lines), "policy.default": DEFAULT_POLICY}
    try:
        outcome = ensure_config_map(
            WORKFLOW_CONTROLLER_CONFIGMAP, cfg.argo_namespace, data, env
        )
        if outcome is EnsureOutcome.CREATED:
            return
        current = get_object(
            ResourceRef("configmap", WORKFLOW_CONTROLLER_CONFIGMAP, cfg.argo_namespace),
            env,
        )
        existing = (current.data or {}) if current is not None else {}
        merged = merge_policy(existing.get("policy.csv", ""), lines)
        patch = {"policy.csv": merged, "policy.default": DEFAULT_POLICY}
        if all(existing.get(key) == value for key, value in patch.items()):
            return
        log_info(
            logger, "Patching %s with the admin policy", WORKFLOW_CONTROLLER_CONFIGMAP
        )
        patch_config_map(WORKFLOW_CONTROLLER_CONFIGMAP, cfg.argo_namespace, patch, env)
    except (subprocess.CalledProcessError, msgspec.DecodeError) as exc:
        log_warning(logger, "Could not update Argo RBAC policy: %s", exc)


def configure_admin_account(
    cfg: Config, env: dict[str, str], *, context: str | None
) -> AdminAccount:
    """Provision the Argo admin service account and fetch its token.

    Raises
    ------
    TokenUnavailableError
        If no bearer token can be obtained.

    """
    ns = cfg.argo_namespace
    sa = cfg.service_account
    ensure_namespace(ns, env)
    ensure_service_account(sa, ns, env)
    ensure_cluster_role_binding(f"{sa}-cluster-admin", "cluster-admin", sa, ns, env)
    grant_admin_policy(cfg, env)
    token = get_token(sa, ns, cfg.token_duration, env)
    log_info(logger, "Obtained token for service account '%s'", sa)
    return AdminAccount(context=context, namespace=ns, service_account=sa, token=token)


def admin_instructions(
    cfg: Config, account: AdminAccount, *, generated: dt.datetime
) -> str:
    """Render the login instructions for ``account``."""
    ns = account.namespace
    ingress = f"{cfg.ingress_host}:{cfg.http_port}"
    context = account.context or "(current)"
    forward = f"{ARGO_SERVER_PORT}:{ARGO_SERVER_PORT}"
    refresh = (
        f"kubectl -n {ns} create token {account.service_account} "
        f"--duration={cfg.token_duration}"
    )
    login_flags = (
        "        --auth-mode bearer \\\n"
        f'        --token "{account.token}" \\\n'
        "        --insecure \\\n"
        f'        --kube-context "{context}" \\\n'
        f'        --namespace "{ns}"'
    )
    return f"""Argo Workflows Admin User Instructions
=====================================

Context:        {context}
Namespace:      {ns}
ServiceAccount: {account.service_account}

Token (validity {cfg.token_duration} when issued by the TokenRequest API):
{account.token}

1) Via kubectl port-forward (local access):
   kubectl -n {ns} port-forward svc/{ARGO_SERVER_NAME} {forward}
   Then open http://localhost:{ARGO_SERVER_PORT} and log in with the token above.

2) Via ingress:
   URL: {cfg.argo_ingress_url}
   Use the same bearer token when logging in.

3) CLI login using the argo CLI:
   a) Port-forward method:
      argo login localhost:{ARGO_SERVER_PORT} \\
{login_flags}

   b) Ingress method:
      argo login {ingress} \\
{login_flags}

Submit a sample workflow to verify permissions:
   devcluster hello-world

Notes:
- This ServiceAccount is bound to cluster-admin for local development only.
- Refresh an expired token with:
    {refresh}

Generated: {generated.strftime("%a %b %d %H:%M:%S UTC %Y")}
"""


def write_admin_instructions(
    cfg: Config, account: AdminAccount, *, now: dt.datetime | None = None
) -> Path:
    """Write ``argo-admin-instructions.txt`` into the scratch directory."""
    generated = now or dt.datetime.now(dt.UTC)
    path = cfg.scratch_path("argo-admin-instructions.txt")
    path.parent.mkdir(parents=True, exist_ok=True)
    text = admin_instructions(cfg, account, generated=generated)
    path.write_text(text, encoding="utf-8")
    return path


def ingress_present(namespace: str, env: dict[str, str]) -> bool:
    """Report whether ``argo-server`` is exposed by an ingress."""
    return any(
        resource_exists(ResourceRef(kind, ARGO_SERVER_NAME, namespace), env)
        for kind in ("ingressroute.traefik.io", "ingress")
    )


def probe_submit_mode(env: dict[str, str]) -> SubmitMode:
    """Inspect ``argo submit --help`` once to choose a submission mode."""
    # S603/S607: argo via PATH is standard; fixed arguments
    result = subprocess.run(  # noqa: S603
        ["argo", "submit", "--help"],  # noqa: S607
        capture_output=True,
        text=True,
        env=env,
        timeout=30,
    )
    if "--auth-mode" in f"{result.stdout}{result.stderr}":
        return SubmitMode.SERVER_BEARER
    return SubmitMode.KUBE_API


def _port_open(host: str, port: int) -> bool:
    try:
        with socket.create_connection((host, port), timeout=1):
            return True
    except OSError:
        return False


@contextlib.contextmanager
def port_forward(
    namespace: str,
    env: dict[str, str],
    *,
    local_port: int = ARGO_SERVER_PORT,
    attempts: int = PORT_FORWARD_ATTEMPTS,
    sleep: cabc.Callable[[float], None] = time.sleep,
    probe: cabc.Callable[[str, int], bool] = _port_open,
) -> cabc.Iterator[str]:
    """Forward ``svc/argo-server`` to localhost for the duration of the block.

    Yields
    ------
    str
        ``host:port`` of the forwarded endpoint.

    Raises
    ------
    PortForwardError
        If the port does not accept connections within ``attempts`` seconds.

    """
    # S603/S607: kubectl via PATH is standard; namespace from Config
    proc = subprocess.Popen(  # noqa: S603
        [  # noqa: S607
            "kubectl",
            "port-forward",
            f"--namespace={namespace}",
            f"svc/{ARGO_SERVER_NAME}",
            f"{local_port}:{ARGO_SERVER_PORT}",
        ],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        env=env,
    )
    try:
        ready = False
        for _ in range(attempts):
            ready = probe("localhost", local_port)
            if ready:
                break
            if proc.poll() is not None:
                msg = f"kubectl port-forward exited with code {proc.returncode}"
                raise PortForwardError(msg)
            sleep(1.0)
        # The last sleep gets one more connection attempt.
        if not ready and not probe("localhost", local_port):
            msg = (
                f"Failed to establish port-forward to {ARGO_SERVER_NAME} "
                f"on localhost:{local_port}"
            )
            raise PortForwardError(msg)
        log_info(logger, "Port-forward established (pid=%s)", proc.pid)
        yield f"localhost:{local_port}"
    finally:
        if proc.poll() is None:
            log_info(logger, "Stopping port-forward (pid=%s)", proc.pid)
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()


def require_submit_prerequisites(cfg: Config, env: dict[str, str]) -> None:
    """Check the namespace and admin service account exist.

    Raises
    ------
    MissingResourceError
        If either is missing.

    """
    ns = cfg.argo_namespace
    if not namespace_exists(ns, env):
        msg = f"Namespace '{ns}' not found. Install Argo Workflows first."
        raise MissingResourceError(msg)
    if not resource_exists(ResourceRef("serviceaccount", cfg.service_account, ns), env):
        msg = (
            f"ServiceAccount '{cfg.service_account}' not found in namespace "
            f"'{ns}'. Create it with: devcluster argo-admin"
        )
        raise MissingResourceError(msg)


def _run_argo_submit(args: list[str], env: dict[str, str]) -> int:
    # S603/S607: argo via PATH is standard; arguments assembled internally
    return subprocess.run(  # noqa: S603
        ["argo", "submit", *args],  # noqa: S607
        env=env,
        check=False,
    ).returncode


def fetch_workflow(source: str, *, client: httpx.Client | None = None) -> str:
    """Return the workflow document at ``source`` (a path or http(s) URL)."""
    if not source.startswith(("http://", "https://")):
        return Path(source).read_text(encoding="utf-8")
    with contextlib.ExitStack() as stack:
        http = client or stack.enter_context(
            httpx.Client(timeout=30.0, follow_redirects=True)
        )
        response = http.get(source)
        response.raise_for_status()
        return response.text


def _create_with_service_account(
    cfg: Config, env: dict[str, str], source: str
) -> int:
    """Submit ``source`` through the Kubernetes API with the SA injected."""
    try:
        text = fetch_workflow(source)
    except (OSError, httpx.HTTPError) as exc:
        log_warning(logger, "Failed to load workflow from %s: %s", source, exc)
        return 1

    try:
        documents = load_documents(text, source)
    except InvalidYAMLError as exc:
        log_warning(logger, "%s", exc)
        return 1
    for document in documents:
        set_service_account(document, cfg.service_account)

    with tempfile.NamedTemporaryFile(
        "w", suffix=".yaml", encoding="utf-8", delete_on_close=False
    ) as handle:
        handle.write(dump_documents(documents))
        handle.close()
        # S603/S607: kubectl via PATH is standard; file generated internally
        return subprocess.run(  # noqa: S603
            [  # noqa: S607
                "kubectl",
                "create",
                f"--namespace={cfg.argo_namespace}",
                "-f",
                handle.name,
            ],
            env=env,
            check=False,
        ).returncode


def _submit_via_server(  # noqa: PLR0913
    cfg: Config,
    env: dict[str, str],
    source: str,
    server: str,
    token: str,
    *,
    watch: bool,
) -> int:
    log_info(
        logger,
        "Submitting via argo-server at %s as ServiceAccount '%s'",
        server,
        cfg.service_account,
    )
    args = [
        *(["--watch"] if watch else []),
        source,
        "-n",
        cfg.argo_namespace,
        "--serviceaccount",
        cfg.service_account,
        "--server",
        server,
        "--auth-mode",
        "bearer",
        "--token",
        token,
        "--insecure",
    ]
    return _run_argo_submit(args, env)


def _submit_via_kube_api(
    cfg: Config, env: dict[str, str], source: str, *, watch: bool
) -> int:
    log_warning(
        logger,
        "argo CLI lacks server auth flags; submitting directly as ServiceAccount '%s'",
        cfg.service_account,
    )
    args = [
        *(["--watch"] if watch else []),
        source,
        "-n",
        cfg.argo_namespace,
        "--serviceaccount",
        cfg.service_account,
    ]
    rc = _run_argo_submit(args, env)
    if rc == 0:
        return 0
    log_warning(
        logger,
        "argo submit failed (exit code %s); falling back to kubectl create",
        rc,
    )
    return _create_with_service_account(cfg, env, source)


def submit_workflow(
    cfg: Config,
    env: dict[str, str],
    source: str,
    *,
    watch: bool,
    mode: SubmitMode,
) -> tuple[int, str]:
    """Submit ``source`` to the Argo namespace as the admin service account.

    Parameters
    ----------
    cfg : Config
        Namespace, service account and ingress settings.
    env : dict[str, str]
        Environment for kubectl and argo.
    source : str
        Local path or http(s) URL of the workflow.
    watch : bool
        Stream workflow progress until completion.
    mode : SubmitMode
        Result of ``probe_submit_mode``.

    Returns
    -------
    tuple[int, str]
        Exit code of the submission and the UI URL to view it at.

    Raises
    ------
    MissingResourceError
        If the namespace or service account is missing.
    TokenUnavailableError
        If no bearer token can be obtained.
    PortForwardError
        If a needed port-forward cannot be established.

    """
    require_submit_prerequisites(cfg, env)
    token = get_token(
        cfg.service_account, cfg.argo_namespace, cfg.token_duration, env
    )
    log_info(logger, "Obtained token for SA '%s'", cfg.service_account)

    if mode is SubmitMode.KUBE_API:
        rc = _submit_via_kube_api(cfg, env, source, watch=watch)
        return rc, cfg.argo_ingress_url

    if ingress_present(cfg.argo_namespace, env):
        server = f"{cfg.ingress_host}:{cfg.http_port}"
        log_info(logger, "Using ingress endpoint: %s", cfg.argo_ingress_url)
        rc = _submit_via_server(cfg, env, source, server, token, watch=watch)
        return rc, cfg.argo_ingress_url

    log_info(logger, "No ingress found; using a temporary port-forward")
    with port_forward(cfg.argo_namespace, env) as server:
        rc = _submit_via_server(cfg, env, source, server, token, watch=watch)
    return rc, f"http://{server}"
