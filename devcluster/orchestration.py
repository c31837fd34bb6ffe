"""High-level flows behind the CLI commands.

Each flow checks its tools, selects the kube context and then drives the
lower-level modules. Flows return process exit codes; errors from the
lower layers propagate as ``DevClusterError`` subclasses.
"""

from __future__ import annotations

import typing as typ

from devcluster.argo import (
    configure_admin_account,
    probe_submit_mode,
    submit_workflow,
    write_admin_instructions,
)
from devcluster.context import resolve_context, select_context, switch_to_cluster
from devcluster.logging import get_logger, log_error, log_info, log_warning
from devcluster.stepca import (
    apply_step_issuer,
    download_intermediate_ca,
    download_root_ca,
    prepare_step_issuer,
)
from devcluster.traefik import stream_traefik_logs
from devcluster.validation import (
    EXIT_OK,
    UnresolvedPlaceholdersError,
    require_exe,
)
from devcluster.zitadel import prepare_zitadel_values

if typ.TYPE_CHECKING:
    from pathlib import Path

    from devcluster.config import Config

logger = get_logger(__name__)


def _require(*exes: str) -> None:
    for exe in exes:
        require_exe(exe)


def show_context(cfg: Config, env: dict[str, str]) -> int:
    """Print the context devcluster commands would target."""
    _require("kubectl")
    print(resolve_context(cfg.context_override, env))
    return EXIT_OK


def use_cluster_context(cfg: Config, env: dict[str, str]) -> int:
    """Switch kubectl to the ``k3d-<cluster>`` context."""
    _require("kubectl")
    previous, target = switch_to_cluster(cfg.cluster_name, env)
    print(f"Current context: {previous or '<none>'}")
    print(f"Now using context: {target}")
    return EXIT_OK


def setup_argo_admin(cfg: Config, env: dict[str, str]) -> int:
    """Provision the Argo admin account and write login instructions."""
    _require("kubectl")
    ctx = select_context(cfg, env, required=True)
    account = configure_admin_account(cfg, env, context=ctx)
    path = write_admin_instructions(cfg, account)
    print(f"Wrote instructions to: {path}")
    return EXIT_OK


def submit(cfg: Config, env: dict[str, str], source: str, *, watch: bool) -> int:
    """Submit a workflow file or URL as the Argo admin account."""
    _require("kubectl", "argo")
    select_context(cfg, env, required=True)
    mode = probe_submit_mode(env)
    rc, ui_url = submit_workflow(cfg, env, source, watch=watch, mode=mode)
    if rc != EXIT_OK:
        log_error(logger, "Workflow submission failed (exit code %s)", rc)
        return rc
    print(f"Workflow submitted to namespace '{cfg.argo_namespace}'.")
    print(f"View it in the UI at: {ui_url}")
    return EXIT_OK


def submit_hello_world(cfg: Config, env: dict[str, str]) -> int:
    """Submit and watch the upstream hello-world example."""
    return submit(cfg, env, cfg.hello_world_url, watch=True)


def fetch_root_ca(
    cfg: Config,
    env: dict[str, str],
    *,
    output: Path | None,
    print_only: bool,
    intermediate: bool = False,
) -> int:
    """Write or print the step-ca root (or intermediate) certificate."""
    _require("kubectl")
    select_context(cfg, env, required=False)
    download, label = (
        (download_intermediate_ca, "intermediate CA")
        if intermediate
        else (download_root_ca, "root CA")
    )
    path = download(cfg, env, output=output, print_only=print_only)
    if path is not None:
        print(f"Wrote {label} PEM to: {path}")
    return EXIT_OK


def setup_step_issuer(  # noqa: PLR0913
    cfg: Config,
    env: dict[str, str],
    *,
    template: Path,
    output: Path,
    ca_bundle: str | None,
    ca_bundle_file: Path | None,
    provisioner_password: str | None,
) -> int:
    """Render and apply the StepClusterIssuer manifest.

    Returns 2 without applying anything when a placeholder is left.
    """
    _require("kubectl")
    if not template.is_file():
        msg = f"Template not found: {template}"
        raise FileNotFoundError(msg)
    select_context(cfg, env, required=False)
    try:
        path = prepare_step_issuer(
            cfg,
            env,
            template=template,
            output=output,
            ca_bundle=ca_bundle,
            ca_bundle_file=ca_bundle_file,
            provisioner_password=provisioner_password,
        )
    except UnresolvedPlaceholdersError as exc:
        log_warning(logger, "%s", exc)
        log_warning(
            logger,
            "Provide values and rerun, e.g. STEP_CA_BUNDLE_FILE=path/to/root_ca.pem "
            "STEP_PROVISIONER_PASSWORD=... devcluster step-issuer",
        )
        return exc.exit_code

    apply_step_issuer(path, env)
    print(f"StepClusterIssuer applied from {path}")
    return EXIT_OK


def render_zitadel_values(
    cfg: Config,
    *,
    template: Path,
    output: Path,
    masterkey: str | None,
) -> int:
    """Write the ZITADEL Helm values file.

    A remaining master key placeholder is reported but does not fail.
    """
    path, _remaining = prepare_zitadel_values(
        cfg, template=template, output=output, masterkey=masterkey
    )
    log_info(logger, "ZITADEL external host: %s", cfg.zitadel_host)
    print(f"Wrote ZITADEL values to: {path}")
    print(
        "Deploy with: helm upgrade --install zitadel zitadel/zitadel "
        f"--namespace zitadel --create-namespace -f {path}"
    )
    return EXIT_OK


def show_traefik_logs(  # noqa: PLR0913
    cfg: Config,
    env: dict[str, str],
    *,
    follow: bool,
    since: str | None,
    container: str | None,
    outfile: bool,
) -> int:
    """Print (and optionally save) Traefik logs."""
    _require("kubectl")
    select_context(cfg, env, required=True)
    stream_traefik_logs(
        cfg,
        env,
        follow=follow,
        since=since,
        container=container,
        outfile=outfile,
    )
    return EXIT_OK
