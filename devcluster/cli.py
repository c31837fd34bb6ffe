"""Command-line entry point for devcluster.

Usage:
    devcluster context            # print the kube context commands target
    devcluster use-context        # switch to k3d-<K3D_CLUSTER>
    devcluster argo-admin         # provision the Argo admin account
    devcluster submit FLOW.yaml   # submit a workflow as the admin account
    devcluster hello-world        # submit and watch the upstream example
    devcluster ca-root            # download the step-ca root certificate
    devcluster step-issuer        # render and apply the StepClusterIssuer
    devcluster zitadel-values     # render ZITADEL Helm values
    devcluster traefik-logs -f    # follow Traefik logs

Environment variables:
    K3D_CONTEXT, K3D_CLUSTER, ARGO_NS, SA_NAME, K3D_HTTP_PORT,
    ARGO_INGRESS_HOST, ARGO_VERSION, SA_TOKEN_DURATION, STEP_NAMESPACE,
    TRAEFIK_NS, ZITA_HOST, DEVCLUSTER_SCRATCH_DIR, DEVCLUSTER_LOG_LEVEL
"""

from __future__ import annotations

import dataclasses as dc
import os
import subprocess
import sys
import typing as typ
from pathlib import Path

from cyclopts import App, Parameter

from devcluster import __version__, orchestration
from devcluster.config import Config
from devcluster.logging import (
    DEFAULT_LEVEL,
    configure_logging,
    get_logger,
    log_error,
    log_warning,
)
from devcluster.validation import EXIT_FAILURE, DevClusterError

if typ.TYPE_CHECKING:
    import collections.abc as cabc

logger = get_logger(__name__)

app = App(
    name="devcluster",
    help="Helpers for a local k3d development cluster",
    version=__version__,
)

ContextOption = typ.Annotated[str | None, Parameter(name="--context")]
NamespaceOption = typ.Annotated[str | None, Parameter(name="--namespace")]
ServiceAccountOption = typ.Annotated[str | None, Parameter(name="--service-account")]


def _config(**overrides: object) -> Config:
    """Build the process config, then apply explicitly passed CLI values."""
    cfg = Config.from_env()
    changes = {key: value for key, value in overrides.items() if value is not None}
    return dc.replace(cfg, **changes) if changes else cfg


def _run(flow: cabc.Callable[[], int]) -> int:
    """Run a command flow and translate failures into exit codes."""
    try:
        return flow()
    except DevClusterError as exc:
        log_error(logger, "%s", exc)
        return exc.exit_code
    except FileNotFoundError as exc:
        log_error(logger, "%s", exc)
        return EXIT_FAILURE
    except subprocess.CalledProcessError as exc:
        tool = " ".join(str(part) for part in list(exc.cmd)[:2])
        log_error(logger, "'%s' failed with exit code %s", tool, exc.returncode)
        return exc.returncode or EXIT_FAILURE
    except ValueError as exc:
        log_error(logger, "Invalid configuration: %s", exc)
        return EXIT_FAILURE


def _env() -> dict[str, str]:
    return dict(os.environ)


@app.command(name="context")
def context_cmd(*, context: ContextOption = None) -> int:
    """Print the kube context devcluster commands would use.

    Args:
        context: Explicit context; printed as given.

    """
    return _run(
        lambda: orchestration.show_context(
            _config(context_override=context), _env()
        )
    )


@app.command
def use_context(
    *,
    cluster_name: typ.Annotated[str | None, Parameter(name="--cluster")] = None,
) -> int:
    """Switch kubectl to the k3d-<cluster> context.

    Args:
        cluster_name: k3d cluster name (default: K3D_CLUSTER or k3s-default).

    """
    return _run(
        lambda: orchestration.use_cluster_context(
            _config(cluster_name=cluster_name), _env()
        )
    )


@app.command
def argo_admin(
    *,
    context: ContextOption = None,
    namespace: NamespaceOption = None,
    service_account: ServiceAccountOption = None,
) -> int:
    """Create the Argo admin service account and write login instructions.

    Ensures the namespace, service account, cluster-admin binding and Argo
    RBAC policy exist, obtains a bearer token, and writes
    tmp/argo-admin-instructions.txt.

    Args:
        context: Kube context to use (default: auto-detect k3d).
        namespace: Argo namespace (default: ARGO_NS or argo).
        service_account: Admin service account (default: SA_NAME or argo-admin).

    """
    return _run(
        lambda: orchestration.setup_argo_admin(
            _config(
                context_override=context,
                argo_namespace=namespace,
                service_account=service_account,
            ),
            _env(),
        )
    )


@app.command
def submit(
    source: str,
    *,
    watch: bool = False,
    context: ContextOption = None,
    namespace: NamespaceOption = None,
    service_account: ServiceAccountOption = None,
) -> int:
    """Submit a workflow from a local file or URL as the admin account.

    Args:
        source: Workflow file path or http(s) URL.
        watch: Stream workflow progress until it completes.
        context: Kube context to use (default: auto-detect k3d).
        namespace: Argo namespace (default: ARGO_NS or argo).
        service_account: Service account (default: SA_NAME or argo-admin).

    """
    return _run(
        lambda: orchestration.submit(
            _config(
                context_override=context,
                argo_namespace=namespace,
                service_account=service_account,
            ),
            _env(),
            source,
            watch=watch,
        )
    )


@app.command
def hello_world(
    *,
    context: ContextOption = None,
    namespace: NamespaceOption = None,
) -> int:
    """Submit and watch the hello-world example pinned to ARGO_VERSION."""
    return _run(
        lambda: orchestration.submit_hello_world(
            _config(context_override=context, argo_namespace=namespace), _env()
        )
    )


@app.command
def ca_root(
    *,
    context: ContextOption = None,
    namespace: typ.Annotated[
        str | None, Parameter(name="--namespace", env_var="NAMESPACE")
    ] = None,
    output: typ.Annotated[Path | None, Parameter(env_var="OUTPUT_FILE")] = None,
    print_only: typ.Annotated[bool, Parameter(env_var="PRINT_ONLY")] = False,
    intermediate: bool = False,
) -> int:
    """Download the step-ca root CA certificate.

    Exits with code 2 when no certificate can be found.

    Args:
        context: Kube context to use (default: auto-detect k3d).
        namespace: step-ca namespace (default: STEP_NAMESPACE or step-system).
        output: PEM destination (default: tmp/step-root-ca.pem).
        print_only: Print the PEM instead of writing a file.
        intermediate: Export the intermediate CA instead of the root
            (default file: tmp/step-intermediate-ca.pem).

    """
    return _run(
        lambda: orchestration.fetch_root_ca(
            _config(context_override=context, step_namespace=namespace),
            _env(),
            output=output,
            print_only=print_only,
            intermediate=intermediate,
        )
    )


@app.command
def step_issuer(  # noqa: PLR0913
    *,
    context: ContextOption = None,
    template: typ.Annotated[Path, Parameter(env_var="TEMPLATE_FILE")] = Path(
        "k8s/step-cluster-issuer.yaml"
    ),
    output: typ.Annotated[Path | None, Parameter(env_var="OUTPUT_FILE")] = None,
    ca_bundle: typ.Annotated[str | None, Parameter(env_var="STEP_CA_BUNDLE")] = None,
    ca_bundle_file: typ.Annotated[
        Path | None, Parameter(env_var="STEP_CA_BUNDLE_FILE")
    ] = None,
    provisioner_password: typ.Annotated[
        str | None, Parameter(env_var="STEP_PROVISIONER_PASSWORD")
    ] = None,
) -> int:
    """Render the StepClusterIssuer manifest and apply it.

    The CA bundle and provisioner password are discovered in the step-ca
    namespace unless supplied. Exits with code 2, without applying, when a
    placeholder remains in the rendered file.

    Args:
        context: Kube context to use (default: auto-detect k3d).
        template: Issuer template.
        output: Rendered manifest (default: tmp/step-cluster-issuer.yaml).
        ca_bundle: Root CA PEM text.
        ca_bundle_file: File holding the root CA PEM.
        provisioner_password: step-ca provisioner password.

    """

    def flow() -> int:
        cfg = _config(context_override=context)
        return orchestration.setup_step_issuer(
            cfg,
            _env(),
            template=template,
            output=output or cfg.scratch_path("step-cluster-issuer.yaml"),
            ca_bundle=ca_bundle,
            ca_bundle_file=ca_bundle_file,
            provisioner_password=provisioner_password,
        )

    return _run(flow)


@app.command
def zitadel_values(
    *,
    host: typ.Annotated[str | None, Parameter(name="--host")] = None,
    template: typ.Annotated[Path, Parameter(env_var="TEMPLATE_FILE")] = Path(
        "k8s/zitadel-values.yaml"
    ),
    output: typ.Annotated[Path | None, Parameter(env_var="OUTPUT_FILE")] = None,
    masterkey: typ.Annotated[
        str | None, Parameter(env_var="ZITADEL_MASTERKEY")
    ] = None,
) -> int:
    """Render ZITADEL Helm values with the master key and external host.

    Args:
        host: External host name (default: ZITA_HOST or zita.localtest.me).
        template: Values template.
        output: Rendered values (default: tmp/zitadel-values.yaml).
        masterkey: ZITADEL master key (32+ characters).

    """

    def flow() -> int:
        cfg = _config(zitadel_host=host)
        return orchestration.render_zitadel_values(
            cfg,
            template=template,
            output=output or cfg.scratch_path("zitadel-values.yaml"),
            masterkey=masterkey,
        )

    return _run(flow)


@app.command
def traefik_logs(
    *,
    context: ContextOption = None,
    follow: typ.Annotated[bool, Parameter(name=["--follow", "-f"])] = False,
    since: str | None = None,
    container: str | None = None,
    outfile: bool = False,
) -> int:
    """Show logs from the Traefik ingress controller pods.

    Args:
        context: Kube context to use (default: auto-detect k3d).
        follow: Stream logs until interrupted.
        since: Only logs newer than this duration (e.g. 10m, 1h).
        container: Container to read when pods have several.
        outfile: Also write the logs to tmp/traefik-logs-<timestamp>.log.

    """
    return _run(
        lambda: orchestration.show_traefik_logs(
            _config(context_override=context),
            _env(),
            follow=follow,
            since=since,
            container=container,
            outfile=outfile,
        )
    )


def main() -> int:
    """Entry point for the CLI."""
    try:
        requested = Config.from_env().log_level
    except ValueError:
        # Reported again, with an exit code, when the command builds its config.
        requested = DEFAULT_LEVEL
    level, invalid = configure_logging(requested)
    if invalid:
        log_warning(logger, "Unknown log level %r; using %s", requested, level)
    return app()


if __name__ == "__main__":
    sys.exit(main())
