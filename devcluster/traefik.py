"""Traefik ingress controller log helper."""

from __future__ import annotations

import datetime as dt
import subprocess
import sys
import typing as typ

from devcluster.logging import get_logger, log_info
from devcluster.validation import MissingResourceError

if typ.TYPE_CHECKING:
    from pathlib import Path

    from devcluster.config import Config

logger = get_logger(__name__)

# k3s bundles Traefik with the Helm label; older manifests use k8s-app.
TRAEFIK_SELECTORS = ("app.kubernetes.io/name=traefik", "k8s-app=traefik")


def find_traefik_pods(namespace: str, env: dict[str, str]) -> tuple[str, list[str]]:
    """Return the first selector matching Traefik pods and the pod names.

    Raises
    ------
    MissingResourceError
        If no selector matches any pod in ``namespace``.

    """
    for selector in TRAEFIK_SELECTORS:
        # S603/S607: kubectl via PATH is standard; selector is a constant
        result = subprocess.run(  # noqa: S603
            [  # noqa: S607
                "kubectl",
                "get",
                "pods",
                f"--namespace={namespace}",
                f"--selector={selector}",
                "-o",
                "name",
            ],
            capture_output=True,
            text=True,
            env=env,
            timeout=30,
        )
        pods = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if result.returncode == 0 and pods:
            return selector, pods

    msg = (
        f"No Traefik pods found in namespace '{namespace}'. Verify Traefik is "
        f"installed and running: kubectl -n {namespace} get pods"
    )
    raise MissingResourceError(msg)


def logs_command(
    namespace: str,
    selector: str,
    *,
    follow: bool = False,
    since: str | None = None,
    container: str | None = None,
) -> list[str]:
    """Build the ``kubectl logs`` invocation for the Traefik pods."""
    cmd = [
        "kubectl",
        "logs",
        f"--namespace={namespace}",
        f"--selector={selector}",
        "--prefix",
    ]
    if follow:
        cmd.append("--follow")
    if since:
        cmd.append(f"--since={since}")
    if container:
        cmd.append(f"--container={container}")
    return cmd


def outfile_path(cfg: Config, now: dt.datetime) -> Path:
    """Timestamped log file inside the scratch directory."""
    return cfg.scratch_path(f"traefik-logs-{now:%Y%m%d-%H%M%S}.log")


def _tee(cmd: list[str], env: dict[str, str], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as sink:
        # S603: kubectl via PATH is standard; args built by logs_command
        with subprocess.Popen(  # noqa: S603
            cmd, stdout=subprocess.PIPE, text=True, env=env
        ) as proc:
            for line in proc.stdout or ():
                sys.stdout.write(line)
                sink.write(line)
    if proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd)


def stream_traefik_logs(  # noqa: PLR0913
    cfg: Config,
    env: dict[str, str],
    *,
    follow: bool = False,
    since: str | None = None,
    container: str | None = None,
    outfile: bool = False,
    now: dt.datetime | None = None,
) -> Path | None:
    """Print Traefik logs, optionally copying them to a file.

    Follow mode runs until interrupted, so no timeout is applied to it.

    Returns
    -------
    Path | None
        The log file when ``outfile`` is set.

    Raises
    ------
    MissingResourceError
        If no Traefik pods exist.
    subprocess.CalledProcessError
        If ``kubectl logs`` fails.

    """
    namespace = cfg.traefik_namespace
    selector, pods = find_traefik_pods(namespace, env)
    log_info(logger, "Found Traefik pods: %s", " ".join(pods))
    cmd = logs_command(
        namespace, selector, follow=follow, since=since, container=container
    )

    if outfile:
        path = outfile_path(cfg, now or dt.datetime.now().astimezone())
        log_info(logger, "Writing logs to: %s", path)
        _tee(cmd, env, path)
        return path

    # S603: kubectl via PATH is standard; args built by logs_command
    subprocess.run(  # noqa: S603
        cmd,
        check=True,
        env=env,
        timeout=None if follow else 60,
    )
    return None
