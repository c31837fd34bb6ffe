"""Kube context discovery and selection.

Every cluster-facing command first decides which kubeconfig context to
target. Selection order:

1. An explicit override, returned as given.
2. The active context, when it carries the k3d prefix.
3. The well-known default k3d context, when it is configured.
4. The only configured context with the k3d prefix.

Anything else (no candidates, or several) is an ``AmbiguousContextError``.

Examples
--------
    env = dict(os.environ)
    ctx = resolve_context("", env)
    use_context(ctx, env)

"""

from __future__ import annotations

import subprocess
import typing as typ

from devcluster.config import DEFAULT_K3D_CONTEXT, K3D_CONTEXT_PREFIX
from devcluster.logging import get_logger, log_info, log_warning
from devcluster.validation import (
    AmbiguousContextError,
    ContextNotFoundError,
    DevClusterError,
)

if typ.TYPE_CHECKING:
    from devcluster.config import Config

logger = get_logger(__name__)


def _kubectl_config(args: list[str], env: dict[str, str]) -> str | None:
    """Run ``kubectl config ...`` and return stdout, or None on failure."""
    # S603/S607: kubectl via PATH is standard; args are fixed subcommands
    result = subprocess.run(  # noqa: S603
        ["kubectl", "config", *args],  # noqa: S607
        capture_output=True,
        text=True,
        env=env,
        timeout=30,
    )
    if result.returncode != 0:
        return None
    return result.stdout


def current_context(env: dict[str, str]) -> str | None:
    """Return the active context, or None when none is set."""
    output = _kubectl_config(["current-context"], env)
    if output is None:
        return None
    return output.strip() or None


def list_contexts(env: dict[str, str]) -> list[str]:
    """Return the configured context names in kubeconfig order."""
    output = _kubectl_config(["get-contexts", "-o", "name"], env)
    if output is None:
        return []
    return [line.strip() for line in output.splitlines() if line.strip()]


def resolve_context(
    override: str,
    env: dict[str, str],
    *,
    known_default: str = DEFAULT_K3D_CONTEXT,
    prefix: str = K3D_CONTEXT_PREFIX,
) -> str:
    """Pick the context subsequent commands should target.

    Parameters
    ----------
    override : str
        Explicit context name. When non-empty it is returned without checking
        the kubeconfig.
    env : dict[str, str]
        Environment for kubectl (KUBECONFIG and PATH).
    known_default : str
        Context preferred when the active one is not a k3d context.
    prefix : str
        Naming prefix that marks a candidate context.

    Returns
    -------
    str
        The selected context name.

    Raises
    ------
    AmbiguousContextError
        If zero or several candidate contexts exist.

    """
    if override:
        return override

    active = current_context(env)
    if active is not None and active.startswith(prefix):
        return active

    contexts = list_contexts(env)
    if known_default in contexts:
        return known_default

    candidates = [name for name in contexts if name.startswith(prefix)]
    if len(candidates) == 1:
        return candidates[0]
    raise AmbiguousContextError(candidates, prefix)


def use_context(name: str, env: dict[str, str]) -> None:
    """Make ``name`` the kubeconfig's active context."""
    # S603/S607: kubectl via PATH is standard; context name from kubeconfig
    subprocess.run(  # noqa: S603
        ["kubectl", "config", "use-context", name],  # noqa: S607
        capture_output=True,
        text=True,
        check=True,
        env=env,
        timeout=30,
    )


def select_context(cfg: Config, env: dict[str, str], *, required: bool) -> str | None:
    """Resolve and activate the context for a command.

    Parameters
    ----------
    cfg : Config
        Supplies the optional ``context_override``.
    env : dict[str, str]
        Environment for kubectl.
    required : bool
        When False a resolution failure is logged and the active context is
        left untouched.

    Returns
    -------
    str | None
        The activated context, or None when an optional selection failed.

    """
    try:
        ctx = resolve_context(cfg.context_override, env)
    except DevClusterError as exc:
        if required:
            raise
        log_warning(logger, "%s Continuing with the current context.", exc)
        return None

    use_context(ctx, env)
    log_info(logger, "Using kube context: %s", ctx)
    return ctx


def switch_to_cluster(cluster_name: str, env: dict[str, str]) -> tuple[str | None, str]:
    """Switch to ``k3d-<cluster_name>`` if it is configured.

    Returns
    -------
    tuple[str | None, str]
        The previously active context and the new one.

    Raises
    ------
    ContextNotFoundError
        If the k3d context for ``cluster_name`` is not in the kubeconfig.

    """
    target = f"{K3D_CONTEXT_PREFIX}{cluster_name}"
    if target not in list_contexts(env):
        msg = (
            f"Context '{target}' not found. Create the cluster first "
            f"(k3d cluster create {cluster_name}) or merge its kubeconfig "
            f"(k3d kubeconfig merge {cluster_name} --kubeconfig-switch-context)."
        )
        raise ContextNotFoundError(msg)
    previous = current_context(env)
    use_context(target, env)
    return previous, target
