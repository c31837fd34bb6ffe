"""Process-wide configuration for devcluster commands.

``Config`` is built once at start-up from environment variables and then
handed to every operation; nothing below the CLI reads ``os.environ`` for
settings.

Usage
-----
>>> cfg = Config()
>>> cfg.argo_namespace
'argo'

>>> import os
>>> os.environ["ARGO_NS"] = "workflows"
>>> Config.from_env().argo_namespace
'workflows'

"""

from __future__ import annotations

import dataclasses as dc
import os
import typing as typ
from pathlib import Path

if typ.TYPE_CHECKING:
    import collections.abc as cabc

K3D_CONTEXT_PREFIX = "k3d-"
DEFAULT_K3D_CONTEXT = "k3d-k3s-default"

_MAX_PORT = 65535


@dc.dataclass(frozen=True, slots=True)
class Config:
    """Settings shared by the devcluster commands.

    Attributes
    ----------
    context_override
        Context to use verbatim. Empty means auto-detect a ``k3d-*`` context.
    cluster_name
        k3d cluster name; ``use-context`` switches to ``k3d-<cluster_name>``.
    argo_namespace
        Namespace of the Argo Workflows installation.
    service_account
        Service account granted cluster-admin and used for submissions.
    http_port
        Host port mapped to the cluster's HTTP ingress.
    ingress_host
        Host name routed to ``argo-server`` by the ingress.
    argo_version
        Argo release tag used to pin the hello-world example.
    token_duration
        Requested lifetime for ``kubectl create token``.
    step_namespace
        Namespace of the step-ca installation.
    traefik_namespace
        Namespace of the Traefik ingress controller.
    zitadel_host
        External host name written into the ZITADEL values file.
    scratch_dir
        Directory receiving generated files.
    log_level
        femtologging level name.

    """

    context_override: str = ""
    cluster_name: str = "k3s-default"
    argo_namespace: str = "argo"
    service_account: str = "argo-admin"
    http_port: int = 8281
    ingress_host: str = "argo.localtest.me"
    argo_version: str = "v3.5.8"
    token_duration: str = "24h"
    step_namespace: str = "step-system"
    traefik_namespace: str = "kube-system"
    zitadel_host: str = "zita.localtest.me"
    scratch_dir: Path = dc.field(default_factory=lambda: Path("tmp"))
    log_level: str = "INFO"

    @property
    def argo_ingress_url(self) -> str:
        """HTTP URL of the Argo UI through the k3d load balancer."""
        return f"http://{self.ingress_host}:{self.http_port}"

    @property
    def hello_world_url(self) -> str:
        """Raw URL of the upstream hello-world example for ``argo_version``."""
        return (
            "https://raw.githubusercontent.com/argoproj/argo-workflows/"
            f"{self.argo_version}/examples/hello-world.yaml"
        )

    def scratch_path(self, name: str) -> Path:
        """Return ``name`` inside the scratch directory."""
        return self.scratch_dir / name

    @staticmethod
    def _parse_port(env: cabc.Mapping[str, str], env_var: str, default: int) -> int:
        """Read a TCP port env var, falling back to a default."""
        raw = env.get(env_var, "")
        if not raw.strip():
            return default
        try:
            value = int(raw)
        except ValueError as exc:
            msg = f"{env_var} must be an integer, got: {raw!r}"
            raise ValueError(msg) from exc
        if not 1 <= value <= _MAX_PORT:
            msg = f"{env_var} must be between 1 and {_MAX_PORT}, got: {value}"
            raise ValueError(msg)
        return value

    @classmethod
    def from_env(cls, env: cabc.Mapping[str, str] | None = None) -> Config:
        """Create configuration from environment variables.

        Reads ``K3D_CONTEXT``, ``K3D_CLUSTER``, ``ARGO_NS``, ``SA_NAME``,
        ``K3D_HTTP_PORT``, ``ARGO_INGRESS_HOST``, ``ARGO_VERSION``,
        ``SA_TOKEN_DURATION``, ``STEP_NAMESPACE``, ``TRAEFIK_NS``,
        ``ZITA_HOST``, ``DEVCLUSTER_SCRATCH_DIR`` and
        ``DEVCLUSTER_LOG_LEVEL``. Unset or blank variables keep the defaults.

        Raises
        ------
        ValueError
            If ``K3D_HTTP_PORT`` is not a valid port number.

        """
        source = os.environ if env is None else env
        defaults = cls()

        def text(env_var: str, default: str) -> str:
            value = source.get(env_var, "").strip()
            return value or default

        return cls(
            context_override=text("K3D_CONTEXT", ""),
            cluster_name=text("K3D_CLUSTER", defaults.cluster_name),
            argo_namespace=text("ARGO_NS", defaults.argo_namespace),
            service_account=text("SA_NAME", defaults.service_account),
            http_port=cls._parse_port(source, "K3D_HTTP_PORT", defaults.http_port),
            ingress_host=text("ARGO_INGRESS_HOST", defaults.ingress_host),
            argo_version=text("ARGO_VERSION", defaults.argo_version),
            token_duration=text("SA_TOKEN_DURATION", defaults.token_duration),
            step_namespace=text("STEP_NAMESPACE", defaults.step_namespace),
            traefik_namespace=text("TRAEFIK_NS", defaults.traefik_namespace),
            zitadel_host=text("ZITA_HOST", defaults.zitadel_host),
            scratch_dir=Path(
                text("DEVCLUSTER_SCRATCH_DIR", str(defaults.scratch_dir))
            ),
            log_level=text("DEVCLUSTER_LOG_LEVEL", defaults.log_level),
        )
