"""devcluster: helpers for a local k3d development cluster.

The package resolves which kube context to target, creates cluster objects
only when absent, retrieves service-account bearer tokens and renders YAML
templates with placeholder checks. On top of those it drives the Argo
Workflows admin account, workflow submission, step-ca certificate
discovery, ZITADEL values and Traefik logs.
"""

from __future__ import annotations

__version__ = "0.1.0"

from devcluster.config import Config  # noqa: E402
from devcluster.context import resolve_context  # noqa: E402
from devcluster.k8s import EnsureOutcome, ResourceRef, ensure_resource  # noqa: E402
from devcluster.templates import render_template  # noqa: E402
from devcluster.tokens import get_token  # noqa: E402
from devcluster.validation import DevClusterError  # noqa: E402

__all__ = [
    "Config",
    "DevClusterError",
    "EnsureOutcome",
    "ResourceRef",
    "__version__",
    "ensure_resource",
    "get_token",
    "render_template",
    "resolve_context",
]
