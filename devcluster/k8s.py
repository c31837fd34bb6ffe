"""Create-if-absent helpers for Kubernetes objects.

Every ``ensure_*`` function probes for the object first and only submits a
manifest when the probe finds nothing. Existing objects are never modified
to match the manifest; this is create-if-absent, not reconcile. Concurrent
callers racing on the same object are settled by the API server: a create
that fails with ``AlreadyExists`` is reported the same way as a probe hit.

Examples
--------
Ensure the workflow namespace and its admin service account:

    ensure_namespace("argo", env)
    ensure_service_account("argo-admin", "argo", env)

Read a decoded value from a secret:

    token = read_secret_field("argo-admin-token", "token", "argo", env)

"""

from __future__ import annotations

import dataclasses as dc
import enum
import json
import re
import subprocess
import typing as typ

import msgspec

from devcluster.logging import get_logger, log_debug, log_info
from devcluster.validation import b64decode_k8s_secret_field

if typ.TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)

MANAGED_BY_LABEL = {"app.kubernetes.io/managed-by": "devcluster"}
SERVICE_ACCOUNT_TOKEN_TYPE = "kubernetes.io/service-account-token"
SERVICE_ACCOUNT_NAME_ANNOTATION = "kubernetes.io/service-account.name"

# Kubernetes secret keys must contain only alphanumeric, dot, underscore, or hyphen
_SECRET_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


class EnsureOutcome(enum.StrEnum):
    """Result of an ``ensure_*`` call."""

    CREATED = "created"
    ALREADY_EXISTS = "already exists"


@dc.dataclass(frozen=True, slots=True)
class ResourceRef:
    """Identity of a Kubernetes object.

    Attributes:
        kind: Resource type as accepted by ``kubectl get`` (e.g. ``configmap``).
        name: Object name.
        namespace: Namespace for namespaced kinds, None for cluster scope.

    """

    kind: str
    name: str
    namespace: str | None = None

    def get_args(self) -> list[str]:
        """Arguments identifying the object for ``kubectl get``."""
        args = [self.kind, self.name]
        if self.namespace is not None:
            args.append(f"--namespace={self.namespace}")
        return args

    def __str__(self) -> str:
        scope = f"{self.namespace}/" if self.namespace else ""
        return f"{self.kind} {scope}{self.name}"


class ObjectMeta(msgspec.Struct, kw_only=True):
    """The subset of ``metadata`` devcluster reads."""

    name: str
    namespace: str | None = None
    annotations: dict[str, str] | None = None


class KubeObject(msgspec.Struct, kw_only=True):
    """A secret or config map as returned by ``kubectl get -o json``."""

    kind: str = ""
    metadata: ObjectMeta
    type: str | None = None
    data: dict[str, str] | None = None


class KubeObjectList(msgspec.Struct, kw_only=True):
    """A ``kubectl get -o json`` list response."""

    items: list[KubeObject] = msgspec.field(default_factory=list)


def _kubectl_get(
    args: list[str], env: dict[str, str]
) -> subprocess.CompletedProcess[str]:
    # S603/S607: kubectl via PATH is standard; names come from Config
    return subprocess.run(  # noqa: S603
        ["kubectl", "get", *args],  # noqa: S607
        capture_output=True,
        text=True,
        env=env,
        timeout=30,
    )


def resource_exists(ref: ResourceRef, env: dict[str, str]) -> bool:
    """Check whether the object identified by ``ref`` exists."""
    return _kubectl_get(ref.get_args(), env).returncode == 0


def namespace_exists(namespace: str, env: dict[str, str]) -> bool:
    """Check if a Kubernetes namespace exists."""
    return resource_exists(ResourceRef("namespace", namespace), env)


def get_object(ref: ResourceRef, env: dict[str, str]) -> KubeObject | None:
    """Fetch a secret or config map, or None when it does not exist."""
    result = _kubectl_get([*ref.get_args(), "-o", "json"], env)
    if result.returncode != 0:
        return None
    return msgspec.json.decode(result.stdout, type=KubeObject)


def list_objects(kind: str, namespace: str, env: dict[str, str]) -> list[KubeObject]:
    """List every ``kind`` object in ``namespace``; empty on failure."""
    result = _kubectl_get([kind, f"--namespace={namespace}", "-o", "json"], env)
    if result.returncode != 0 or not result.stdout.strip():
        return []
    return msgspec.json.decode(result.stdout, type=KubeObjectList).items


def ensure_resource(
    ref: ResourceRef, manifest: dict[str, typ.Any], env: dict[str, str]
) -> EnsureOutcome:
    """Create ``manifest`` unless the object identified by ``ref`` exists.

    Parameters
    ----------
    ref : ResourceRef
        Identity used for the existence probe.
    manifest : dict[str, Any]
        Object submitted to ``kubectl create`` when the probe misses.
    env : dict[str, str]
        Environment dict with KUBECONFIG set.

    Returns
    -------
    EnsureOutcome
        ``CREATED`` when this call created the object, ``ALREADY_EXISTS``
        otherwise.

    Raises
    ------
    subprocess.CalledProcessError
        If creation fails for any reason other than a concurrent create.

    """
    if resource_exists(ref, env):
        log_debug(logger, "%s already exists", ref)
        return EnsureOutcome.ALREADY_EXISTS

    args = ["kubectl", "create", "-f", "-"]  # noqa: S607
    # S603/S607: kubectl via PATH is standard; manifest generated internally
    result = subprocess.run(  # noqa: S603
        args,
        input=json.dumps(manifest),
        capture_output=True,
        text=True,
        env=env,
        timeout=30,
    )
    if result.returncode != 0:
        if "AlreadyExists" in result.stderr:
            log_debug(logger, "%s was created concurrently", ref)
            return EnsureOutcome.ALREADY_EXISTS
        raise subprocess.CalledProcessError(
            result.returncode, args, result.stdout, result.stderr
        )
    log_info(logger, "Created %s", ref)
    return EnsureOutcome.CREATED


def namespace_manifest(name: str) -> dict[str, typ.Any]:
    """Build a Namespace manifest."""
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": name, "labels": dict(MANAGED_BY_LABEL)},
    }


def service_account_manifest(name: str, namespace: str) -> dict[str, typ.Any]:
    """Build a ServiceAccount manifest."""
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(MANAGED_BY_LABEL),
        },
    }


def cluster_role_binding_manifest(
    name: str, cluster_role: str, service_account: str, namespace: str
) -> dict[str, typ.Any]:
    """Build a ClusterRoleBinding granting ``cluster_role`` to a service account."""
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": {"name": name, "labels": dict(MANAGED_BY_LABEL)},
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": cluster_role,
        },
        "subjects": [
            {"kind": "ServiceAccount", "name": service_account, "namespace": namespace}
        ],
    }


def config_map_manifest(
    name: str, namespace: str, data: dict[str, str]
) -> dict[str, typ.Any]:
    """Build a ConfigMap manifest."""
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name, "namespace": namespace},
        "data": dict(data),
    }


def token_secret_manifest(service_account: str, namespace: str) -> dict[str, typ.Any]:
    """Build a legacy service-account token Secret named ``<sa>-token``.

    The token controller fills ``data.token`` asynchronously after creation.
    """
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": SERVICE_ACCOUNT_TOKEN_TYPE,
        "metadata": {
            "name": f"{service_account}-token",
            "namespace": namespace,
            "annotations": {SERVICE_ACCOUNT_NAME_ANNOTATION: service_account},
        },
    }


def ensure_namespace(namespace: str, env: dict[str, str]) -> EnsureOutcome:
    """Ensure a Kubernetes namespace exists."""
    return ensure_resource(
        ResourceRef("namespace", namespace), namespace_manifest(namespace), env
    )


def ensure_service_account(
    name: str, namespace: str, env: dict[str, str]
) -> EnsureOutcome:
    """Ensure a service account exists in ``namespace``."""
    return ensure_resource(
        ResourceRef("serviceaccount", name, namespace),
        service_account_manifest(name, namespace),
        env,
    )


def ensure_cluster_role_binding(
    name: str,
    cluster_role: str,
    service_account: str,
    namespace: str,
    env: dict[str, str],
) -> EnsureOutcome:
    """Ensure a ClusterRoleBinding named ``name`` exists."""
    return ensure_resource(
        ResourceRef("clusterrolebinding", name),
        cluster_role_binding_manifest(name, cluster_role, service_account, namespace),
        env,
    )


def ensure_config_map(
    name: str, namespace: str, data: dict[str, str], env: dict[str, str]
) -> EnsureOutcome:
    """Ensure a ConfigMap exists; an existing map keeps its current data."""
    return ensure_resource(
        ResourceRef("configmap", name, namespace),
        config_map_manifest(name, namespace, data),
        env,
    )


def ensure_token_secret(
    service_account: str, namespace: str, env: dict[str, str]
) -> EnsureOutcome:
    """Ensure the ``<sa>-token`` secret bound to ``service_account`` exists."""
    return ensure_resource(
        ResourceRef("secret", f"{service_account}-token", namespace),
        token_secret_manifest(service_account, namespace),
        env,
    )


def patch_config_map(
    name: str, namespace: str, data: dict[str, str], env: dict[str, str]
) -> None:
    """Merge ``data`` into an existing ConfigMap."""
    # S603/S607: kubectl via PATH is standard; patch body generated internally
    subprocess.run(  # noqa: S603
        [  # noqa: S607
            "kubectl",
            "patch",
            "configmap",
            name,
            f"--namespace={namespace}",
            "--type=merge",
            "-p",
            json.dumps({"data": data}),
        ],
        capture_output=True,
        text=True,
        check=True,
        env=env,
        timeout=30,
    )


def apply_file(path: Path, env: dict[str, str]) -> None:
    """Apply a manifest file to the cluster via kubectl."""
    # S603/S607: kubectl via PATH is standard; path generated internally
    subprocess.run(  # noqa: S603
        ["kubectl", "apply", "-f", str(path)],  # noqa: S607
        check=True,
        env=env,
        timeout=60,
    )


def _validate_key(field: str) -> None:
    if not field:
        msg = "field cannot be empty"
        raise ValueError(msg)
    if not _SECRET_KEY_PATTERN.match(field):
        msg = (
            f"field '{field}' contains invalid characters; "
            "only alphanumeric, dot, underscore, and hyphen are allowed"
        )
        raise ValueError(msg)


def _read_data_field(
    kind: str, name: str, field: str, namespace: str, env: dict[str, str]
) -> str:
    _validate_key(field)
    # Quote the field name to support dotted keys like "ca.crt"
    jsonpath = f"jsonpath={{.data['{field}']}}"
    # S603/S607: kubectl via PATH is standard; field validated above
    result = subprocess.run(  # noqa: S603
        [  # noqa: S607
            "kubectl",
            "get",
            kind,
            name,
            f"--namespace={namespace}",
            "-o",
            jsonpath,
        ],
        capture_output=True,
        text=True,
        check=True,
        env=env,
        timeout=30,
    )
    return result.stdout.strip()


def read_secret_field(
    secret_name: str, field: str, namespace: str, env: dict[str, str]
) -> str:
    """Read and decode a field from a Kubernetes secret.

    Parameters
    ----------
    secret_name : str
        Name of the Kubernetes secret.
    field : str
        Key within the secret's ``data`` map. Dotted keys such as ``ca.crt``
        are supported.
    namespace : str
        Kubernetes namespace containing the secret.
    env : dict[str, str]
        Environment dict with KUBECONFIG set.

    Returns
    -------
    str
        The decoded UTF-8 value, or an empty string when the key is absent.

    Raises
    ------
    ValueError
        If ``field`` is empty or contains invalid characters.
    SecretDecodeError
        If the stored value is not base64-encoded UTF-8.

    """
    output = _read_data_field("secret", secret_name, field, namespace, env)
    if not output:
        return ""
    return b64decode_k8s_secret_field(output)

