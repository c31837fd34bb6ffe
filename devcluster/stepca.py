"""step-ca root certificate discovery and StepClusterIssuer rendering.

Helm installs of step-certificates name their secrets and config maps
differently between chart versions, so discovery walks a list of known
names and keys before scanning everything in the namespace. The first value
containing a PEM certificate wins.

Public API:
    discover_root_ca: Find the root CA PEM in the step-ca namespace.
    discover_provisioner_password: Find the provisioner password.
    download_root_ca: Write (or print) the discovered root CA.
    discover_intermediate_ca: Find the intermediate CA PEM.
    download_intermediate_ca: Write (or print) the intermediate CA.
    prepare_step_issuer: Render the StepClusterIssuer manifest.
    apply_step_issuer: Apply a rendered manifest and probe the issuer.

"""

from __future__ import annotations

import typing as typ

from devcluster.k8s import ResourceRef, apply_file, list_objects, resource_exists
from devcluster.logging import get_logger, log_info, log_warning
from devcluster.templates import render_template
from devcluster.validation import (
    IntermediateCANotFoundError,
    RootCANotFoundError,
    SecretDecodeError,
    b64decode_k8s_secret_field,
    b64encode_text,
)

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    from pathlib import Path

    from devcluster.config import Config
    from devcluster.k8s import KubeObject

logger = get_logger(__name__)

PEM_MARKER = "BEGIN CERTIFICATE"

ROOT_CA_SECRET_NAMES = (
    "step-certificates-root-ca",
    "step-certificates-ca",
    "step-ca-root-ca",
    "step-ca-root",
    "step-certificates",
    "step-ca-step-certificates-root-ca",
    "step-ca-step-certificates-ca",
    "step-ca-step-certificates-certs",
    "step-ca",
)
ROOT_CA_SECRET_KEYS = (
    "ca.crt",
    "root-ca.crt",
    "tls.crt",
    "root_ca.crt",
    "ca",
    "root-ca",
    "pem",
    "crt",
)
ROOT_CA_CONFIG_MAP_NAMES = (
    "step-certificates-root-ca",
    "step-certificates-ca",
    "step-ca-root-ca",
    "step-ca-step-certificates-root-ca",
    "step-ca-step-certificates-ca",
)
ROOT_CA_CONFIG_MAP_KEYS = (
    "ca.crt",
    "root-ca.crt",
    "root_ca.crt",
    "ca",
    "root-ca",
    "pem",
    "crt",
)
SCAN_SECRET_KEYS = (
    "ca.crt",
    "root-ca.crt",
    "root_ca.crt",
    "tls.crt",
    "ca",
    "root-ca",
    "pem",
    "crt",
)
INTERMEDIATE_CA_CONFIG_MAP_NAMES = (
    "step-ca-step-certificates-certs",
    "step-certificates-certs",
)
INTERMEDIATE_CA_KEYS = ("intermediate_ca.crt", "intermediate-ca.crt")

PASSWORD_SECRET_NAMES = (
    "step-certificates-provisioner-password",
    "step-certificates-password",
    "step-ca-provisioner-password",
    "step-provisioner-password",
)
PASSWORD_SECRET_KEYS = ("password", "PROVISIONER_PASSWORD", "provisionerPassword")

STEP_ISSUER_NAME = "step-ca-cluster-issuer"
STEP_ISSUER_NAMESPACE = "cert-manager"
PASSWORD_TOKEN = "REPLACE_WITH_PROVISIONER_PASSWORD"  # noqa: S105
CA_BUNDLE_B64_TOKEN = "REPLACE_WITH_CA_BUNDLE_B64"
CA_BUNDLE_PEM_TOKEN = "REPLACE_WITH_CA_BUNDLE_PEM"


def _field(obj: KubeObject, key: str, *, encoded: bool) -> str:
    raw = (obj.data or {}).get(key, "")
    if not raw or not encoded:
        return raw
    try:
        return b64decode_k8s_secret_field(raw)
    except SecretDecodeError:
        return ""


def _first_match(
    objects: cabc.Iterable[KubeObject],
    keys: cabc.Sequence[str],
    *,
    encoded: bool,
    accept: cabc.Callable[[str], bool],
) -> str | None:
    for obj in objects:
        for key in keys:
            value = _field(obj, key, encoded=encoded)
            if value and accept(value):
                return value
    return None


def _named(
    objects: cabc.Sequence[KubeObject], names: cabc.Sequence[str]
) -> list[KubeObject]:
    """Return the objects called ``names``, in the order of ``names``."""
    by_name = {obj.metadata.name: obj for obj in objects}
    return [by_name[name] for name in names if name in by_name]


def _is_certificate(value: str) -> bool:
    return PEM_MARKER in value


def discover_root_ca(namespace: str, env: dict[str, str]) -> str | None:
    """Find the step-ca root certificate in ``namespace``.

    Search order: well-known secrets, well-known config maps, then every
    secret and every config map in the namespace.

    Returns
    -------
    str | None
        The PEM text, or None when nothing certificate-like was found.

    """
    secrets = list_objects("secrets", namespace, env)
    config_maps = list_objects("configmaps", namespace, env)
    searches = (
        (_named(secrets, ROOT_CA_SECRET_NAMES), ROOT_CA_SECRET_KEYS, True),
        (_named(config_maps, ROOT_CA_CONFIG_MAP_NAMES), ROOT_CA_CONFIG_MAP_KEYS, False),
        (secrets, SCAN_SECRET_KEYS, True),
        (config_maps, ROOT_CA_CONFIG_MAP_KEYS, False),
    )
    for objects, keys, encoded in searches:
        found = _first_match(objects, keys, encoded=encoded, accept=_is_certificate)
        if found is not None:
            return found
    return None


def discover_provisioner_password(namespace: str, env: dict[str, str]) -> str | None:
    """Find the step-ca provisioner password in ``namespace``."""
    secrets = _named(list_objects("secrets", namespace, env), PASSWORD_SECRET_NAMES)
    return _first_match(secrets, PASSWORD_SECRET_KEYS, encoded=True, accept=bool)


def _root_ca_or_raise(namespace: str, env: dict[str, str]) -> str:
    pem = discover_root_ca(namespace, env)
    if pem is None:
        msg = (
            f"Could not find a step-ca root CA in namespace '{namespace}'. "
            "Ensure step-certificates is installed and Ready, then try again."
        )
        raise RootCANotFoundError(msg)
    return pem


def _write_pem(pem: str, path: Path | None, *, print_only: bool) -> Path | None:
    text = pem.rstrip("\n") + "\n"
    if print_only or path is None:
        print(text, end="")
        return None
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    path.chmod(0o644)
    return path


def download_root_ca(
    cfg: Config,
    env: dict[str, str],
    *,
    output: Path | None = None,
    print_only: bool = False,
) -> Path | None:
    """Write the cluster's root CA to ``output`` (or print it).

    Parameters
    ----------
    cfg : Config
        Supplies ``step_namespace`` and the scratch directory.
    env : dict[str, str]
        Environment for kubectl.
    output : Path | None, optional
        Destination file; defaults to ``<scratch>/step-root-ca.pem``.
    print_only : bool, optional
        Print the PEM to stdout instead of writing a file.

    Returns
    -------
    Path | None
        The written file, or None in print-only mode.

    Raises
    ------
    RootCANotFoundError
        If no certificate was found.

    """
    pem = _root_ca_or_raise(cfg.step_namespace, env)
    path = None if print_only else output or cfg.scratch_path("step-root-ca.pem")
    return _write_pem(pem, path, print_only=print_only)


def discover_intermediate_ca(namespace: str, env: dict[str, str]) -> str | None:
    """Find the step-ca intermediate certificate in ``namespace``.

    The chart publishes it next to the root in the ``*-certs`` config map;
    other config maps are scanned for the same keys afterwards.
    """
    config_maps = list_objects("configmaps", namespace, env)
    for objects in (_named(config_maps, INTERMEDIATE_CA_CONFIG_MAP_NAMES), config_maps):
        found = _first_match(
            objects, INTERMEDIATE_CA_KEYS, encoded=False, accept=_is_certificate
        )
        if found is not None:
            return found
    return None


def download_intermediate_ca(
    cfg: Config,
    env: dict[str, str],
    *,
    output: Path | None = None,
    print_only: bool = False,
) -> Path | None:
    """Write the intermediate CA to ``output`` (or print it).

    Defaults to ``<scratch>/step-intermediate-ca.pem``.

    Raises
    ------
    IntermediateCANotFoundError
        If no intermediate certificate was found.

    """
    pem = discover_intermediate_ca(cfg.step_namespace, env)
    if pem is None:
        msg = (
            "Could not find a step-ca intermediate CA in namespace "
            f"'{cfg.step_namespace}'. Ensure step-certificates is installed "
            "and Ready, then try again."
        )
        raise IntermediateCANotFoundError(msg)
    path = (
        None if print_only else output or cfg.scratch_path("step-intermediate-ca.pem")
    )
    return _write_pem(pem, path, print_only=print_only)


def _resolve_bundle(
    cfg: Config,
    env: dict[str, str],
    ca_bundle: str | None,
    ca_bundle_file: Path | None,
) -> str | None:
    if ca_bundle:
        return ca_bundle
    if ca_bundle_file is not None:
        if not ca_bundle_file.is_file():
            msg = f"CA bundle file does not exist: {ca_bundle_file}"
            raise FileNotFoundError(msg)
        return ca_bundle_file.read_text(encoding="utf-8")
    discovered = discover_root_ca(cfg.step_namespace, env)
    if discovered:
        log_info(
            logger, "Discovered step-ca root CA in namespace %s", cfg.step_namespace
        )
    return discovered


def prepare_step_issuer(  # noqa: PLR0913
    cfg: Config,
    env: dict[str, str],
    *,
    template: Path,
    output: Path,
    ca_bundle: str | None = None,
    ca_bundle_file: Path | None = None,
    provisioner_password: str | None = None,
) -> Path:
    """Render the StepClusterIssuer template with CA bundle and password.

    An explicit ``ca_bundle`` wins over ``ca_bundle_file``, which wins over
    cluster discovery. An explicit password wins over discovery.

    Raises
    ------
    FileNotFoundError
        If the template or the CA bundle file is missing.
    UnresolvedPlaceholdersError
        If a value could not be found; ``output`` is left for manual editing
        and nothing is applied.

    """
    bundle = _resolve_bundle(cfg, env, ca_bundle, ca_bundle_file)
    password = provisioner_password or discover_provisioner_password(
        cfg.step_namespace, env
    )
    if password and not provisioner_password:
        log_info(
            logger,
            "Discovered step-ca provisioner password in namespace %s",
            cfg.step_namespace,
        )

    substitutions = {
        PASSWORD_TOKEN: password,
        CA_BUNDLE_B64_TOKEN: b64encode_text(bundle) if bundle else None,
        CA_BUNDLE_PEM_TOKEN: bundle.rstrip("\n") + "\n" if bundle else None,
    }
    return render_template(template, output, substitutions)


def apply_step_issuer(path: Path, env: dict[str, str]) -> bool:
    """Apply the rendered issuer and report whether it is visible.

    Returns
    -------
    bool
        True when ``kubectl get`` finds the StepClusterIssuer afterwards.

    """
    log_info(logger, "Applying StepClusterIssuer from %s", path)
    apply_file(path, env)
    ref = ResourceRef(
        "stepclusterissuer.certmanager.step.sm", STEP_ISSUER_NAME, STEP_ISSUER_NAMESPACE
    )
    visible = resource_exists(ref, env)
    if not visible:
        log_warning(logger, "%s is not visible yet", ref)
    return visible
