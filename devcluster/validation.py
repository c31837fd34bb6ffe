"""Error types and small helpers shared by every devcluster command.

Each exception carries the process exit code the CLI should return when it
escapes a command:

- ``1`` for precondition failures (missing tool, missing resource, unusable
  context, no credential).
- ``2`` when discovered data is unusable and a human has to fix a generated
  document by hand.

Examples
--------
Verify required executables before issuing cluster commands:

    require_exe("kubectl")
    require_exe("argo")

Decode a value read from a Kubernetes secret:

    token = b64decode_k8s_secret_field("c2VjcmV0")

"""

from __future__ import annotations

import base64
import shutil
import typing as typ

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    from pathlib import Path

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_MANUAL_FIX = 2


class DevClusterError(Exception):
    """Base exception for devcluster failures."""

    exit_code: int = EXIT_FAILURE


class ExecutableNotFoundError(DevClusterError):
    """Required CLI tool is not installed."""


class AmbiguousContextError(DevClusterError):
    """No single k3d context could be selected."""

    def __init__(self, candidates: cabc.Sequence[str], prefix: str) -> None:
        self.candidates = tuple(candidates)
        self.prefix = prefix
        if self.candidates:
            found = ", ".join(self.candidates)
            detail = f"multiple '{prefix}*' contexts found ({found})"
        else:
            detail = f"no '{prefix}*' context found"
        msg = (
            f"Could not select a kube context: {detail}. Create a k3d cluster "
            "or set K3D_CONTEXT to the context you want."
        )
        super().__init__(msg)


class ContextNotFoundError(DevClusterError):
    """A named context is not present in the kubeconfig."""


class MissingResourceError(DevClusterError):
    """A prerequisite cluster object does not exist."""


class TokenUnavailableError(DevClusterError):
    """Neither token path produced a bearer token."""


class SecretDecodeError(DevClusterError):
    """Failed to decode a Kubernetes secret field."""


class PortForwardError(DevClusterError):
    """A kubectl port-forward did not become usable."""


class InvalidYAMLError(DevClusterError):
    """A template or workflow document is not parseable YAML."""


class UnresolvedPlaceholdersError(DevClusterError):
    """A rendered document still contains placeholder tokens."""

    exit_code = EXIT_MANUAL_FIX

    def __init__(self, output_path: Path, placeholders: cabc.Iterable[str]) -> None:
        self.output_path = output_path
        self.placeholders = tuple(sorted(set(placeholders)))
        msg = (
            f"{output_path} still contains placeholders: "
            f"{', '.join(self.placeholders)}. Edit the file by hand before "
            "applying it."
        )
        super().__init__(msg)


class RootCANotFoundError(DevClusterError):
    """No CA certificate could be discovered in the cluster."""

    exit_code = EXIT_MANUAL_FIX


class IntermediateCANotFoundError(DevClusterError):
    """No intermediate CA certificate could be discovered in the cluster."""

    exit_code = EXIT_MANUAL_FIX


def require_exe(name: str) -> None:
    """Verify a CLI tool is available in PATH.

    Parameters
    ----------
    name : str
        Name of the executable to check for.

    Raises
    ------
    ExecutableNotFoundError
        If the executable is not found in PATH.

    """
    if shutil.which(name) is None:
        msg = f"Required executable '{name}' not found in PATH"
        raise ExecutableNotFoundError(msg)


def b64decode_k8s_secret_field(b64_text: str) -> str:
    """Decode a base64 value taken from a secret's ``data`` map.

    Raises
    ------
    SecretDecodeError
        If the input is not valid base64 or does not decode to UTF-8 text.

    """
    try:
        return base64.b64decode(b64_text, validate=True).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        msg = f"Failed to decode secret field: {e}"
        raise SecretDecodeError(msg) from e


def b64encode_text(text: str) -> str:
    """Encode UTF-8 text as single-line base64."""
    return base64.b64encode(text.encode("utf-8")).decode("ascii")
