"""Working Helm values for ZITADEL.

The values template carries a master key placeholder and a default host
name. Rendering injects the master key and points ``ExternalDomain``, the
ingress ``host`` entries and every ``hosts`` list at the configured host.
"""

from __future__ import annotations

import typing as typ

from ruamel.yaml.scalarstring import ScalarString

from devcluster.logging import get_logger, log_warning
from devcluster.templates import render_template
from devcluster.validation import UnresolvedPlaceholdersError

if typ.TYPE_CHECKING:
    from pathlib import Path

    from devcluster.config import Config

logger = get_logger(__name__)

MASTERKEY_TOKEN = "REPLACE_WITH_32+_RANDOM"


def _same_style(current: object, value: str) -> str:
    if isinstance(current, ScalarString):
        return type(current)(value)
    return value


def retarget_hosts(node: typ.Any, host: str, *, in_sequence: bool = False) -> None:
    """Point host name fields below ``node`` at ``host`` in place."""
    if isinstance(node, dict):
        for key, value in node.items():
            if key == "ExternalDomain" and isinstance(value, str):
                node[key] = _same_style(value, host)
            elif key == "host" and in_sequence and isinstance(value, str):
                node[key] = _same_style(value, host)
            elif key == "hosts" and isinstance(value, list):
                for index, item in enumerate(value):
                    if isinstance(item, str):
                        value[index] = _same_style(item, host)
                    else:
                        retarget_hosts(item, host, in_sequence=True)
            else:
                retarget_hosts(value, host)
    elif isinstance(node, list):
        for item in node:
            retarget_hosts(item, host, in_sequence=True)


def prepare_zitadel_values(
    cfg: Config,
    *,
    template: Path,
    output: Path,
    masterkey: str | None,
) -> tuple[Path, tuple[str, ...]]:
    """Render the ZITADEL values file.

    A missing master key is not fatal: the placeholder is left in the
    output and reported back so the caller can warn.

    Returns
    -------
    tuple[Path, tuple[str, ...]]
        The output path and any placeholders still present.

    Raises
    ------
    FileNotFoundError
        If the template does not exist.

    """

    def retarget(documents: list[typ.Any]) -> None:
        for document in documents:
            retarget_hosts(document, cfg.zitadel_host)

    try:
        path = render_template(
            template,
            output,
            {MASTERKEY_TOKEN: masterkey},
            transform=retarget,
        )
    except UnresolvedPlaceholdersError as exc:
        log_warning(
            logger,
            "Masterkey placeholder remains in %s. Rerun with ZITADEL_MASTERKEY=... "
            "or edit the file manually.",
            exc.output_path,
        )
        return exc.output_path, exc.placeholders
    return path, ()
