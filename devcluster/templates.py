"""Placeholder substitution for YAML templates.

Templates are parsed with ruamel.yaml in round-trip mode, placeholder
tokens are replaced inside string scalars only, and the documents are
serialised back with comments and quoting intact. Keys, comments and
unrelated scalars are never rewritten.

A rendered document is valid only when no placeholder remains. The check
runs on the written file, so a failed render still leaves the output in
place for manual inspection.

Example:
    >>> render_template(
    ...     Path("k8s/step-cluster-issuer.yaml"),
    ...     Path("tmp/step-cluster-issuer.yaml"),
    ...     {"REPLACE_WITH_CA_BUNDLE_B64": bundle_b64},
    ... )
    PosixPath('tmp/step-cluster-issuer.yaml')

"""

from __future__ import annotations

import io
import re
import typing as typ

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError
from ruamel.yaml.comments import CommentedMap
from ruamel.yaml.scalarstring import LiteralScalarString, ScalarString

from devcluster.validation import InvalidYAMLError, UnresolvedPlaceholdersError

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    from pathlib import Path

DEFAULT_SENTINEL = re.compile(r"REPLACE_(?:ME\b|WITH_[A-Za-z0-9_+]+)")

DocumentTransform = typ.Callable[[list[typ.Any]], None]


def _yaml() -> YAML:
    yaml = YAML()
    yaml.preserve_quotes = True
    yaml.width = 4096
    yaml.indent(mapping=2, sequence=4, offset=2)
    return yaml


def load_documents(text: str, source: str = "<string>") -> list[typ.Any]:
    """Parse every YAML document in ``text``.

    Raises
    ------
    InvalidYAMLError
        If ``text`` is not valid YAML; ``source`` names it in the message.

    """
    try:
        return [doc for doc in _yaml().load_all(text) if doc is not None]
    except YAMLError as exc:
        msg = f"failed to parse YAML from {source}: {exc}"
        raise InvalidYAMLError(msg) from exc


def dump_documents(documents: cabc.Sequence[typ.Any]) -> str:
    """Serialise documents, separated by ``---`` markers."""
    with io.StringIO() as stream:
        _yaml().dump_all(documents, stream)
        return stream.getvalue()


def _replace_scalar(value: str, substitutions: cabc.Mapping[str, str]) -> str:
    replaced = value
    for token, text in substitutions.items():
        replaced = replaced.replace(token, text)
    if replaced == value:
        return value
    if "\n" in replaced and value.strip() in substitutions:
        return LiteralScalarString(replaced)
    if isinstance(value, ScalarString):
        return type(value)(replaced)
    return replaced


def substitute(node: typ.Any, substitutions: cabc.Mapping[str, str]) -> typ.Any:
    """Replace tokens inside every string scalar below ``node``.

    Mappings and sequences are updated in place; the (possibly new) node is
    returned so scalar roots work too.
    """
    if isinstance(node, dict):
        for key in list(node):
            node[key] = substitute(node[key], substitutions)
        return node
    if isinstance(node, list):
        for index, item in enumerate(node):
            node[index] = substitute(item, substitutions)
        return node
    if isinstance(node, str):
        return _replace_scalar(node, substitutions)
    return node


def find_placeholders(
    text: str,
    sentinel: re.Pattern[str] = DEFAULT_SENTINEL,
    tokens: cabc.Iterable[str] = (),
) -> set[str]:
    """Return the placeholder tokens still present in ``text``."""
    found = set(sentinel.findall(text))
    found.update(token for token in tokens if token and token in text)
    return found


def render_template(
    template_path: Path,
    output_path: Path,
    substitutions: cabc.Mapping[str, str | None],
    *,
    sentinel: re.Pattern[str] = DEFAULT_SENTINEL,
    transform: DocumentTransform | None = None,
) -> Path:
    """Render ``template_path`` into ``output_path``.

    Parameters
    ----------
    template_path : Path
        YAML template containing placeholder tokens.
    output_path : Path
        Destination; parent directories are created as needed.
    substitutions : Mapping[str, str | None]
        Token to replacement text. Empty or None values count as not
        supplied, so their tokens survive into the output.
    sentinel : re.Pattern[str], optional
        Pattern identifying placeholder tokens in the output.
    transform : DocumentTransform | None, optional
        Structural edits applied to the parsed documents after substitution.

    Returns
    -------
    Path
        ``output_path``.

    Raises
    ------
    FileNotFoundError
        If the template does not exist.
    InvalidYAMLError
        If the template is not valid YAML.
    UnresolvedPlaceholdersError
        If placeholders remain after rendering. The output is still written.

    """
    supplied = {
        token: value
        for token, value in sorted(
            substitutions.items(), key=lambda item: len(item[0]), reverse=True
        )
        if value
    }
    documents = [
        substitute(doc, supplied)
        for doc in load_documents(
            template_path.read_text(encoding="utf-8"), str(template_path)
        )
    ]
    if transform is not None:
        transform(documents)

    rendered = dump_documents(documents)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(rendered, encoding="utf-8")

    omitted = [token for token, value in substitutions.items() if not value]
    remaining = find_placeholders(rendered, sentinel, omitted)
    if remaining:
        raise UnresolvedPlaceholdersError(output_path, remaining)
    return output_path


def set_service_account(document: typ.Any, name: str) -> bool:
    """Set ``spec.serviceAccountName`` on a workflow document when absent.

    Returns
    -------
    bool
        True when the document was changed.

    """
    if not isinstance(document, dict):
        return False
    spec = document.get("spec")
    if spec is None:
        spec = CommentedMap()
        document["spec"] = spec
    if not isinstance(spec, dict) or spec.get("serviceAccountName"):
        return False
    spec["serviceAccountName"] = name
    return True
