"""Canonical entity encoding.

An entity file is Markdown with YAML front matter::

    ---
    created_at: '2025-01-07T10:00:00.000Z'
    id: is-a1b2c3d4e5
    labels:
    - backend
    priority: 1
    ...
    ---

    Free-text body (the type's body field).

Canonical form rules:

* keys sorted by codepoint at every nesting level;
* every declared optional field present, ``null`` when absent;
* list fields ordered per type (labels sorted, dependencies by target);
* LF line endings, no line wrapping, exactly one trailing newline.

``encode()`` of an already-canonical entity is byte-identical on every
run, which is what makes ``content_hash()`` a reliable conflict trigger.
"""

from __future__ import annotations

import hashlib
import re
from typing import Any

import yaml
from pydantic import ValidationError

from tbd_core.errors import (
    MalformedSyntaxError,
    SchemaValidationError,
    UnknownEntityTypeError,
)
from tbd_core.migrate import CURRENT_FORMAT, migrate
from tbd_core.model.entities import ENTITY_TYPES, BaseEntity

_TIMESTAMP_TAG = "tag:yaml.org,2002:timestamp"


class _CanonicalDumper(yaml.SafeDumper):
    """SafeDumper that never emits anchors/aliases."""

    def ignore_aliases(self, data: Any) -> bool:
        return True


class _FrontMatterLoader(yaml.SafeLoader):
    """SafeLoader that keeps timestamps as plain strings."""


_FrontMatterLoader.yaml_implicit_resolvers = {
    first: [
        (tag, regexp) for tag, regexp in resolvers if tag != _TIMESTAMP_TAG
    ]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}

_FRONT_MATTER = re.compile(r"\A---\n(.*?)^---[ \t]*(?:\n|\Z)", re.S | re.M)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def canonical_fields(
    entity: BaseEntity, *, include_version: bool = True
) -> dict[str, Any]:
    """Return the front-matter mapping for *entity* (JSON-safe values)."""
    exclude = {entity.BODY_FIELD} if entity.BODY_FIELD else set()
    if not include_version:
        exclude.add("version")
    return entity.model_dump(mode="json", exclude=exclude)


def _render(fields: dict[str, Any], body: str) -> bytes:
    front = yaml.dump(
        fields,
        Dumper=_CanonicalDumper,
        sort_keys=True,
        allow_unicode=True,
        default_flow_style=False,
        width=float("inf"),
    )
    text = f"---\n{front}---\n"
    if body:
        text += f"\n{body}\n"
    return text.encode("utf-8")


def encode(entity: BaseEntity) -> bytes:
    """Serialize *entity* to its canonical bytes."""
    return _render(canonical_fields(entity), entity.body_text())


def content_hash(entity: BaseEntity) -> str:
    """SHA-256 of the canonical form, ignoring ``version``.

    ``version`` only counts writes, so two replicas holding the same
    logical content at different write counts hash equal.
    """
    data = _render(
        canonical_fields(entity, include_version=False), entity.body_text()
    )
    return hashlib.sha256(data).hexdigest()


def blob_id(data: bytes) -> str:
    """Return the git blob object id git would assign to *data*."""
    header = f"blob {len(data)}\0".encode("ascii")
    return hashlib.sha1(header + data).hexdigest()


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def split_front_matter(
    data: bytes, path: str | None = None
) -> tuple[dict[str, Any], str]:
    """Parse raw file bytes into ``(front_matter, body)``.

    Raises:
        MalformedSyntaxError: On invalid UTF-8, missing delimiters or
            invalid YAML.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedSyntaxError(f"not valid UTF-8: {exc}", path) from exc
    text = text.lstrip("\ufeff").replace("\r\n", "\n").replace("\r", "\n")

    match = _FRONT_MATTER.match(text)
    if match is None:
        raise MalformedSyntaxError("missing YAML front matter", path)
    try:
        fields = yaml.load(match.group(1), Loader=_FrontMatterLoader)
    except yaml.YAMLError as exc:
        raise MalformedSyntaxError(f"invalid YAML: {exc}", path) from exc
    if not isinstance(fields, dict):
        raise MalformedSyntaxError("front matter is not a mapping", path)
    return fields, text[match.end():]


def decode(
    data: bytes,
    path: str | None = None,
    format_version: str | None = CURRENT_FORMAT,
) -> BaseEntity:
    """Parse canonical bytes back into an entity.

    Args:
        data: File content.
        path: Source path, used only in error messages.
        format_version: Format the bytes were written in; older formats
            are migrated before validation.

    Raises:
        MalformedSyntaxError: The bytes are not front matter + body.
        UnknownEntityTypeError: ``type`` is missing or not known.
        SchemaValidationError: Fields fail validation.
        UpgradeRequiredError: *format_version* is newer than supported.
    """
    fields, body = split_front_matter(data, path)

    prefix = fields.get("type")
    cls = ENTITY_TYPES.get(prefix) if isinstance(prefix, str) else None
    if cls is None:
        raise UnknownEntityTypeError(f"unknown entity type {prefix!r}", path)

    fields = migrate(fields, format_version)
    if cls.BODY_FIELD:
        fields[cls.BODY_FIELD] = body
    try:
        return cls.model_validate(fields)
    except ValidationError as exc:
        raise SchemaValidationError(str(exc), path) from exc
