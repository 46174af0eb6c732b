"""Entity identifier generation.

Ids look like ``is-3k9x0q2m7a``: a two-letter type prefix and a random
base36 suffix.  Ten characters give 36**10 (about 3.7e15) possibilities,
so the birthday bound at tens of thousands of entities stays far below
one in a million.  Collisions are not pre-checked; the store's exclusive
create detects them and the caller regenerates.
"""

from __future__ import annotations

import secrets

from tbd_core.validators import validate_entity_id

BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
DEFAULT_ID_LENGTH = 10

# Ids written by the beads tool before migration used this prefix.
_LEGACY_PREFIXES = {"bd": "is"}


def generate_id(prefix: str, length: int = DEFAULT_ID_LENGTH) -> str:
    """Return a fresh ``{prefix}-{base36}`` identifier."""
    if len(prefix) != 2 or not prefix.isalpha() or not prefix.islower():
        raise ValueError(f"Invalid type prefix '{prefix}'")
    if length < 4:
        raise ValueError("Id length must be at least 4")
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(length))
    return f"{prefix}-{suffix}"


def id_prefix(entity_id: str) -> str:
    """Return the type prefix of *entity_id*.

    Raises:
        ValueError: If *entity_id* is not a well-formed id.
    """
    ok, message = validate_entity_id(entity_id)
    if not ok:
        raise ValueError(message)
    return entity_id.split("-", 1)[0]


def normalize_id(text: str) -> str:
    """Normalize user input into a canonical id.

    Lower-cases, strips whitespace and maps legacy prefixes.
    """
    candidate = text.strip().lower()
    prefix, sep, suffix = candidate.partition("-")
    if sep and prefix in _LEGACY_PREFIXES:
        candidate = f"{_LEGACY_PREFIXES[prefix]}-{suffix}"
    return candidate


def short_id(entity_id: str, width: int = 6) -> str:
    """Abbreviate an id for display, keeping the prefix."""
    prefix, _, suffix = entity_id.partition("-")
    return f"{prefix}-{suffix[:width]}"
