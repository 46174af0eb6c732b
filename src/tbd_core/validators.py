"""
Input validation functions for tbd_core.

Validates git ref components and entity ids before they reach a git
command line or a filesystem path.
"""

import re

_BRANCH_NAME = re.compile(r"[a-zA-Z0-9._/-]+")
_REMOTE_NAME = re.compile(r"[a-zA-Z0-9._-]+")
_ENTITY_ID = re.compile(r"[a-z]{2}-[0-9a-z]{4,32}")


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Branch name")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_branch_name(name: str) -> tuple[bool, str]:
    """
    Validate a git branch name used for the sync branch.

    Returns:
        Tuple of (is_valid, error_message).

    Validation rules:
        - Cannot be empty
        - Only letters, digits, '.', '_', '/' and '-'
        - Cannot start with '-' (would be parsed as an option)
        - Cannot contain '..' or end with '/' or '.lock'
    """
    if not name or not name.strip():
        return (
            False,
            format_validation_error("Branch name", "cannot be empty"),
        )
    if not _BRANCH_NAME.fullmatch(name):
        return (
            False,
            format_validation_error(
                "Branch name",
                f"'{name}' contains invalid characters",
            ),
        )
    if name.startswith("-"):
        return (
            False,
            format_validation_error(
                "Branch name", "cannot start with '-'"
            ),
        )
    if ".." in name or name.endswith("/") or name.endswith(".lock"):
        return (
            False,
            format_validation_error(
                "Branch name", f"'{name}' is not a valid git ref"
            ),
        )
    return True, ""


def validate_remote_name(name: str) -> tuple[bool, str]:
    """
    Validate a git remote name.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if not name or not name.strip():
        return (
            False,
            format_validation_error("Remote name", "cannot be empty"),
        )
    if not _REMOTE_NAME.fullmatch(name) or name.startswith("-"):
        return (
            False,
            format_validation_error(
                "Remote name",
                f"'{name}' contains invalid characters",
            ),
        )
    return True, ""


def validate_entity_id(entity_id: str) -> tuple[bool, str]:
    """
    Validate an entity id of the form ``{prefix}-{base36 suffix}``.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if not entity_id:
        return (
            False,
            format_validation_error("Entity id", "cannot be empty"),
        )
    if not _ENTITY_ID.fullmatch(entity_id):
        return (
            False,
            format_validation_error(
                "Entity id",
                f"'{entity_id}' must look like 'is-a1b2c3d4e5'",
            ),
        )
    return True, ""
