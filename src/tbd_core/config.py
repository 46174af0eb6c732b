"""Resolved configuration for a tbd repository.

Combines ``.tbd/config.yml`` with environment overrides.

Precedence (highest to lowest):
    Explicit overrides > Environment variables > <root>/.env > YAML config > Built-in defaults

Environment variables:
    TBD_SYNC_BRANCH: Sync branch name (default: tbd-sync)
    TBD_SYNC_REMOTE: Remote name (default: origin)
    TBD_MAX_PUSH_ATTEMPTS: Push attempts before giving up (default: 3)
    TBD_GIT_TIMEOUT: Per-command git timeout in seconds (default: 120)
    TBD_LOG_LEVEL: Log level (default: INFO)
"""

import logging
import os
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from tbd_core.config_loader import config_path, load_hierarchical_config
from tbd_core.config_schema import UnifiedConfig, build_config
from tbd_core.migrate import check_format_compatible
from tbd_core.store.atomic import write_bytes_atomic

logger = logging.getLogger(__name__)

# env var -> (section, key, parser)
_ENV_OVERRIDES: dict[str, tuple[str, str, Callable[[str], Any]]] = {
    "TBD_SYNC_BRANCH": ("sync", "branch", str),
    "TBD_SYNC_REMOTE": ("sync", "remote", str),
    "TBD_MAX_PUSH_ATTEMPTS": ("sync", "max_push_attempts", int),
    "TBD_GIT_TIMEOUT": ("sync", "git_timeout", float),
    "TBD_LOG_LEVEL": ("logging", "level", str),
}


def _layered_env(
    root: Path, environ: Mapping[str, str]
) -> dict[str, str]:
    """Merge ``<root>/.env`` under the process environment.

    ``os.environ`` is never mutated; the .env file only fills gaps.
    """
    merged: dict[str, str] = {}
    env_file = root / ".env"
    if env_file.exists():
        for key, value in dotenv_values(env_file).items():
            if value is not None:
                merged[key] = value
    merged.update(environ)
    return merged


def _apply_section_overrides(
    raw: dict[str, Any], overrides: Mapping[str, Mapping[str, Any]]
) -> dict[str, Any]:
    result = dict(raw)
    for section, values in overrides.items():
        if isinstance(values, Mapping):
            current = dict(result.get(section) or {})
            current.update(values)
            result[section] = current
        else:
            result[section] = values
    return result


def load_config(
    root: Path,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> UnifiedConfig:
    """Load configuration for the repository at *root*.

    Args:
        root: Repository root (the directory containing ``.tbd/``).
        environ: Environment mapping.  Defaults to ``os.environ``.
        overrides: Section-keyed values that beat every other source,
            e.g. ``{"sync": {"branch": "tbd-sync-test"}}``.

    Returns:
        Validated ``UnifiedConfig``.

    Raises:
        ValueError: If a value fails validation.
        UpgradeRequiredError: If the config declares a newer format.
    """
    env = _layered_env(root, os.environ if environ is None else environ)
    raw = load_hierarchical_config(root, env)

    env_sections: dict[str, dict[str, Any]] = {}
    for var, (section, key, parse) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        try:
            parsed = parse(value)
        except ValueError:
            raise ValueError(
                f"Invalid {var} '{value}': expected {parse.__name__}"
            ) from None
        env_sections.setdefault(section, {})[key] = parsed

    raw = _apply_section_overrides(raw, env_sections)
    if overrides:
        raw = _apply_section_overrides(raw, overrides)

    try:
        config = build_config(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc

    check_format_compatible(config.tbd_format)
    return config


def save_config(root: Path, config: UnifiedConfig) -> Path:
    """Write *config* to ``<root>/.tbd/config.yml`` atomically."""
    path = config_path(root)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json")
    text = yaml.safe_dump(data, sort_keys=True, default_flow_style=False)
    write_bytes_atomic(path, text.encode("utf-8"))
    logger.debug("Saved config to %s", path)
    return path
