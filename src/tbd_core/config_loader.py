"""
Hierarchical configuration loader for tbd_core.

Provides root-relative config file discovery, YAML !include support,
env var interpolation, and hierarchical merge with "project wins" semantics.

Nothing here consults the current working directory: the repository root
and the environment mapping are always passed in.

Usage:
    from tbd_core.config_loader import load_hierarchical_config

    raw = load_hierarchical_config(Path("/path/to/repo"))
"""

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

TBD_DIR = ".tbd"
CONFIG_FILE = "config.yml"

# ---------------------------------------------------------------------------
# 1. Env var interpolation
# ---------------------------------------------------------------------------

# Matches ${VAR} and ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(
    value: str, environ: Mapping[str, str] | None = None
) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` patterns with env values.

    * ``${VAR}`` is replaced with ``environ.get(VAR, "")``.
    * ``${VAR:-default}`` uses *default* when VAR is unset or empty.
    * Literal ``${`` with no closing ``}`` is left untouched.
    """
    env = os.environ if environ is None else environ

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        default = match.group(2)  # None when no :- clause
        env_val = env.get(var_name)
        if env_val is not None and env_val != "":
            return env_val
        if default is not None:
            return default
        return ""

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _interpolate_recursive(obj: Any, environ: Mapping[str, str]) -> Any:
    """Walk a nested dict/list and interpolate env vars in all strings."""
    if isinstance(obj, str):
        return interpolate_env_vars(obj, environ)
    if isinstance(obj, dict):
        return {
            k: _interpolate_recursive(v, environ) for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [_interpolate_recursive(item, environ) for item in obj]
    return obj


# ---------------------------------------------------------------------------
# 2. YAML !include support (dedicated SafeLoader subclass)
# ---------------------------------------------------------------------------


@dataclass
class _IncludeContext:
    """Where includes may come from, and the chain that led here."""

    base_dir: Path
    chain: list[Path] = field(default_factory=list)


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader with ``!include``; ``yaml.SafeLoader`` itself is untouched.

    Included files must live under the directory of the top-level config
    file, so ``.tbd/config.yml`` can split into ``.tbd/sync.yml`` and
    friends but never reads from elsewhere on disk.
    """

    include_context: _IncludeContext


def _include_constructor(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    """Handle ``!include sync.yml`` directives."""
    ctx = loader.include_context
    current = ctx.chain[-1]
    target = (current.parent / loader.construct_scalar(node)).resolve()

    if not target.is_relative_to(ctx.base_dir):
        raise ValueError(
            f"Include {target} is outside the config directory {ctx.base_dir}"
        )
    if target in ctx.chain:
        chain = " -> ".join(str(p) for p in [*ctx.chain, target])
        raise ValueError(f"Circular include detected: {chain}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} (referenced from {current})"
        )

    return _load_yaml_with_includes(
        target,
        _context=_IncludeContext(ctx.base_dir, [*ctx.chain, target]),
    )


ConfigLoader.add_constructor("!include", _include_constructor)


def _load_yaml_with_includes(
    path: Path, *, _context: _IncludeContext | None = None
) -> Any:
    """Load a YAML file using the ``ConfigLoader`` (with ``!include``)."""
    path = path.resolve()
    context = _context or _IncludeContext(path.parent, [path])

    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader.include_context = context
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# 3. Root-relative file discovery
# ---------------------------------------------------------------------------


def discover_config_files(
    root: Path, environ: Mapping[str, str] | None = None
) -> list[Path]:
    """Return existing config file paths in precedence order (highest first).

    Search order:
        1. ``TBD_CONFIG`` env var (explicit single path)
        2. ``<root>/.tbd/config.yml``
        3. ``<root>/.tbd/config.yaml`` (alternate extension)

    Only paths that exist on disk are returned.
    """
    env = os.environ if environ is None else environ
    candidates: list[Path] = []

    env_path = env.get("TBD_CONFIG")
    if env_path:
        candidates.append(Path(env_path).expanduser().resolve())

    candidates.append(root / TBD_DIR / CONFIG_FILE)
    candidates.append(root / TBD_DIR / "config.yaml")

    return [p for p in candidates if p.exists()]


# ---------------------------------------------------------------------------
# 3a. Config bootstrapping
# ---------------------------------------------------------------------------

_STARTER_CONFIG = """\
# tbd configuration
#
# tbd_format is managed by tbd; do not edit by hand.
tbd_format: f02

display:
  id_prefix: {id_prefix}

# sync:
#   branch: tbd-sync
#   remote: origin
#   max_push_attempts: 3
#
# store:
#   id_length: 10
#   orphan_temp_max_age: 3600
#
# identity:
#   name: tbd
#   email: tbd@localhost
#
# logging:
#   level: INFO
#   file: null
"""


def config_path(root: Path) -> Path:
    """Return the project-level config path under *root*."""
    return root / TBD_DIR / CONFIG_FILE


def ensure_config(root: Path, id_prefix: str = "tbd") -> Path:
    """Ensure ``<root>/.tbd/config.yml`` exists, writing a starter file.

    An existing file is returned untouched.

    Returns:
        Path to the config file (existing or newly created).
    """
    path = config_path(root)
    if path.exists():
        logger.debug("Config file already exists: %s", path)
        return path

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        _STARTER_CONFIG.format(id_prefix=id_prefix), encoding="utf-8"
    )
    logger.info("Created starter config: %s", path)

    return path


# ---------------------------------------------------------------------------
# 4. Hierarchical merge
# ---------------------------------------------------------------------------


def load_hierarchical_config(
    root: Path, environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Load and merge all discovered config files under *root*.

    Merge strategy ("project wins"):
        Files are loaded from lowest precedence to highest.  Each file's
        top-level keys **replace** (not deep-merge) those from earlier files.

    After merging, env var interpolation is applied to all string values.

    Returns an empty dict when no config files exist (zero-config).
    """
    env = os.environ if environ is None else environ
    paths = discover_config_files(root, env)

    if not paths:
        logger.debug("No config files found, using zero-config defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = _load_yaml_with_includes(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate_recursive(merged, env)
