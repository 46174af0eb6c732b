import json
import logging
import os
import sys
from collections.abc import Mapping

from tbd_core.config_schema import UnifiedConfig


class JsonFormatter(logging.Formatter):
    """Single-line JSON formatter for structured debug output.

    Produces one JSON object per log record with fields: ts, level, logger, msg.
    Exception info is included as an "exc" field when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _make_formatter(debug_format: str, with_name: bool) -> logging.Formatter:
    if debug_format == "json":
        return JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S")
    fmt = (
        "[%(asctime)s] [%(levelname)s] %(name)s %(message)s"
        if with_name
        else "[%(asctime)s] [%(levelname)s] %(message)s"
    )
    return logging.Formatter(fmt, datefmt="%Y-%m-%d %H:%M:%S")


def setup_logging(
    mode: str = "cli",
    debug: bool = False,
    log_file: str | None = None,
    debug_format: str = "text",
    environ: Mapping[str, str] | None = None,
    level: str | None = None,
) -> None:
    """
    Configure logging based on execution mode.

    Args:
        mode: "agent" for file logging (never stdout/stderr), "cli" for
            stderr logging.
        debug: If True, overrides LOG_LEVEL to DEBUG.
        log_file: Custom log file path (overrides LOG_FILE env var).
        debug_format: "text" (default) or "json" for structured output.
        environ: Environment mapping to read LOG_LEVEL / LOG_FILE from.
            Defaults to ``os.environ``.
        level: Explicit level name; beats LOG_LEVEL, loses to *debug*.

    Environment variables:
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR).
                   Default: WARNING for agent mode, INFO for CLI mode.
        LOG_FILE: Custom log file path for agent mode.
                  Default: /tmp/tbd-core.log
    """
    env = os.environ if environ is None else environ

    default_level = "WARNING" if mode == "agent" else "INFO"
    env_level = (level or env.get("LOG_LEVEL", default_level)).upper()

    if debug:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, env_level, logging.INFO)

    if mode == "agent":
        # Agent hosts own stdout; everything goes to a file.
        final_log_file = log_file or env.get(
            "LOG_FILE", "/tmp/tbd-core.log"
        )
        handler = logging.FileHandler(final_log_file, mode="a")
        handler.setFormatter(_make_formatter(debug_format, True))
        logging.basicConfig(level=log_level, handlers=[handler])
    else:
        handlers: list[logging.Handler] = []
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(_make_formatter(debug_format, False))
        handlers.append(stderr_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file, mode="a")
            file_handler.setFormatter(_make_formatter(debug_format, True))
            handlers.append(file_handler)

        logging.basicConfig(
            level=log_level,
            handlers=handlers,
        )

    # git subprocess chatter is only interesting when debugging
    if log_level != logging.DEBUG:
        logging.getLogger("tbd_core.sync.git").setLevel(logging.INFO)


def setup_logging_from_config(
    config: UnifiedConfig,
    mode: str = "cli",
    debug: bool = False,
    debug_format: str = "text",
) -> None:
    """Configure logging from the ``logging`` section of a loaded config.

    ``TBD_LOG_LEVEL`` is already folded into ``config.logging.level`` by
    ``load_config``, so the process environment is not consulted again.
    """
    setup_logging(
        mode=mode,
        debug=debug,
        log_file=config.logging.file,
        debug_format=debug_format,
        environ={},
        level=config.logging.level,
    )
