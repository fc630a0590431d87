"""
Timekeeper logging setup.

structlog events and plain stdlib records (alembic, SQLAlchemy) go through
one handler and one renderer, so a JSON log stays JSON end to end. The
handler writes to stderr by default; stdout is kept free for command output
such as the report printed by ``timekeeper-sweep``.
"""

import logging
import sys

import structlog

_handler = None

# Libraries that are chatty at INFO
QUIET_LOGGERS = ("alembic", "sqlalchemy.engine")


def shared_processors():
    return [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def make_handler(target: str) -> logging.Handler:
    """Handler for the ``logging.target`` setting: stderr, stdout or a file path."""
    if target == "stdout":
        return logging.StreamHandler(sys.stdout)
    if target == "stderr":
        return logging.StreamHandler(sys.stderr)
    return logging.FileHandler(target)


def setup_logging(config, force: bool = False):
    """
    Configures structlog and the root logger from the ``logging`` section.

    config may be a Config instance or the raw dict. Repeated calls are
    ignored unless force is set, in which case the previous handler is
    replaced.
    """
    global _handler
    if _handler is not None and not force:
        return

    data = getattr(config, "data", config) or {}
    logging_cfg = data.get("logging", {})
    level = getattr(logging, logging_cfg.get("level", "INFO").upper(), logging.INFO)

    render = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if logging_cfg.get("format", "plain") == "json":
        render += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        render.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=shared_processors()
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = make_handler(logging_cfg.get("target", "stderr"))
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors(),
            processors=render,
        )
    )

    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
        _handler.close()
    root.addHandler(handler)
    root.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    _handler = handler


def get_logger(name):
    return structlog.get_logger(name)
