"""Structured logging for the job application tracker.

structlog renders JSON for the server and scheduler processes and colored
console lines for the CLI. Stdlib loggers (uvicorn, apscheduler, urllib3)
are routed through the same handler.

A sync run binds its context once with bind_sync_context(); every log line
emitted while the run is active carries ``sync_run_id``, ``owner_id`` and
``trigger``, including lines written from worker threads started with
asyncio.to_thread (which copies the current context).

Usage:
    from jobtracker.core.logging import bind_sync_context, clear_sync_context, get_logger

    logger = get_logger(__name__)

    bind_sync_context(run_id, owner_id=owner_id, trigger="scheduled")
    logger.info("record_created", record_id="abc123", company="Atlassian")
    clear_sync_context()
"""

import logging
import sys

import structlog

SYNC_CONTEXT_KEYS = ("sync_run_id", "owner_id", "trigger")

# Chatty at INFO; their useful signal is at WARNING and above
_QUIET_LOGGERS = ("apscheduler", "urllib3", "httpx")


def bind_sync_context(
    run_id: str,
    owner_id: str | None = None,
    trigger: str | None = None,
) -> None:
    """Bind a sync run's identity into the structlog context.

    Replaces any sync context already bound in this task.
    """
    clear_sync_context()
    values = {"sync_run_id": run_id, "owner_id": owner_id, "trigger": trigger}
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in values.items() if value is not None}
    )


def clear_sync_context() -> None:
    structlog.contextvars.unbind_contextvars(*SYNC_CONTEXT_KEYS)


def get_correlation_id() -> str | None:
    """The sync_run_id bound in the current context, if any."""
    return structlog.contextvars.get_contextvars().get("sync_run_id")


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: JSON lines when True, colored console output when False
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
