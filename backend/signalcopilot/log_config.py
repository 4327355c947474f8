"""
Logging for Signal Copilot: loguru sinks fed by both loguru and structlog.

Services log with ``from signalcopilot.log_config import logger``. The task
queue uses ``get_logger`` (structlog) and binds the running job's id, kind
and user through structlog contextvars. A loguru patcher copies those
contextvars onto every record, so a service line emitted inside a job is
tagged with the job that produced it.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from loguru import logger
from structlog.typing import EventDict, WrappedLogger

from signalcopilot.config import Settings, settings as default_settings

JOB_CONTEXT_KEYS = ("job_id", "job_kind", "user_id")

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>{extra[job_context]}"
)

_STRUCTLOG_LEVELS = {"warn": "WARNING", "exception": "ERROR", "msg": "INFO"}


class RedactionFilter:
    """Mask position sizes and credentials in structured events."""

    SENSITIVE_FIELDS = ("password", "token", "secret", "api_key", "email", "cost_basis", "cash_buffer")

    def __call__(self, logger: WrappedLogger, name: str, event_dict: EventDict) -> EventDict:
        for key in event_dict:
            if any(field in key.lower() for field in self.SENSITIVE_FIELDS):
                event_dict[key] = "[REDACTED]"
        return event_dict


def _attach_job_context(record: Dict[str, Any]) -> None:
    context = structlog.contextvars.get_contextvars()
    tags = []
    for key in JOB_CONTEXT_KEYS:
        value = context.get(key)
        if value is not None:
            record["extra"].setdefault(key, value)
            tags.append(f"{key}={value}")
    record["extra"]["job_context"] = f" [{' '.join(tags)}]" if tags else ""


def _emit_to_loguru(_: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Final structlog processor: hand the event to loguru, then drop it."""
    level = _STRUCTLOG_LEVELS.get(method_name, method_name.upper())
    event = str(event_dict.pop("event", ""))
    exc_text = event_dict.pop("exception", None)
    fields = {k: v for k, v in event_dict.items() if k not in JOB_CONTEXT_KEYS}
    message = " ".join([event] + [f"{k}={v}" for k, v in fields.items()])
    if exc_text:
        message = f"{message}\n{exc_text}"
    logger.opt(depth=3).bind(**fields).log(level, message)
    raise structlog.DropEvent


class InterceptHandler(logging.Handler):
    """Send stdlib records (SQLAlchemy, APScheduler) to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _add_sinks(config: Settings) -> None:
    serialize = config.log_format == "json"
    sink_options = dict(
        format="{message}" if serialize else TEXT_FORMAT,
        level=config.log_level.upper(),
        serialize=serialize,
        backtrace=config.debug,
        diagnose=config.is_development,
    )
    logger.add(sys.stderr, **sink_options)

    if config.log_file:
        Path(config.log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(config.log_file, rotation="50 MB", retention=5, compression="gz", **sink_options)


def _configure_structlog(config: Settings) -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            RedactionFilter(),
            structlog.processors.format_exc_info,
            _emit_to_loguru,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(config.log_level.upper())),
        logger_factory=structlog.ReturnLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def configure_logging(config: Optional[Settings] = None) -> None:
    """(Re)build the loguru sinks, structlog pipeline and stdlib bridge."""
    config = config or default_settings

    logger.remove()
    logger.configure(patcher=_attach_job_context, extra={"job_context": ""})
    _add_sinks(config)
    _configure_structlog(config)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for noisy in ("sqlalchemy.engine", "apscheduler", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.debug(f"Logging configured ({config.log_level}, {config.log_format}, {config.app_env})")


def get_logger(name: str) -> Any:
    """Structured logger; its events land in the same loguru sinks."""
    return structlog.get_logger(name)


configure_logging()
