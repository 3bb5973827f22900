"""Structured logging for Work Item Bridge.

structlog renders every event once; the console gets it through a Rich
handler and the optional log file gets one JSON object per line. A
migration run logs per-record events (``record_created``,
``record_patched``, ``transition_step_failed``...) with ``source_id`` and
``target_id`` context, so the file log can be grepped or loaded as JSON
lines to follow a single work item through the run.
"""

import json
import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
from rich.console import Console
from rich.logging import RichHandler
from structlog.typing import EventDict, WrappedLogger

from workitem_bridge import __version__

APP_NAME = "workitem-bridge"

_ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Substrings of keys (and JSON Patch paths) whose values are redacted
SENSITIVE_FIELDS = frozenset(
    {
        "token",
        "password",
        "secret",
        "api_key",
        "apikey",
        "zsessionid",
        "authorization",
        "credential",
    }
)

REDACTED = "[REDACTED]"


def add_app_context(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """structlog processor tagging each event with the tool name and version."""
    event_dict.setdefault("app", APP_NAME)
    event_dict.setdefault("version", __version__)
    return event_dict


class JSONFileFormatter(logging.Formatter):
    """One JSON object per line for the run log file.

    structlog has already rendered the event into the message, so the
    console colour codes are stripped before it is stored.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": _ANSI_PATTERN.sub("", record.getMessage()),
            "app": APP_NAME,
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(
    level: str = "WARNING",
    log_format: str = "json",
    log_file: str | None = None,
    file_level: str | None = None,
) -> None:
    """Set up console and file logging for a migration run.

    Args:
        level: Console level. WARNING by default so per-record events do not
            break up the progress bar
        log_format: File format, ``json`` or ``console``
        log_file: Optional run log path; parent directories are created
        file_level: File level, DEBUG when omitted
    """
    console_level = getattr(logging, level.upper(), logging.WARNING)
    file_log_level = getattr(logging, (file_level or "DEBUG").upper(), logging.DEBUG)

    rich_handler = RichHandler(
        console=Console(stderr=True),
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    rich_handler.setLevel(console_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(file_log_level)
        file_handler.setFormatter(
            JSONFileFormatter() if log_format == "json" else logging.Formatter("%(message)s")
        )
        root_logger.addHandler(file_handler)

    # Events below both handler levels are dropped before rendering
    min_level = min(console_level, file_log_level) if log_file else console_level

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            add_app_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer(colors=False),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_api_request(
    logger: structlog.stdlib.BoundLogger,
    method: str,
    url: str,
    status_code: int,
    duration_ms: float | None = None,
    **extra: Any,
) -> None:
    """Log one completed Rally or Azure DevOps call.

    404s are routine (existence lookups, deleted related records) and stay
    at DEBUG. Throttling and server errors are warnings since the call will
    be retried; other client errors are warnings too.
    """
    context: dict[str, Any] = {"method": method, "url": url, "status_code": status_code, **extra}
    if duration_ms is not None:
        context["duration_ms"] = round(duration_ms, 2)

    if status_code < 400 or status_code == 404:
        logger.debug("api_request", **context)
    elif status_code == 429 or status_code >= 500:
        logger.warning("api_request_retryable", **context)
    else:
        logger.warning("api_request_rejected", **context)


def log_batch_progress(
    logger: structlog.stdlib.BoundLogger,
    batch: int,
    batches: int,
    processed: int,
    total: int,
    **extra: Any,
) -> None:
    """Log the run's position after a batch of records is drained."""
    logger.info(
        "batch_completed",
        batch=batch,
        batches=batches,
        processed=processed,
        total=total,
        percentage=round(processed / total * 100, 2) if total > 0 else 0.0,
        **extra,
    )


def log_checkpoint(
    logger: structlog.stdlib.BoundLogger,
    checkpoint_path: str,
    last_index: int,
    mapped_records: int,
    unfinished_records: int = 0,
) -> None:
    logger.debug(
        "checkpoint_saved",
        checkpoint_path=checkpoint_path,
        last_index=last_index,
        mapped_records=mapped_records,
        unfinished_records=unfinished_records,
    )


def log_record_error(
    logger: structlog.stdlib.BoundLogger,
    error: Exception,
    source_id: str,
    stage: str,
    **extra: Any,
) -> None:
    """Log an unexpected failure while migrating one record, with traceback."""
    logger.error(
        "record_error",
        source_id=source_id,
        stage=stage,
        error_type=type(error).__name__,
        error=str(error),
        exc_info=True,
        **extra,
    )


def _is_sensitive(name: Any) -> bool:
    lowered = str(name).lower()
    return any(field in lowered for field in SENSITIVE_FIELDS)


def sanitize_payload(payload: Any, max_depth: int = 10) -> Any:
    """Copy of a request payload with secrets redacted.

    Redacts values under sensitive keys and the ``value`` of JSON Patch
    operations whose ``path`` names a sensitive field.
    """
    if max_depth <= 0:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(payload, Mapping):
        if "op" in payload and _is_sensitive(payload.get("path", "")):
            return {**payload, "value": REDACTED} if "value" in payload else dict(payload)
        return {
            key: REDACTED if _is_sensitive(key) else sanitize_payload(value, max_depth - 1)
            for key, value in payload.items()
        }

    if isinstance(payload, list):
        return [sanitize_payload(item, max_depth - 1) for item in payload]

    return payload


def truncate_payload(payload: Any, max_size: int = 10000) -> str:
    """Render a payload as JSON text cut to ``max_size`` characters."""
    try:
        text = json.dumps(payload, indent=2, default=str)
    except (TypeError, ValueError):
        text = str(payload)
    if len(text) <= max_size:
        return text
    return f"{text[:max_size]}\n... [TRUNCATED - {len(text)} total chars]"


def should_log_payloads(logger: structlog.stdlib.BoundLogger, log_payloads_enabled: bool) -> bool:
    """Payloads are logged only when enabled in config and DEBUG is on."""
    if not log_payloads_enabled:
        return False
    return logging.getLogger(getattr(logger, "name", None) or "").isEnabledFor(logging.DEBUG)
