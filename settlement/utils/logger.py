"""
Centralized logging configuration.
Structured logging for settlement audit trails, job timings and debugging.

Every module grabs a logger through ``get_logger(__name__)`` and passes context
as keyword arguments::

    logger.info("Payout computed", promoter_id=pid, net_amount=str(net))

Keyword context ends up in ``record.extra_data`` and is flattened into the JSON
file output, so ledger-affecting events can be grepped by id.
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

ROOT_LOGGER_NAME = "settlement"
AUDIT_LOGGER_NAME = f"{ROOT_LOGGER_NAME}.audit"


class JSONFormatter(logging.Formatter):
    """
    Render log records as one JSON object per line.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_data = getattr(record, 'extra_data', None)
        if extra_data:
            log_entry.update(extra_data)

        log_entry["process_id"] = record.process
        # default=str keeps Decimal / datetime / enum context serializable
        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Thin wrapper over ``logging.Logger`` accepting keyword context.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)

    def _log_with_extra(self, level: int, message: str, exc_info: bool = False, **kwargs):
        extra_data = {k: v for k, v in kwargs.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={'extra_data': extra_data})

    def info(self, message: str, **kwargs):
        self._log_with_extra(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log_with_extra(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log_with_extra(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log_with_extra(logging.DEBUG, message, **kwargs)


def _handler(kind: str, log_level: str, filename: Optional[str] = None) -> Dict[str, Any]:
    if kind == "console":
        return {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "standard",
            "level": log_level,
        }
    Path(filename).parent.mkdir(parents=True, exist_ok=True)  # type: ignore[arg-type]
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "filename": filename,
        "maxBytes": 10 * 1024 * 1024,  # 10MB
        "backupCount": 5,
        "formatter": "json",
        "level": log_level,
    }


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True,
    audit_file: Optional[str] = None,
) -> None:
    """
    Configure process-wide logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path for the rotating JSON log
        enable_console: Whether to log human-readable lines to stdout
        audit_file: Optional separate JSON log receiving only business events
            (payouts, payments, fraud actions, credential revocations)
    """
    handlers: Dict[str, Any] = {}
    if enable_console:
        handlers["console"] = _handler("console", log_level)
    if log_file:
        handlers["file"] = _handler("file", log_level, log_file)
    shared = list(handlers)

    # sqlalchemy only above WARNING, otherwise every query is echoed
    loggers: Dict[str, Any] = {
        name: {"level": level, "handlers": list(shared), "propagate": False}
        for name, level in ((ROOT_LOGGER_NAME, log_level), ("uvicorn", "INFO"), ("sqlalchemy.engine", "WARNING"))
    }
    if audit_file:
        handlers["audit"] = _handler("file", "INFO", audit_file)
        loggers[AUDIT_LOGGER_NAME] = {"level": "INFO", "handlers": [*shared, "audit"], "propagate": False}

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "standard": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": log_level, "handlers": list(shared)},
    })


def get_logger(name: str) -> StructuredLogger:
    """
    Get a structured logger namespaced under ``settlement.``.

    Args:
        name: Logger name (typically __name__)
    """
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    promoter_id: Optional[str] = None,
    correlation_id: Optional[str] = None
) -> None:
    """
    Log a money-moving or enforcement event for the audit trail.

    Args:
        event_type: e.g. 'payout_batch_completed', 'payment_failed', 'fraud_action_applied'
        details: Event-specific details
        promoter_id: Promoter the event concerns, if any
        correlation_id: Batch / payment / job id for tracing
    """
    audit_logger = get_logger(AUDIT_LOGGER_NAME)
    audit_logger.info(
        f"Business event: {event_type}",
        event_type=event_type,
        promoter_id=promoter_id,
        correlation_id=correlation_id,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log how long an operation took.

    Args:
        operation: Operation name
        duration_ms: Duration in milliseconds
        additional_data: Additional context data
    """
    perf_logger = get_logger("performance")
    data: Dict[str, Any] = {"duration_ms": round(duration_ms, 2)}
    if additional_data:
        data.update(additional_data)

    perf_logger.info(
        f"Performance: {operation}",
        operation=operation,
        **data
    )
