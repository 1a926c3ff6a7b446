"""Structured, redacting logging for the MakeTicket API.

Provides structured logging with correlation IDs, severity levels, and contextual
metadata. Uses python-json-logger for JSON formatting in production and a
colorized single-line format everywhere else. Redaction applies identically in
both modes.

Components receive a ``StructuredLogger`` (built once by ``configure_logging``)
rather than importing a global; ``child()`` derives loggers that stamp fixed
fields on every entry.
"""

import errno
import json
import logging
import sys
import traceback
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import IO, Any

from pythonjsonlogger.json import JsonFormatter

from packages.common.config import MakeTicketConfig, get_config
from packages.common.logging.redaction import REDACTED, redact, redact_string
from packages.common.tracing import current

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LEVEL_NAMES: dict[int, str] = {
    TRACE: "TRACE",
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "FATAL",
}

_LEVEL_ALIASES: dict[str, int] = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "FATAL": logging.CRITICAL,
    "CRITICAL": logging.CRITICAL,
}

_COLORS: dict[str, str] = {
    "TRACE": "\x1b[90m",  # Gray
    "DEBUG": "\x1b[36m",  # Cyan
    "INFO": "\x1b[32m",  # Green
    "WARN": "\x1b[33m",  # Yellow
    "ERROR": "\x1b[31m",  # Red
    "FATAL": "\x1b[35m",  # Magenta
}
_DIM = "\x1b[90m"
_RESET = "\x1b[0m"
_CONSOLE_DATA_LIMIT = 200

# Marks handlers installed by configure_logging so reconfiguration only swaps ours
_HANDLER_MARKER = "_maketicket_handler"


def parse_level(name: str) -> int:
    """Map a level name (TRACE..FATAL, WARN/WARNING, CRITICAL) to its number."""
    try:
        return _LEVEL_ALIASES[name.strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown log level: {name}") from None


def level_name(levelno: int) -> str:
    """Return the canonical six-level name for a numeric level."""
    if levelno in LEVEL_NAMES:
        return LEVEL_NAMES[levelno]
    for threshold in sorted(LEVEL_NAMES, reverse=True):
        if levelno >= threshold:
            return LEVEL_NAMES[threshold]
    return "TRACE"


def _error_code(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if code is None and isinstance(error, OSError) and error.errno is not None:
        code = errno.errorcode.get(error.errno)
    if isinstance(code, str | int) and not isinstance(code, bool):
        return str(code)
    return None


def describe_error(error: object, include_stack: bool) -> dict[str, Any]:
    """Build the error descriptor of a log entry.

    Args:
        error: An exception, or any other value passed where an error was expected.
        include_stack: Whether to attach the formatted traceback.

    Returns:
        dict[str, Any]: ``name``, redacted ``message``, plus ``code`` (e.g.
        ``ECONNREFUSED`` or an application error code) and ``stack`` when
        available.
    """
    if isinstance(error, BaseException):
        descriptor: dict[str, Any] = {
            "name": type(error).__name__,
            "message": redact_string(str(error)),
        }
        code = _error_code(error)
        if code is not None:
            descriptor["code"] = code
        if include_stack:
            descriptor["stack"] = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )
        return descriptor
    # Non-exception values go through the full redactor first so sensitive keys
    # never reach the message text
    return {"name": "Error", "message": str(redact(error))}


class RequestContextFilter(logging.Filter):
    """Logging filter that stamps records with the ambient request context.

    The context is read at emission time, on the emitting task, so each record
    carries the identifiers of the request that produced it.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """Inject correlation identifiers into the log record.

        Args:
            record: The log record to modify.

        Returns:
            bool: Always True (doesn't filter out records).
        """
        for name, value in current().as_log_fields().items():
            setattr(record, name, value)
        return True


class MaxLevelFilter(logging.Filter):
    """Pass only records strictly below ``max_level``."""

    def __init__(self, max_level: int) -> None:
        super().__init__()
        self.max_level = max_level

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < self.max_level


def build_entry(
    record: logging.LogRecord, *, service: str, environment: str, include_stack: bool
) -> dict[str, Any]:
    """Assemble the log entry for a record, dropping empty fields.

    Records produced by ``StructuredLogger`` carry ``event``, ``data`` and
    ``error_value`` attributes; plain ``logging`` records fall back to their
    (pattern-redacted) message and ``exc_info``.
    """
    event = getattr(record, "event", None) or redact_string(record.getMessage())
    entry: dict[str, Any] = {
        "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
        "level": level_name(record.levelno),
        "service": service,
        "environment": environment,
        "event": event,
        "request_id": getattr(record, "request_id", None),
        "trace_id": getattr(record, "trace_id", None),
        "span_id": getattr(record, "span_id", None),
        "user_id": getattr(record, "user_id", None),
        "data": getattr(record, "data", None),
    }

    error_value = getattr(record, "error_value", None)
    if error_value is None and record.exc_info and record.exc_info[1] is not None:
        error_value = record.exc_info[1]
    if error_value is not None:
        entry["error"] = describe_error(error_value, include_stack)

    if entry["user_id"] is not None:
        entry["user_id"] = str(entry["user_id"])
    return {key: value for key, value in entry.items() if value is not None}


class StructuredJsonFormatter(JsonFormatter):
    """JSON formatter producing one log entry per line.

    Falls back to a degraded entry if the payload cannot be serialized.
    """

    def __init__(self, *, service: str, environment: str, include_stack: bool) -> None:
        super().__init__()
        self.service = service
        self.environment = environment
        self.include_stack = include_stack

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Replace the default fields with the structured entry.

        Args:
            log_record: The dictionary that will be serialized to JSON.
            record: The original logging.LogRecord.
            message_dict: Dictionary from the log message (unused).
        """
        log_record.update(
            build_entry(
                record,
                service=self.service,
                environment=self.environment,
                include_stack=self.include_stack,
            )
        )

    def format(self, record: logging.LogRecord) -> str:
        try:
            return super().format(record)
        except Exception as exc:  # noqa: BLE001 - logging must not raise
            degraded = {
                "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
                "level": level_name(record.levelno),
                "service": self.service,
                "environment": self.environment,
                "event": getattr(record, "event", None) or "log.unserializable",
                "request_id": getattr(record, "request_id", None),
                "data": "[UNSERIALIZABLE]",
                "format_error": type(exc).__name__,
            }
            return json.dumps(degraded, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter for local development.

    Renders ``[HH:MM:SS] LEVEL event rid=<request id> {data}`` with the error
    name, message and the first stack frames on following lines.
    """

    def __init__(
        self, *, service: str, environment: str, include_stack: bool, color: bool = True
    ) -> None:
        super().__init__()
        self.service = service
        self.environment = environment
        self.include_stack = include_stack
        self.color = color

    def _paint(self, code: str, text: str) -> str:
        return f"{code}{text}{_RESET}" if self.color else text

    def format(self, record: logging.LogRecord) -> str:
        entry = build_entry(
            record,
            service=self.service,
            environment=self.environment,
            include_stack=self.include_stack,
        )
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = entry["level"]
        line = self._paint(_COLORS.get(level, _RESET), f"[{clock}] {level:<5}")
        line += f" {entry['event']}"

        if "request_id" in entry:
            line += " " + self._paint(_DIM, f"rid={entry['request_id'][:12]}")

        data = entry.get("data")
        if data:
            try:
                rendered = json.dumps(data, default=str)
            except (TypeError, ValueError):
                rendered = REDACTED
            if len(rendered) < _CONSOLE_DATA_LIMIT:
                line += " " + self._paint(_DIM, rendered)

        error = entry.get("error")
        if error:
            line += "\n  " + self._paint(_COLORS["ERROR"], f"{error['name']}: {error['message']}")
            stack = error.get("stack")
            if stack:
                line += "\n" + "\n".join(stack.rstrip().splitlines()[1:4])
        return line


def _split_payload(
    first: object, second: object
) -> tuple[Mapping[str, Any] | None, object | None]:
    """Sort positional log arguments into (data, error) by runtime type.

    Mappings in either slot are data and exceptions in either slot are the
    error. Any other value is kept as ``detail`` data in the first slot and
    treated as the error in the second.
    """
    data: dict[str, Any] = {}
    error: object | None = None
    for position, value in enumerate((first, second)):
        if value is None:
            continue
        if isinstance(value, Mapping):
            data.update(value)
        elif isinstance(value, BaseException) and error is None:
            error = value
        elif position == 0 or error is not None:
            data.setdefault("detail", value)
        else:
            error = value
    return (data or None), error


class StructuredLogger:
    """Facade emitting redacted, context-stamped entries through ``logging``.

    Every method takes an event name plus optional data and/or error, in
    either order. ``child(**fields)`` returns a logger whose entries always
    carry ``fields`` (caller-supplied data wins on key collisions).

    Example:
        >>> log = configure_logging()
        >>> payments = log.child(subsystem="payment")
        >>> payments.info("payment.captured", {"amount": 499})
    """

    def __init__(self, logger: logging.Logger, fields: Mapping[str, Any] | None = None) -> None:
        self._logger = logger
        self._fields: dict[str, Any] = dict(fields or {})

    @property
    def fields(self) -> dict[str, Any]:
        return dict(self._fields)

    def is_enabled_for(self, level: int) -> bool:
        return self._logger.isEnabledFor(level)

    def child(self, **fields: Any) -> "StructuredLogger":
        """Return a logger that merges ``fields`` under every call's data."""
        return StructuredLogger(self._logger, {**self._fields, **fields})

    def log(
        self,
        level: int,
        event: str,
        data: object = None,
        error: object = None,
    ) -> None:
        """Emit one entry at ``level``; never raises."""
        if not self._logger.isEnabledFor(level):
            return
        try:
            payload, error_value = _split_payload(data, error)
            merged = {**self._fields, **(payload or {})}
            self._logger.log(
                level,
                event,
                extra={
                    "event": event,
                    "data": redact(merged) if merged else None,
                    "error_value": error_value,
                },
            )
        except Exception as exc:  # noqa: BLE001 - logging must not abort the caller
            self._logger.log(
                level,
                event,
                extra={
                    "event": event,
                    "data": {"log_error": type(exc).__name__},
                    "error_value": None,
                },
            )

    def trace(self, event: str, data: object = None, error: object = None) -> None:
        self.log(TRACE, event, data, error)

    def debug(self, event: str, data: object = None, error: object = None) -> None:
        self.log(logging.DEBUG, event, data, error)

    def info(self, event: str, data: object = None, error: object = None) -> None:
        self.log(logging.INFO, event, data, error)

    def warn(self, event: str, data: object = None, error: object = None) -> None:
        self.log(logging.WARNING, event, data, error)

    warning = warn

    def error(self, event: str, data: object = None, error: object = None) -> None:
        self.log(logging.ERROR, event, data, error)

    def fatal(self, event: str, data: object = None, error: object = None) -> None:
        self.log(logging.CRITICAL, event, data, error)

    def security(self, event: str, data: object = None) -> None:
        """Log a security-relevant event at WARN under the ``security.`` namespace."""
        self.warn(f"security.{event}", data)

    def db(self, event: str, data: object = None) -> None:
        """Log a storage operation at DEBUG under the ``db.`` namespace."""
        self.debug(f"db.{event}", data)

    def external(self, event: str, data: object = None) -> None:
        """Log a call to an external service at INFO under the ``external.`` namespace."""
        self.info(f"external.{event}", data)

    def http_request(
        self,
        *,
        method: str,
        path: str,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        self.info(
            "http.request.received",
            {
                "http": {
                    "method": method,
                    "path": path,
                    "client_ip": client_ip,
                    "user_agent": user_agent,
                }
            },
        )

    def http_response(
        self,
        *,
        method: str,
        path: str,
        status_code: int,
        response_time_ms: float,
        client_ip: str | None = None,
    ) -> None:
        """Log a completed response; 5xx at ERROR, 4xx at WARN, else INFO."""
        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        self.log(
            level,
            "http.response.sent",
            {
                "http": {
                    "method": method,
                    "path": path,
                    "status_code": status_code,
                    "response_time_ms": response_time_ms,
                    "client_ip": client_ip,
                }
            },
        )


def _install(target: logging.Logger, handler: logging.Handler) -> None:
    setattr(handler, _HANDLER_MARKER, True)
    handler.addFilter(RequestContextFilter())
    target.addHandler(handler)


def shutdown_logging(target: logging.Logger | None = None) -> None:
    """Flush and remove the handlers installed by ``configure_logging``."""
    target = target if target is not None else logging.getLogger()
    for handler in list(target.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            handler.flush()
            target.removeHandler(handler)
            handler.close()


def configure_logging(
    config: MakeTicketConfig | None = None,
    *,
    target: logging.Logger | None = None,
    stdout: IO[str] | None = None,
    stderr: IO[str] | None = None,
) -> StructuredLogger:
    """Configure structured logging and return the application logger.

    Sets up:
    - production: JSON formatter, ERROR/FATAL to stderr, the rest to stdout
    - elsewhere: colorized console formatter on stdout
    - request context filter on every handler
    - level threshold from config (INFO in production, DEBUG otherwise)

    Args:
        config: Settings; defaults to ``get_config()``.
        target: Logger to attach handlers to. Defaults to the root logger, so
            records from ``logging.getLogger(__name__)`` share the same output.
        stdout: Stream for non-error entries (defaults to ``sys.stdout``).
        stderr: Stream for error entries in production (defaults to ``sys.stderr``).

    Returns:
        StructuredLogger: Logger to inject into pipeline components.
    """
    config = config or get_config()
    target = target if target is not None else logging.getLogger()
    threshold = parse_level(config.effective_log_level)
    include_stack = not config.is_production

    shutdown_logging(target)
    target.setLevel(threshold)

    if config.is_production:
        out_handler = logging.StreamHandler(stdout or sys.stdout)
        out_handler.addFilter(MaxLevelFilter(logging.ERROR))
        err_handler = logging.StreamHandler(stderr or sys.stderr)
        err_handler.setLevel(logging.ERROR)
        for handler in (out_handler, err_handler):
            handler.setFormatter(
                StructuredJsonFormatter(
                    service=config.service_name,
                    environment=config.environment,
                    include_stack=include_stack,
                )
            )
            _install(target, handler)
    else:
        console_handler = logging.StreamHandler(stdout or sys.stdout)
        console_handler.setFormatter(
            ConsoleFormatter(
                service=config.service_name,
                environment=config.environment,
                include_stack=include_stack,
                color=config.log_color,
            )
        )
        _install(target, console_handler)

    if target is not logging.getLogger():
        target.propagate = False
        return StructuredLogger(target)
    return StructuredLogger(logging.getLogger(config.service_name))


def get_logger(name: str) -> logging.Logger:
    """Get a plain ``logging`` logger for module-level diagnostics.

    Args:
        name: The logger name (typically __name__ from the calling module).

    Returns:
        logging.Logger: Logger whose records flow through the configured handlers.
    """
    return logging.getLogger(name)


# Export public API
__all__ = [
    "LEVEL_NAMES",
    "TRACE",
    "ConsoleFormatter",
    "MaxLevelFilter",
    "RequestContextFilter",
    "StructuredJsonFormatter",
    "StructuredLogger",
    "build_entry",
    "configure_logging",
    "describe_error",
    "get_logger",
    "level_name",
    "parse_level",
    "shutdown_logging",
]
