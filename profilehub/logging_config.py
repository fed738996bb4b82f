from __future__ import annotations

from datetime import UTC, datetime
import json
import logging
import sys
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from profilehub.logging_context import get_collector_context, get_request_id

DEFAULT_REDACT_FIELDS = {
    "authorization",
    "api_key",
    "apikey",
    "cookie",
    "password",
    "secret",
    "token",
}
REDACTED = "[REDACTED]"

_RESERVED_RECORD_FIELDS = set(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "color_message"}
_HEADER_FIELDS = ("timestamp", "level", "logger", "event", "collector", "run_id", "request_id")
_LEVEL_TAGS = {
    logging.DEBUG: "DBG",
    logging.INFO: "INF",
    logging.WARNING: "WRN",
    logging.ERROR: "ERR",
    logging.CRITICAL: "CRT",
}


def parse_redact_fields(raw: str | None) -> set[str]:
    extra = {item.strip().lower() for item in (raw or "").split(",")}
    return DEFAULT_REDACT_FIELDS | {item for item in extra if item}


def configure_logging(
    *,
    level: str,
    log_format: str,
    redact_fields: set[str],
    include_uvicorn_access: bool,
) -> None:
    resolved_level = logging.getLevelNamesMapping().get(level.strip().upper(), logging.INFO)
    if log_format.strip().lower() == "json":
        formatter: logging.Formatter = JsonLogFormatter(redact_fields=redact_fields)
    else:
        formatter = ConsoleLogFormatter(redact_fields=redact_fields)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved_level)
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(resolved_level)
    root_logger.addHandler(handler)

    # uvicorn installs its own handlers; send everything through the root one.
    for logger_name, logger_level in (
        ("uvicorn", resolved_level),
        ("uvicorn.error", resolved_level),
        ("uvicorn.access", resolved_level if include_uvicorn_access else logging.WARNING),
    ):
        framework_logger = logging.getLogger(logger_name)
        framework_logger.handlers.clear()
        framework_logger.propagate = True
        framework_logger.setLevel(logger_level)


class RequestContextFilter(logging.Filter):
    """Stamps request id and the bound collector run onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = get_request_id()
        collector, run_id = get_collector_context()
        if not getattr(record, "collector", None):
            record.collector = collector
        if getattr(record, "run_id", None) is None:
            record.run_id = run_id
        return True


class _Redactor:
    def __init__(self, redact_fields: set[str]) -> None:
        self._fields = {field.lower() for field in redact_fields}

    def mapping(self, value: dict[str, Any]) -> dict[str, Any]:
        return {key: self.value(key, item) for key, item in value.items()}

    def value(self, key: str, value: Any) -> Any:
        lowered = key.lower()
        if lowered in self._fields:
            return REDACTED
        if isinstance(value, dict):
            return self.mapping(value)
        if isinstance(value, (list, tuple)):
            return [self.value(key, item) for item in value]
        if isinstance(value, str) and lowered.endswith("url"):
            return self.url(value)
        return value

    def url(self, value: str) -> str:
        # Collector endpoints may carry credentials in userinfo or the query string.
        parts = urlsplit(value)
        if not parts.scheme or not parts.netloc:
            return value
        netloc = parts.netloc
        if "@" in netloc:
            netloc = f"{REDACTED}@{netloc.rsplit('@', 1)[1]}"
        query = urlencode(
            [
                (name, REDACTED if name.lower() in self._fields else item)
                for name, item in parse_qsl(parts.query, keep_blank_values=True)
            ],
            safe="[]",
        )
        return urlunsplit((parts.scheme, netloc, parts.path, query, parts.fragment))


def _record_payload(record: logging.LogRecord, redactor: _Redactor) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "timestamp": datetime.fromtimestamp(record.created, tz=UTC).strftime("%Y-%m-%d %H:%M:%SZ"),
        "level": record.levelname.lower(),
        "logger": record.name,
        "event": getattr(record, "event", None) or record.getMessage(),
    }
    for key in ("collector", "run_id", "request_id"):
        value = getattr(record, key, None)
        if value is not None and value != "":
            payload[key] = value
    extras = {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_RECORD_FIELDS and key not in _HEADER_FIELDS and not key.startswith("_")
    }
    payload.update(redactor.mapping(extras))
    return payload


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, redact_fields: set[str]) -> None:
        super().__init__()
        self._redactor = _Redactor(redact_fields)

    def format(self, record: logging.LogRecord) -> str:
        payload = _record_payload(record, self._redactor)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


class ConsoleLogFormatter(logging.Formatter):
    """One line per record: ``time | LVL | logger | [collector#run] event | key=value ...``."""

    def __init__(self, *, redact_fields: set[str]) -> None:
        super().__init__()
        self._redactor = _Redactor(redact_fields)

    def format(self, record: logging.LogRecord) -> str:
        payload = _record_payload(record, self._redactor)
        event = str(payload.pop("event"))
        collector = payload.pop("collector", None)
        run_id = payload.pop("run_id", None)
        if collector:
            tag = collector if run_id is None else f"{collector}#{run_id}"
            event = f"[{tag}] {event}"

        parts = [
            payload.pop("timestamp"),
            _LEVEL_TAGS.get(record.levelno, record.levelname[:3].upper()),
            payload.pop("logger"),
            event,
        ]
        payload.pop("level", None)
        request_id = payload.pop("request_id", None)
        if request_id:
            parts.append(f"rid={request_id}")
        method, path = payload.pop("method", None), payload.pop("path", None)
        if method and path:
            parts.append(f"{method} {path}")
        parts.extend(f"{key}={payload[key]}" for key in sorted(payload))
        line = " | ".join(str(part) for part in parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line
