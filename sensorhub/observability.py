from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

SERVICE_NAME = "sensorhub-agent"
TEXT_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s - %(message)s"


def parse_log_level(raw: str | None, default: int = logging.INFO) -> int:
    """Accept a level name ("debug") or number ("15"); anything else is default."""

    value = (raw or "").strip()
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value.upper()) if value else None
    return level if isinstance(level, int) else default


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for journald and log shippers.

    `static` fields (service, device_id) are stamped on every line. Structured
    extras passed as `extra={"fields": {...}}` are kept under "fields".
    """

    def __init__(self, **static: Any) -> None:
        super().__init__()
        self.static = {key: value for key, value in static.items() if value is not None}

    def format(self, record: logging.LogRecord) -> str:
        line: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        line.update(self.static)

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            line["fields"] = fields
        if record.exc_info:
            line["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(line, separators=(",", ":"), ensure_ascii=False, default=str)


def configure_logging(*, level: int, log_format: str, device_id: str | None = None) -> None:
    """Install a single stderr handler on the root logger, text or JSON lines."""

    if log_format.strip().lower() == "json":
        formatter: logging.Formatter = JsonFormatter(service=SERVICE_NAME, device_id=device_id)
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
