"""
JSON-lines event logging (console + append-only file)
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

MAX_BODY_CHARS = 400

_configured = False


class JsonLineFormatter(logging.Formatter):
    """One JSON object per record: ts, level, event, then the event fields"""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "event": getattr(record, "event", record.getMessage()),
        }
        payload.update(getattr(record, "fields", {}))
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", log_dir: Optional[str] = "logs", log_file: str = "server.jsonl") -> None:
    """Attach the JSON handlers to the root logger once per process"""
    global _configured
    if _configured:
        return

    formatter = JsonLineFormatter()
    root = logging.getLogger()
    root.setLevel(level.upper())

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(os.path.join(log_dir, log_file), encoding="utf-8")
        except OSError as e:
            root.warning("log file unavailable, console only: %s", e)
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    _configured = True


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    logger.log(level, event, extra={"event": event, "fields": fields})


def truncate(value: str, limit: int = MAX_BODY_CHARS) -> str:
    return value if len(value) <= limit else f"{value[:limit]}..."
