# runner/logger.py
import json
import os
from datetime import datetime, timezone
from typing import Any

LOG_LEVEL = os.getenv("BM_LOG_LEVEL", "INFO").upper()
LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "CRITICAL": 50}


def _should_log(level: str) -> bool:
    return LEVELS.get(level, 20) >= LEVELS.get(LOG_LEVEL, 20)


def log(level: str, event: str, message: str = "", **kwargs: Any) -> None:
    if not _should_log(level):
        return
    entry = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "event": event,
        "message": str(message),
        "payload": kwargs
    }
    try:
        line = json.dumps(entry, default=str)
    except (TypeError, ValueError) as e:
        # Circular payloads and the like; keep the event, drop the payload
        line = json.dumps({
            "ts": entry["ts"],
            "level": "ERROR",
            "event": "log_serialization_error",
            "message": f"Failed to log event {event}: {str(e)}",
            "payload": {"original_message": str(message)}
        })
    print(line, flush=True)


def elapsed_ms(start: float, end: float) -> int:
    return int((end - start) * 1000)
