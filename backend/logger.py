"""
ChemQuest Backend Logging
=========================
Rotating file logs under CHEMQUEST_LOG_DIR (default: backend/logs/).

  chemquest.log        everything the backend logs, tagged with the request id
  game_events.jsonl    one JSON object per account / game / stream event

Every record carries the id of the HTTP request that produced it, so a line
in game_events.jsonl can be matched with the chemquest.log lines around it.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from config import settings

GAME_EVENTS = "game.events"

_request_id: ContextVar[str] = ContextVar("chemquest_request_id", default="-")


def set_request_id(rid: str | None = None) -> str:
    """Bind `rid` (or a fresh 12-char id) to the current context and return it"""
    rid = (rid or "").strip()[:64] or uuid.uuid4().hex[:12]
    _request_id.set(rid)
    return rid


def get_request_id() -> str:
    return _request_id.get()


class _RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()  # type: ignore[attr-defined]
        return True


class _GameEventFormatter(logging.Formatter):
    """Render a game event record as a single JSON line"""

    def format(self, record: logging.LogRecord) -> str:
        line = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "event": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
        }
        for key in ("session", "player_id"):
            value = getattr(record, key, None)
            if value:
                line[key] = value
        line.update(getattr(record, "data", None) or {})
        return json.dumps(line, default=str)


_FILE_FMT = logging.Formatter(
    fmt="%(asctime)s | %(levelname)-8s | %(name)-22s | [%(request_id)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    defaults={"request_id": "-"},
)

_CONSOLE_FMT = logging.Formatter(
    fmt="%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%H:%M:%S",
)


def _file_handler(log_dir: Path, filename: str, max_mb: int, backups: int) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        log_dir / filename,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backups,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.addFilter(_RequestIdFilter())
    return handler


_configured = False


def setup_logging(*, console_level: int = logging.INFO) -> None:
    """Attach console, chemquest.log and game_events.jsonl handlers (once)."""
    global _configured
    if _configured:
        return
    _configured = True

    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(_CONSOLE_FMT)
    root.addHandler(console)

    general = _file_handler(log_dir, "chemquest.log", max_mb=5, backups=5)
    general.setFormatter(_FILE_FMT)
    root.addHandler(general)

    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)

    events = logging.getLogger(GAME_EVENTS)
    events.setLevel(logging.INFO)
    events.propagate = False
    event_handler = _file_handler(log_dir, "game_events.jsonl", max_mb=10, backups=10)
    event_handler.setFormatter(_GameEventFormatter())
    events.addHandler(event_handler)

    get_logger().info(f"📁 Logging to {log_dir.resolve()}")


def get_logger(name: str = "ChemQuest") -> logging.Logger:
    return logging.getLogger(name)


def log_game_event(
    event: str,
    *,
    session_code: str | None = None,
    player_id: str | None = None,
    data: dict[str, Any] | None = None,
) -> None:
    """Append one event to game_events.jsonl.

    `event` names what happened (``solo_started``, ``answer_submitted``,
    ``stream_disconnected`` ...); `data` is merged into the JSON line as-is.
    """
    logging.getLogger(GAME_EVENTS).info(
        event,
        extra={"session": session_code, "player_id": player_id, "data": data},
    )
