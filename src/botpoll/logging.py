from __future__ import annotations

import os
import re
import sys
from typing import Any, cast

import structlog
from structlog.types import Processor

BOT_TOKEN_RE = re.compile(r"bot\d+:[A-Za-z0-9_-]+")
BARE_TOKEN_RE = re.compile(r"\b\d+:[A-Za-z0-9_-]{10,}\b")

_LEVELS: dict[str, int] = {
    "debug": 10,
    "info": 20,
    "warning": 30,
    "error": 40,
    "exception": 40,
    "critical": 50,
}

_MIN_LEVEL = _LEVELS["info"]


def _truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _level_value(value: str | None, *, default: str = "info") -> int:
    if not value:
        return _LEVELS[default]
    level = _LEVELS.get(value.strip().lower())
    return level if level is not None else _LEVELS[default]


def _drop_below_level(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    if _LEVELS.get(method_name, 0) < _MIN_LEVEL:
        raise structlog.DropEvent
    return event_dict


def redact_text(value: str) -> str:
    redacted = BOT_TOKEN_RE.sub("bot[REDACTED]", value)
    return BARE_TOKEN_RE.sub("[REDACTED_TOKEN]", redacted)


def _redact_value(value: Any, memo: dict[int, Any]) -> Any:
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, (bytes, bytearray)):
        return redact_text(value.decode("utf-8", errors="replace"))
    obj_id = id(value)
    if obj_id in memo:
        return memo[obj_id]
    if isinstance(value, dict):
        redacted: dict[Any, Any] = {}
        memo[obj_id] = redacted
        for key, val in value.items():
            redacted[key] = _redact_value(val, memo)
        return redacted
    if isinstance(value, list):
        redacted_list: list[Any] = []
        memo[obj_id] = redacted_list
        redacted_list.extend(_redact_value(item, memo) for item in value)
        return redacted_list
    if isinstance(value, tuple):
        redacted_items: list[Any] = []
        memo[obj_id] = redacted_items
        redacted_items.extend(_redact_value(item, memo) for item in value)
        return tuple(redacted_items)
    return value


def _redact_event_dict(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    _ = logger, method_name
    return _redact_value(event_dict, memo={})


def _add_logger_name(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    if "logger" in event_dict:
        return event_dict
    name = event_dict.pop("logger_name", None)
    if isinstance(name, str) and name:
        event_dict["logger"] = name
    return event_dict


def get_logger(name: str | None = None) -> Any:
    if name:
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


def setup_logging(
    *, debug: bool = False, cache_logger_on_first_use: bool = True
) -> None:
    """Configure structlog for the process.

    ``BOTPOLL_LOG_LEVEL`` picks the minimum level (``--debug`` wins),
    ``BOTPOLL_LOG_FORMAT`` is ``console`` or ``json`` and ``BOTPOLL_LOG_COLOR``
    forces colors on or off.
    """
    global _MIN_LEVEL

    level_name = os.environ.get("BOTPOLL_LOG_LEVEL")
    if debug:
        level_name = "debug"
    _MIN_LEVEL = _level_value(level_name, default="info")

    format_value = os.environ.get("BOTPOLL_LOG_FORMAT", "console").strip().lower()
    color_override = os.environ.get("BOTPOLL_LOG_COLOR")
    if color_override is None:
        colors = sys.stdout.isatty()
    else:
        colors = _truthy(color_override)

    processors = cast(
        list[Processor],
        [
            _drop_below_level,
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            _add_logger_name,
        ],
    )
    if format_value == "json":
        processors.append(structlog.processors.format_exc_info)
        renderer: Any = structlog.processors.JSONRenderer(default=str)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colors)
    processors.extend(cast(list[Processor], [_redact_event_dict, renderer]))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=cache_logger_on_first_use,
    )
