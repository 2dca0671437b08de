"""Structured logging setup for the agent.

Two output formats are supported, selected by ``settings.log_format``:

* ``json``: one JSON object per line, suitable for log shippers
* ``text``: human-readable single-line records
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from fleet_agent.config import settings

# Attributes present on every LogRecord; anything else was passed via extra=
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}

_NOISY_LOGGERS = ("aiohttp", "httpx", "httpcore", "uvicorn.access")


def _extra_fields(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


class AgentJSONFormatter(logging.Formatter):
    """Render records as single-line JSON objects."""

    def __init__(self, agent_id: str):
        super().__init__()
        self.agent_id = agent_id

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "agent",
            "agent_id": self.agent_id,
        }
        extra = _extra_fields(record)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class AgentTextFormatter(logging.Formatter):
    """Human-readable formatter tagged with a short agent id."""

    def __init__(self, agent_id: str):
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s [%(agent_id)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
        self.agent_id = agent_id[:8]

    def format(self, record: logging.LogRecord) -> str:
        record.agent_id = self.agent_id
        return super().format(record)


def setup_agent_logging(agent_id: str) -> None:
    """Install the configured formatter on the root logger."""
    if settings.log_format == "json":
        formatter: logging.Formatter = AgentJSONFormatter(agent_id=agent_id)
    else:
        formatter = AgentTextFormatter(agent_id=agent_id)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
