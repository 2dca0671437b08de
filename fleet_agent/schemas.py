"""Agent-backend control channel schemas.

Every message on the control channel is a JSON text frame of the form
``{"id": str, "kind": str, "payload": object}``. These Pydantic models define
the frame envelope and the payloads the dispatcher validates.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from fleet_agent.errors import ErrorKind, ProtocolError


class FrameKind(str, Enum):
    """Known frame kinds."""
    # Backend -> agent commands
    CONTAINER_CREATE = "container.create"
    CONTAINER_START = "container.start"
    CONTAINER_STOP = "container.stop"
    CONTAINER_KILL = "container.kill"
    CONTAINER_REMOVE = "container.remove"
    CONTAINER_EXEC = "container.exec"
    CONTAINER_LIST = "container.list"
    CONTAINER_LOGS = "container.logs"
    CONTAINER_STATS = "container.stats"
    CONTAINER_INSPECT_IP = "container.inspect_ip"
    LOG_START = "log.start"
    LOG_STOP = "log.stop"
    PING = "ping"

    # Replies
    REPLY = "reply"
    PONG = "pong"
    ERROR = "error"

    # Handshake
    AGENT_HELLO = "agent.hello"
    BACKEND_READY = "backend.ready"

    # Agent -> backend unsolicited
    HEALTH_REPORT = "health.report"
    RESOURCE_STATS = "resource.stats"
    LOG_LINE = "log.line"
    LOG_DROPPED = "log.dropped"
    LOG_ENDED = "log.ended"


def new_frame_id() -> str:
    return uuid.uuid4().hex


class Frame(BaseModel):
    """Control channel envelope."""
    id: str = Field(min_length=1)
    kind: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def new(cls, kind: FrameKind | str, payload: dict[str, Any] | None = None) -> Frame:
        """Build an unsolicited frame with a fresh correlation id."""
        return cls(id=new_frame_id(), kind=_kind_value(kind), payload=payload or {})

    @classmethod
    def reply(cls, request_id: str, payload: dict[str, Any] | None = None) -> Frame:
        return cls(id=request_id, kind=FrameKind.REPLY.value, payload=payload or {})

    @classmethod
    def error(cls, request_id: str, kind: ErrorKind, text: str = "") -> Frame:
        payload: dict[str, Any] = {"kind": kind.value}
        if text:
            payload["text"] = text
        return cls(id=request_id, kind=FrameKind.ERROR.value, payload=payload)

    def encode(self) -> str:
        return self.model_dump_json()

    @classmethod
    def decode(cls, raw: str | bytes) -> Frame:
        """Parse a wire frame.

        Raises:
            ProtocolError: if the text is not a JSON object with a string
                ``id``, a string ``kind`` and an object ``payload``
        """
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"frame is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolError("frame must be a JSON object")
        if data.get("payload") is None:
            data["payload"] = {}
        try:
            return cls.model_validate(data, strict=True)
        except ValidationError as e:
            raise ProtocolError(f"malformed frame: {e.errors()[0]['msg']}") from e


def _kind_value(kind: FrameKind | str) -> str:
    return kind.value if isinstance(kind, FrameKind) else kind


# --- Command payloads ---

class ContainerRef(BaseModel):
    """Payload naming a single container."""
    id: str = Field(min_length=1)


class StopRequest(ContainerRef):
    grace_secs: int = Field(default=10, ge=0)


class KillRequest(ContainerRef):
    signal: str = Field(default="SIGKILL", min_length=1)


class ExecRequest(ContainerRef):
    argv: list[str] = Field(min_length=1)


class LogsRequest(ContainerRef):
    lines: int | None = Field(default=None, ge=0)


# --- Agent -> backend payloads ---

class AgentHello(BaseModel):
    agent_id: str
    version: str
    capabilities: list[str] = Field(default_factory=list)


class HealthReport(BaseModel):
    """Host health sample."""
    agent_id: str
    agent_version: str
    timestamp: datetime
    uptime_secs: float
    cpu_percent: float
    memory_percent: float
    memory_used_mb: float
    memory_total_mb: float
    disk_percent: float
    disk_used_gb: float
    disk_total_gb: float


class LogLine(BaseModel):
    id: str
    stream: str  # stdout | stderr
    text: str
    ts: str | None = None


class LogDropped(BaseModel):
    id: str
    count: int


class LogEnded(BaseModel):
    id: str
    exit_code: int | None = None
    error: str | None = None
