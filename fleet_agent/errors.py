"""Error taxonomy shared by the agent components."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Kinds carried in the payload of ``error`` reply frames."""
    UNKNOWN_COMMAND = "UnknownCommand"
    BAD_REQUEST = "BadRequest"
    TOOL_MISSING = "ToolMissing"
    COMMAND_FAILED = "CommandFailed"
    DECODE = "Decode"
    FOLLOWER_ERROR = "FollowerError"
    INTERNAL = "Internal"


class RuntimeErrorKind(str, Enum):
    """Failure classes of the container CLI."""
    TOOL_MISSING = "ToolMissing"
    COMMAND_FAILED = "CommandFailed"
    DECODE = "Decode"


class AgentError(Exception):
    """Base class for agent errors."""


class ConfigError(AgentError):
    """Fatal configuration problem detected at startup."""


class ProvisionWarning(AgentError):
    """Non-fatal host provisioning failure."""


class ContainerRuntimeError(AgentError):
    """The container CLI could not be run or returned an error."""

    def __init__(self, kind: RuntimeErrorKind, text: str):
        super().__init__(f"{kind.value}: {text}")
        self.kind = kind
        self.text = text

    @classmethod
    def tool_missing(cls, binary: str) -> "ContainerRuntimeError":
        return cls(RuntimeErrorKind.TOOL_MISSING, f"{binary} not found in PATH")

    @classmethod
    def command_failed(cls, text: str) -> "ContainerRuntimeError":
        return cls(RuntimeErrorKind.COMMAND_FAILED, text)

    @classmethod
    def decode(cls, text: str) -> "ContainerRuntimeError":
        return cls(RuntimeErrorKind.DECODE, text)


class ProtocolError(AgentError):
    """Malformed frame on the control channel; the connection is reset."""


class TransportError(AgentError):
    """Socket or handshake failure; triggers reconnection."""


class FollowerError(AgentError):
    """A log follower failed to spawn or died."""


class FirewallError(AgentError):
    """A firewall rule could not be installed."""
