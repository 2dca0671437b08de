"""Container data model: creation descriptor and runtime observations."""

from __future__ import annotations

import re
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field, field_validator

_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")


class ContainerDescriptor(BaseModel):
    """Everything needed to create a game server container."""
    container_id: str = Field(min_length=1, max_length=128)
    image: str = Field(min_length=1)
    startup_command: str = ""
    env: dict[str, str] = Field(default_factory=dict)
    memory_mb: int = Field(gt=0)
    cpu_cores: int = Field(gt=0)
    data_dir: str
    port: int = Field(ge=1, le=65535)
    network_mode: str = "bridge"  # bridge | host | <CNI network name>

    @field_validator("container_id")
    @classmethod
    def _valid_name(cls, v: str) -> str:
        if not _NAME_RE.match(v):
            raise ValueError("container_id may only contain [a-zA-Z0-9_.-]")
        return v

    @field_validator("data_dir")
    @classmethod
    def _absolute_dir(cls, v: str) -> str:
        if not PurePosixPath(v).is_absolute():
            raise ValueError("data_dir must be an absolute path")
        return v

    @field_validator("network_mode")
    @classmethod
    def _valid_network(cls, v: str) -> str:
        if not v:
            return "bridge"
        if not _NAME_RE.match(v):
            raise ValueError(f"invalid network name: {v!r}")
        return v

    @field_validator("env")
    @classmethod
    def _valid_env_keys(cls, v: dict[str, str]) -> dict[str, str]:
        for key in v:
            if not key or "=" in key:
                raise ValueError(f"invalid environment variable name: {key!r}")
        return v


class ContainerSummary(BaseModel):
    """One row of ``nerdctl ps --format json``."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="ID")
    names: str = Field(alias="Names")
    status: str = Field(alias="Status")
    image: str = Field(default="", alias="Image")
    command: str = Field(default="", alias="Command")

    @property
    def running(self) -> bool:
        status = self.status.lower()
        return status.startswith("up") or status == "running"


class ContainerStats(BaseModel):
    """One row of ``nerdctl stats --no-stream --format json``."""
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="ID")
    name: str = Field(alias="Name")
    cpu_percent: str = Field(alias="CPUPerc")
    memory_usage: str = Field(alias="MemUsage")
    net_io: str = Field(default="", alias="NetIO")
    block_io: str = Field(default="", alias="BlockIO")
