"""Container runtime adapter backed by the nerdctl CLI.

Every operation shells out to ``nerdctl --namespace <ns>`` and returns either
its parsed result or raises ContainerRuntimeError carrying the CLI's stderr.
The adapter holds no mutable state and is safe to share between tasks.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, TypeVar

from pydantic import BaseModel, ValidationError

from fleet_agent.errors import ContainerRuntimeError, RuntimeErrorKind
from fleet_agent.metrics import runtime_command_duration
from fleet_agent.runtime.cmd import run_cmd
from fleet_agent.runtime.models import ContainerDescriptor, ContainerStats, ContainerSummary

if TYPE_CHECKING:
    from fleet_agent.firewall import FirewallGate

logger = logging.getLogger(__name__)

IP_TEMPLATE = "{{range .NetworkSettings.Networks}}{{.IPAddress}}{{end}}"

_M = TypeVar("_M", bound=BaseModel)


def parse_json_lines(text: str, model: type[_M]) -> list[_M]:
    """Parse newline-delimited JSON, skipping blank lines.

    Raises:
        ContainerRuntimeError: kind Decode on malformed JSON or missing fields
    """
    items = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            items.append(model.model_validate(json.loads(line)))
        except (ValueError, ValidationError) as e:
            raise ContainerRuntimeError.decode(f"cannot parse {model.__name__}: {e}") from e
    return items


class NerdctlRuntime:
    """Typed wrapper around the local container CLI."""

    def __init__(
        self,
        binary: str = "nerdctl",
        namespace: str = "default",
        address: str | None = None,
        command_timeout: float = 30.0,
        firewall: FirewallGate | None = None,
    ):
        self.binary = binary
        self.namespace = namespace
        self.address = address
        self.command_timeout = command_timeout
        self.firewall = firewall

    def _base_args(self) -> list[str]:
        args = [self.binary, "--namespace", self.namespace]
        if self.address:
            args += ["--address", self.address]
        return args

    async def _run(self, operation: str, *args: str) -> str:
        """Run one CLI invocation and return its stdout."""
        cmd = self._base_args() + list(args)
        logger.debug(f"Running: {' '.join(cmd)}")
        status = "error"
        start = time.monotonic()
        try:
            code, stdout, stderr = await run_cmd(cmd, timeout=self.command_timeout)
            if code != 0:
                text = stderr.strip() or f"{self.binary} {operation} exited with status {code}"
                raise ContainerRuntimeError.command_failed(text)
            status = "success"
            return stdout
        except FileNotFoundError as e:
            raise ContainerRuntimeError.tool_missing(self.binary) from e
        except asyncio.TimeoutError as e:
            raise ContainerRuntimeError.command_failed(
                f"{self.binary} {operation} timed out after {self.command_timeout:g}s"
            ) from e
        finally:
            runtime_command_duration.labels(operation=operation, status=status).observe(
                time.monotonic() - start
            )

    # --- Lifecycle ---

    def build_create_args(self, desc: ContainerDescriptor) -> list[str]:
        """CLI arguments (after the namespace flags) for ``create``."""
        args = [
            "run",
            f"--memory={desc.memory_mb}m",
            "--cpus", str(desc.cpu_cores),
            "-v", f"{desc.data_dir}:/data",
            "-w", "/data",
        ]

        if desc.network_mode == "host":
            args += ["--network", "host"]
        elif desc.network_mode != "bridge":
            # Named CNI network, e.g. the macvlan "mc-lan"
            args += ["--network", desc.network_mode]

        if desc.network_mode != "host":
            args += ["-p", f"0.0.0.0:{desc.port}:{desc.port}"]

        for key, value in desc.env.items():
            args += ["-e", f"{key}={value}"]

        args += ["--name", desc.container_id, "-d", desc.image]

        if desc.startup_command:
            args += ["sh", "-c", desc.startup_command]
        return args

    async def create(self, desc: ContainerDescriptor) -> str:
        """Create and start a container, then open its port on the firewall.

        Returns:
            The full container id printed by the CLI
        """
        logger.info(f"Creating container {desc.container_id} from image {desc.image}")
        stdout = await self._run("create", *self.build_create_args(desc))
        full_id = stdout.strip()
        logger.info(f"Container {desc.container_id} created: {full_id[:12]}")

        try:
            ip = await self.inspect_ip(desc.container_id)
        except ContainerRuntimeError as e:
            logger.warning(f"Could not read IP of {desc.container_id}: {e.text}")
            ip = ""

        if self.firewall is not None:
            await self.firewall.allow_port(desc.port, ip or "0.0.0.0")
        return full_id

    async def start(self, container_id: str) -> None:
        logger.info(f"Starting container {container_id}")
        await self._run("start", "start", container_id)

    async def stop(self, container_id: str, grace_secs: int = 10) -> None:
        logger.info(f"Stopping container {container_id} (grace {grace_secs}s)")
        await self._run("stop", "stop", "-t", str(grace_secs), container_id)

    async def kill(self, container_id: str, signal: str = "SIGKILL") -> None:
        logger.info(f"Killing container {container_id} with {signal}")
        await self._run("kill", "kill", "-s", signal, container_id)

    async def remove(self, container_id: str) -> None:
        logger.info(f"Removing container {container_id}")
        await self._run("remove", "rm", "-f", container_id)

    # --- Observation ---

    async def logs(self, container_id: str, tail: int | None = None) -> str:
        args = ["logs"]
        if tail is not None:
            args += ["--tail", str(tail)]
        args.append(container_id)
        return await self._run("logs", *args)

    async def list(self) -> list[ContainerSummary]:
        stdout = await self._run("list", "ps", "-a", "--format", "json")
        return parse_json_lines(stdout, ContainerSummary)

    async def stats(self, container_id: str) -> ContainerStats:
        stdout = await self._run(
            "stats", "stats", "--no-stream", "--format", "json", container_id
        )
        rows = parse_json_lines(stdout, ContainerStats)
        if not rows:
            raise ContainerRuntimeError.decode(f"no stats returned for {container_id}")
        return rows[0]

    async def exec(self, container_id: str, argv: list[str]) -> str:
        return await self._run("exec", "exec", container_id, *argv)

    async def inspect_ip(self, container_id: str) -> str:
        """First-network IP address of a container, or "" if it has none."""
        stdout = await self._run("inspect", "inspect", "--format", IP_TEMPLATE, container_id)
        return stdout.strip()

    async def exists(self, container_id: str) -> bool:
        try:
            await self._run("inspect", "inspect", container_id)
        except ContainerRuntimeError as e:
            if e.kind is RuntimeErrorKind.COMMAND_FAILED:
                return False
            raise
        return True

    # --- Streaming ---

    async def spawn_log_follower(self, container_id: str) -> asyncio.subprocess.Process:
        """Start ``logs --follow --timestamps`` with stdout and stderr piped."""
        cmd = self._base_args() + ["logs", "--follow", "--timestamps", container_id]
        logger.info(f"Starting log follower for {container_id}")
        try:
            return await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ContainerRuntimeError.tool_missing(self.binary) from e
