"""Periodic host-health and per-container resource samplers.

Both samplers tick on the event loop's monotonic clock. A sample taken while
the control channel is down is dropped rather than queued, and a slow publish
never delays the next tick.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable

import psutil

from fleet_agent.errors import ContainerRuntimeError
from fleet_agent.schemas import Frame, FrameKind, HealthReport
from fleet_agent.version import __version__

if TYPE_CHECKING:
    from fleet_agent.channel import ControlChannel
    from fleet_agent.runtime.nerdctl import NerdctlRuntime

logger = logging.getLogger(__name__)


def collect_host_health(agent_id: str, started_monotonic: float, disk_path: str) -> HealthReport:
    """Gather a host health sample (blocking; run in a thread)."""
    cpu_percent = psutil.cpu_percent(interval=0.1)
    memory = psutil.virtual_memory()
    if not os.path.exists(disk_path):
        disk_path = "/"
    disk = psutil.disk_usage(disk_path)

    return HealthReport(
        agent_id=agent_id,
        agent_version=__version__,
        timestamp=datetime.now(timezone.utc),
        uptime_secs=round(time.monotonic() - started_monotonic, 1),
        cpu_percent=cpu_percent,
        memory_percent=memory.percent,
        memory_used_mb=round(memory.used / (1024 ** 2), 1),
        memory_total_mb=round(memory.total / (1024 ** 2), 1),
        disk_percent=disk.percent,
        disk_used_gb=round(disk.used / (1024 ** 3), 2),
        disk_total_gb=round(disk.total / (1024 ** 3), 2),
    )


class TelemetrySampler:
    """Runs the health and resource-stats sampling tasks."""

    def __init__(
        self,
        channel: ControlChannel,
        runtime: NerdctlRuntime,
        agent_id: str,
        interval: float = 30.0,
        disk_path: str = "/",
    ):
        self.channel = channel
        self.runtime = runtime
        self.agent_id = agent_id
        self.interval = interval
        self.disk_path = disk_path
        self._started = time.monotonic()
        self._tasks: list[asyncio.Task] = []

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._tick_loop("health", self.publish_health)),
            asyncio.create_task(self._tick_loop("resource-stats", self.publish_stats)),
        ]
        logger.info(f"Telemetry started (interval={self.interval:g}s)")

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _tick_loop(self, name: str, sample: Callable[[], Awaitable[None]]) -> None:
        """Call ``sample`` on a fixed monotonic schedule, skipping missed ticks."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time() + self.interval
        while True:
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
            next_tick += self.interval
            now = loop.time()
            while next_tick <= now:
                next_tick += self.interval
            try:
                await sample()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"{name} sampler error")

    async def publish_health(self) -> None:
        if not self.channel.connected:
            logger.debug("Channel down; health sample dropped")
            return
        report = await asyncio.to_thread(
            collect_host_health, self.agent_id, self._started, self.disk_path
        )
        frame = Frame.new(FrameKind.HEALTH_REPORT, report.model_dump(mode="json"))
        if not self.channel.send_nowait(frame):
            logger.warning("Failed to publish health report")

    async def publish_stats(self) -> None:
        if not self.channel.connected:
            logger.debug("Channel down; resource stats dropped")
            return
        try:
            containers = await self.runtime.list()
        except ContainerRuntimeError as e:
            logger.warning(f"Cannot list containers for stats: {e}")
            return

        for container in containers:
            if not container.running:
                continue
            try:
                stats = await self.runtime.stats(container.id)
            except ContainerRuntimeError as e:
                logger.warning(f"Stats unavailable for {container.names}: {e}")
                continue
            frame = Frame.new(FrameKind.RESOURCE_STATS, {
                "container_id": container.names,
                "runtime_id": stats.id,
                "name": stats.name,
                "cpu_percent": stats.cpu_percent,
                "memory_usage": stats.memory_usage,
                "net_io": stats.net_io,
                "block_io": stats.block_io,
            })
            if not self.channel.send_nowait(frame):
                logger.warning(f"Failed to publish stats for {container.names}")
