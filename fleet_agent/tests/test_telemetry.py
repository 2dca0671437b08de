"""Tests for the host health and resource stats samplers."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from fleet_agent.errors import ContainerRuntimeError
from fleet_agent.runtime.models import ContainerStats, ContainerSummary
from fleet_agent.telemetry import TelemetrySampler, collect_host_health
from conftest import FakeChannel


def _run(coro):
    return asyncio.run(coro)


def _runtime(containers=(), stats=None) -> MagicMock:
    runtime = MagicMock()
    runtime.list = AsyncMock(return_value=list(containers))
    runtime.stats = AsyncMock(side_effect=stats)
    return runtime


def _summary(name: str, status: str) -> ContainerSummary:
    return ContainerSummary(ID=f"{name}-full-id", Names=name, Status=status)


def _stats(name: str) -> ContainerStats:
    return ContainerStats(
        ID=f"{name}-full-id", Name=name, CPUPerc="3.10%", MemUsage="812MiB / 2GiB",
        NetIO="1.2MB / 800kB", BlockIO="0B / 12MB",
    )


def test_collect_host_health(tmp_path):
    report = collect_host_health("agent-1", started_monotonic=0.0, disk_path=str(tmp_path))

    assert report.agent_id == "agent-1"
    assert 0 <= report.memory_percent <= 100
    assert report.memory_total_mb > 0
    assert report.disk_total_gb > 0
    assert report.uptime_secs >= 0


def test_collect_host_health_missing_disk_path_uses_root():
    report = collect_host_health("agent-1", 0.0, "/nonexistent/fleet-agent-data")

    assert report.disk_total_gb > 0


def test_health_published_when_connected(tmp_path):
    channel = FakeChannel()
    sampler = TelemetrySampler(channel, _runtime(), "agent-1", disk_path=str(tmp_path))

    _run(sampler.publish_health())

    assert [f.kind for f in channel.frames] == ["health.report"]
    payload = channel.frames[0].payload
    assert payload["agent_id"] == "agent-1"
    assert isinstance(payload["timestamp"], str)


def test_samples_dropped_while_disconnected():
    channel = FakeChannel(connected=False)
    runtime = _runtime([_summary("mc-1", "Up 5 minutes")])
    sampler = TelemetrySampler(channel, runtime, "agent-1")

    async def go():
        await sampler.publish_health()
        await sampler.publish_stats()

    _run(go())

    assert channel.frames == []
    runtime.list.assert_not_awaited()


def test_stats_published_for_running_containers_only():
    channel = FakeChannel()
    runtime = _runtime(
        [_summary("mc-1", "Up 5 minutes"), _summary("mc-2", "Exited (0) 1 hour ago")],
        stats=lambda cid: _stats("mc-1"),
    )
    sampler = TelemetrySampler(channel, runtime, "agent-1")

    _run(sampler.publish_stats())

    runtime.stats.assert_awaited_once_with("mc-1-full-id")
    assert len(channel.frames) == 1
    frame = channel.frames[0]
    assert frame.kind == "resource.stats"
    assert frame.payload == {
        "container_id": "mc-1",
        "runtime_id": "mc-1-full-id",
        "name": "mc-1",
        "cpu_percent": "3.10%",
        "memory_usage": "812MiB / 2GiB",
        "net_io": "1.2MB / 800kB",
        "block_io": "0B / 12MB",
    }


def test_stats_error_for_one_container_skips_it():
    channel = FakeChannel()

    def stats(cid):
        if cid.startswith("mc-1"):
            raise ContainerRuntimeError.command_failed("container exited")
        return _stats("mc-2")

    runtime = _runtime(
        [_summary("mc-1", "Up 1 second"), _summary("mc-2", "Up 2 hours")], stats=stats
    )

    _run(TelemetrySampler(channel, runtime, "agent-1").publish_stats())

    assert [f.payload["container_id"] for f in channel.frames] == ["mc-2"]


def test_list_failure_publishes_nothing():
    channel = FakeChannel()
    runtime = _runtime()
    runtime.list.side_effect = ContainerRuntimeError.tool_missing("nerdctl")

    _run(TelemetrySampler(channel, runtime, "agent-1").publish_stats())

    assert channel.frames == []


@pytest.mark.asyncio
async def test_tick_loop_survives_sampler_errors():
    sampler = TelemetrySampler(FakeChannel(), _runtime(), "agent-1", interval=0.03)
    calls = []

    async def sample():
        calls.append(True)
        if len(calls) == 1:
            raise RuntimeError("transient")

    task = asyncio.create_task(sampler._tick_loop("test", sample))
    await asyncio.sleep(0.2)
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert len(calls) >= 3


@pytest.mark.asyncio
async def test_start_and_stop():
    sampler = TelemetrySampler(FakeChannel(), _runtime(), "agent-1", interval=60)

    sampler.start()
    sampler.start()
    assert len(sampler._tasks) == 2

    await sampler.stop()
    assert sampler._tasks == []
