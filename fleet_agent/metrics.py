"""Prometheus metrics for the agent.

Served by the local HTTP endpoint at /metrics.
"""
from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

runtime_command_duration = Histogram(
    "fleet_agent_runtime_command_seconds",
    "Duration of container CLI invocations",
    ["operation", "status"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
)

frames_sent = Counter(
    "fleet_agent_frames_sent_total",
    "Frames written to the control channel",
    ["kind"],
)

frames_received = Counter(
    "fleet_agent_frames_received_total",
    "Frames read from the control channel",
    ["kind"],
)

frames_dropped = Counter(
    "fleet_agent_frames_dropped_total",
    "Outbound frames dropped before reaching the socket",
    ["reason"],
)

log_lines_dropped = Counter(
    "fleet_agent_log_lines_dropped_total",
    "Container log lines dropped under backpressure",
)

reconnect_attempts = Counter(
    "fleet_agent_reconnect_attempts_total",
    "Control channel connection attempts",
    ["result"],
)

channel_connected = Gauge(
    "fleet_agent_channel_connected",
    "1 while the control channel is in the Connected state",
)

active_followers = Gauge(
    "fleet_agent_log_followers",
    "Number of running log followers",
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
