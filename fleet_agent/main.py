"""Fleet Agent - per-host container orchestration agent.

This agent runs on each game-server host and handles:
- Host provisioning (containerd, nerdctl, CNI macvlan network, DHCP daemon)
- Container lifecycle commands received over the backend control channel
- Log streaming for followed containers
- Periodic host health and container resource reports
"""

from __future__ import annotations

import asyncio
import logging
import signal
import socket
import sys
import uuid

from fleet_agent.channel import Backoff, ControlChannel
from fleet_agent.config import Settings, check_settings, settings, settings_error
from fleet_agent.dispatcher import CommandDispatcher
from fleet_agent.errors import ConfigError
from fleet_agent.firewall import FirewallGate
from fleet_agent.http_server import bind_socket, build_server, create_app
from fleet_agent.logging_config import setup_agent_logging
from fleet_agent.logstream import LogMultiplexer
from fleet_agent.provisioner import HostProvisioner
from fleet_agent.runtime.nerdctl import NerdctlRuntime
from fleet_agent.schemas import AgentHello
from fleet_agent.telemetry import TelemetrySampler
from fleet_agent.version import __version__

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_HTTP_BIND = 2


class FleetAgent:
    """Wires the agent components together and runs them."""

    def __init__(self, cfg: Settings, agent_id: str):
        self.cfg = cfg
        self.agent_id = agent_id

        self.firewall = FirewallGate(timeout=cfg.command_timeout)
        self.runtime = NerdctlRuntime(
            binary=cfg.runtime_binary,
            namespace=cfg.namespace,
            address=cfg.socket_path or None,
            command_timeout=cfg.command_timeout,
            firewall=self.firewall,
        )
        self.channel = ControlChannel(
            url=cfg.backend_url,
            token=cfg.token,
            hello=self.hello,
            connect_timeout=cfg.connect_timeout,
            handshake_timeout=cfg.handshake_timeout,
            heartbeat_interval=cfg.heartbeat_interval,
            heartbeat_miss_limit=cfg.heartbeat_miss_limit,
            queue_size=cfg.outbound_queue_size,
            backoff=Backoff(cfg.backoff_base, cfg.backoff_factor, cfg.backoff_cap),
        )
        self.logs = LogMultiplexer(
            self.runtime,
            self.channel,
            send_timeout=cfg.log_send_timeout,
            buffer_lines=cfg.log_buffer_lines,
        )
        self.dispatcher = CommandDispatcher(self.runtime, self.channel, self.logs)
        self.channel.handler = self.dispatcher.handle_frame
        self.channel.on_teardown = self.dispatcher.shutdown
        self.telemetry = TelemetrySampler(
            self.channel,
            self.runtime,
            agent_id,
            interval=cfg.sample_interval,
            disk_path=cfg.data_dir,
        )
        self._stop = asyncio.Event()

    def hello(self) -> AgentHello:
        return AgentHello(
            agent_id=self.agent_id,
            version=__version__,
            capabilities=self.dispatcher.commands,
        )

    def request_stop(self) -> None:
        logger.info("Shutdown requested")
        self._stop.set()

    async def run(self, http_sock: socket.socket | None = None) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

        logger.info(f"Agent {self.agent_id} starting (version {__version__})")
        logger.info(f"Backend URL: {self.cfg.backend_url}")

        channel_task = asyncio.create_task(self.channel.run_forever(), name="control-channel")
        stop_task = asyncio.create_task(self._stop.wait(), name="stop-waiter")
        watched = [channel_task, stop_task]

        server = None
        http_task = None
        if http_sock is not None:
            server = build_server(create_app(self))
            http_task = asyncio.create_task(server.serve(sockets=[http_sock]), name="http")
            watched.append(http_task)
            logger.info(f"Local HTTP server listening on {self.cfg.http_host}:{self.cfg.http_port}")

        self.telemetry.start()
        await asyncio.wait(watched, return_when=asyncio.FIRST_COMPLETED)

        # Orderly shutdown: samplers, then the channel (which stops followers
        # and cancels in-flight requests), then the HTTP server.
        await self.telemetry.stop()
        self.channel.stop()
        channel_task.cancel()
        stop_task.cancel()
        if server is not None:
            server.should_exit = True

        results = await asyncio.gather(
            *(t for t in (channel_task, stop_task, http_task) if t is not None),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Task ended with error: {result}")
        logger.info(f"Agent {self.agent_id} shut down")


def main() -> int:
    agent_id = settings.agent_id or uuid.uuid4().hex[:8]
    setup_agent_logging(agent_id)

    try:
        if settings_error is not None:
            raise settings_error
        check_settings(settings)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_CONFIG

    if settings.provision_on_start:
        HostProvisioner(
            runtime_binary=settings.runtime_binary,
            nerdctl_version=settings.nerdctl_version,
            cni_plugins_version=settings.cni_plugins_version,
        ).run()

    try:
        http_sock = bind_socket(settings.http_host, settings.http_port)
    except OSError as e:
        logger.error(f"Cannot bind {settings.http_host}:{settings.http_port}: {e}")
        return EXIT_HTTP_BIND

    agent = FleetAgent(settings, agent_id)
    try:
        asyncio.run(agent.run(http_sock))
    finally:
        http_sock.close()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
