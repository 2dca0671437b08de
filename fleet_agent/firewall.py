"""Host firewall gate.

Opens a game server's port after its container is created. The gate picks
the first firewall front-end found on the host (ufw, firewalld, iptables)
and allows both TCP and UDP. Calls are idempotent and best-effort: errors
are logged and never raised to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import shutil

from fleet_agent.errors import FirewallError
from fleet_agent.runtime.cmd import run_cmd

logger = logging.getLogger(__name__)

BACKENDS = ("ufw", "firewall-cmd", "iptables")
PROTOCOLS = ("tcp", "udp")


class FirewallGate:
    """Idempotent ``allow_port(port, ip)`` front-end."""

    def __init__(self, backend: str | None = None, timeout: float = 30.0):
        self._backend = backend
        self._detected = backend is not None
        self._timeout = timeout
        self._allowed: set[tuple[int, str]] = set()
        self._lock = asyncio.Lock()

    @property
    def backend(self) -> str | None:
        if not self._detected:
            self._backend = next((b for b in BACKENDS if shutil.which(b)), None)
            self._detected = True
        return self._backend

    async def allow_port(self, port: int, ip: str) -> bool:
        """Allow inbound traffic to ``port`` (and forwarding to ``ip``).

        Returns:
            True if the rule is in place, False if it could not be added
        """
        key = (port, ip)
        async with self._lock:
            if key in self._allowed:
                return True
            try:
                await self._apply(port, ip)
            except (FirewallError, OSError, asyncio.TimeoutError) as e:
                logger.error(f"Failed to open port {port} for {ip}: {e}")
                return False
            self._allowed.add(key)
        logger.info(f"Firewall allows port {port} (container IP: {ip})")
        return True

    async def _apply(self, port: int, ip: str) -> None:
        backend = self.backend
        if backend is None:
            logger.info(f"No firewall front-end found; port {port} left as is")
            return
        if backend == "ufw":
            await self._check(["ufw", "allow", str(port)])
        elif backend == "firewall-cmd":
            for proto in PROTOCOLS:
                await self._check(["firewall-cmd", "--permanent", f"--add-port={port}/{proto}"])
            await self._check(["firewall-cmd", "--reload"])
        else:
            for proto in PROTOCOLS:
                await self._ensure_iptables_rule(
                    ["INPUT", "-p", proto, "--dport", str(port), "-j", "ACCEPT"]
                )
                if ip and ip != "0.0.0.0":
                    await self._ensure_iptables_rule(
                        ["FORWARD", "-d", ip, "-p", proto, "--dport", str(port), "-j", "ACCEPT"]
                    )

    async def _ensure_iptables_rule(self, rule: list[str]) -> None:
        code, _, _ = await run_cmd(["iptables", "-C", *rule], timeout=self._timeout)
        if code == 0:
            return
        await self._check(["iptables", "-I", *rule])

    async def _check(self, cmd: list[str]) -> None:
        code, _, stderr = await run_cmd(cmd, timeout=self._timeout)
        if code != 0:
            raise FirewallError(f"{' '.join(cmd)} failed: {stderr.strip()}")
