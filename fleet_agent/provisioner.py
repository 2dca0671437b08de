"""One-shot host provisioning run at agent startup.

Brings a fresh worker host to the state the agent needs:

1. Detect the package manager
2. Install containerd if the container CLI is missing
3. Install the standalone nerdctl release if it is still missing
4. Write the macvlan + DHCP CNI network config (``mc-lan``)
5. Make sure the CNI DHCP daemon is running (systemd unit or detached)

Every step is idempotent. Failures are collected as warnings and never stop
the agent from starting. This module runs before the event loop starts and
uses blocking subprocess calls.
"""

from __future__ import annotations

import json
import logging
import platform
import shutil
import subprocess
import tarfile
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from fleet_agent.errors import ProvisionWarning

logger = logging.getLogger(__name__)

PACKAGE_MANAGERS = (
    ("apt-get", "apt"),
    ("yum", "yum"),
    ("dnf", "dnf"),
    ("pacman", "pacman"),
    ("zypper", "zypper"),
)

CNI_NETWORK_NAME = "mc-lan"
CNI_CONF_DIR = Path("/etc/cni/net.d")
CNI_BIN_DIR = Path("/opt/cni/bin")
SYSTEMD_DIR = Path("/etc/systemd/system")
BIN_DIR = Path("/usr/local/bin")

DHCP_UNIT_NAME = "cni-dhcp.service"
DHCP_PROCESS_PATTERN = "dhcp daemon"

NERDCTL_URL = (
    "https://github.com/containerd/nerdctl/releases/download/"
    "v{version}/nerdctl-{version}-linux-{arch}.tar.gz"
)
CNI_PLUGINS_URL = (
    "https://github.com/containernetworking/plugins/releases/download/"
    "{version}/cni-plugins-linux-{arch}-{version}.tgz"
)

_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "ppc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
}


def host_arch() -> str:
    """Release-artifact architecture name for this host."""
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def render_dhcp_unit(cni_bin_dir: Path) -> str:
    return f"""[Unit]
Description=CNI DHCP Daemon for Container Networking
Documentation=https://github.com/containernetworking/plugins
After=network.target

[Service]
Type=simple
ExecStart={cni_bin_dir / "dhcp"} daemon
Restart=always
RestartSec=10
StandardOutput=journal
StandardError=journal

[Install]
WantedBy=multi-user.target
"""


def render_cni_config(interface: str) -> str:
    """macvlan network with DHCP IPAM bound to ``interface``."""
    config = {
        "cniVersion": "1.0.0",
        "name": CNI_NETWORK_NAME,
        "plugins": [
            {
                "type": "macvlan",
                "master": interface,
                "mode": "bridge",
                "ipam": {"type": "dhcp"},
            }
        ],
    }
    return json.dumps(config, indent=2) + "\n"


@dataclass
class ProvisionReport:
    """Outcome of a provisioning run."""
    package_manager: str | None = None
    actions: list[str] = field(default_factory=list)  # side effects performed
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.warnings


class HostProvisioner:
    """Idempotent boot-time host setup."""

    def __init__(
        self,
        runtime_binary: str = "nerdctl",
        nerdctl_version: str = "1.7.6",
        cni_plugins_version: str = "v1.4.1",
        cni_conf_dir: Path = CNI_CONF_DIR,
        cni_bin_dir: Path = CNI_BIN_DIR,
        systemd_dir: Path = SYSTEMD_DIR,
        bin_dir: Path = BIN_DIR,
        command_timeout: float = 300.0,
        settle_secs: float = 2.0,
    ):
        self.runtime_binary = runtime_binary
        self.nerdctl_version = nerdctl_version
        self.cni_plugins_version = cni_plugins_version
        self.cni_conf_dir = Path(cni_conf_dir)
        self.cni_bin_dir = Path(cni_bin_dir)
        self.systemd_dir = Path(systemd_dir)
        self.bin_dir = Path(bin_dir)
        self.command_timeout = command_timeout
        self.settle_secs = settle_secs

    @property
    def cni_config_path(self) -> Path:
        return self.cni_conf_dir / f"{CNI_NETWORK_NAME}.conflist"

    @property
    def dhcp_binary(self) -> Path:
        return self.cni_bin_dir / "dhcp"

    @property
    def dhcp_unit_path(self) -> Path:
        return self.systemd_dir / DHCP_UNIT_NAME

    def run(self) -> ProvisionReport:
        """Execute all steps; never raises."""
        report = ProvisionReport()
        logger.info("Starting host provisioning")

        try:
            report.package_manager = self.detect_package_manager()
        except ProvisionWarning as e:
            self._warn(report, e)
            logger.warning("Host provisioning aborted")
            return report
        logger.info(f"Detected package manager: {report.package_manager}")

        steps = (
            lambda: self.ensure_runtime(report.package_manager, report),
            lambda: self.ensure_cni_config(report),
            lambda: self.ensure_dhcp_daemon(report),
        )
        for step in steps:
            try:
                step()
            except ProvisionWarning as e:
                self._warn(report, e)
            except (OSError, httpx.HTTPError, tarfile.TarError) as e:
                self._warn(report, ProvisionWarning(f"{type(e).__name__}: {e}"))

        if report.ok:
            logger.info("Host provisioning complete")
        else:
            logger.warning(
                f"Host provisioning finished with {len(report.warnings)} warning(s); "
                "continuing with existing configuration"
            )
        return report

    @staticmethod
    def _warn(report: ProvisionReport, warning: ProvisionWarning) -> None:
        logger.warning(f"Provisioning: {warning}")
        report.warnings.append(str(warning))

    # --- Step 1: package manager ---

    def detect_package_manager(self) -> str:
        for binary, family in PACKAGE_MANAGERS:
            if shutil.which(binary):
                return family
        raise ProvisionWarning("NoPackageManager: no supported package manager found")

    # --- Steps 2 and 3: container runtime ---

    def ensure_runtime(self, pkg_manager: str, report: ProvisionReport) -> None:
        if shutil.which(self.runtime_binary):
            logger.info(f"{self.runtime_binary} already installed")
            return

        logger.warning("Container runtime not found, installing containerd")
        if pkg_manager == "apt":
            self._run(["apt-get", "update", "-qq"])
            self._run(["apt-get", "install", "-y", "-qq", "containerd"])
        elif pkg_manager in ("yum", "dnf"):
            self._run([pkg_manager, "install", "-y", "containerd"])
        elif pkg_manager == "pacman":
            self._run(["pacman", "-S", "--noconfirm", "containerd"])
        else:
            raise ProvisionWarning(
                f"automatic containerd installation is not supported for {pkg_manager}"
            )
        report.actions.append(f"installed containerd via {pkg_manager}")

        if not shutil.which(self.runtime_binary):
            self.install_nerdctl(report)

    def install_nerdctl(self, report: ProvisionReport) -> None:
        url = NERDCTL_URL.format(version=self.nerdctl_version, arch=host_arch())
        logger.info(f"Installing nerdctl from {url}")
        self._download_and_extract(url, self.bin_dir, members=["nerdctl"])
        (self.bin_dir / "nerdctl").chmod(0o755)
        report.actions.append(f"installed nerdctl {self.nerdctl_version}")

    # --- Step 4: CNI network ---

    def ensure_cni_config(self, report: ProvisionReport) -> None:
        self.cni_conf_dir.mkdir(parents=True, exist_ok=True)
        if self.cni_config_path.exists():
            logger.info("CNI network configuration already exists")
            return

        interface = self.detect_interface()
        logger.info(f"Detected network interface: {interface}")
        self.cni_config_path.write_text(render_cni_config(interface))
        report.actions.append(f"wrote {self.cni_config_path}")
        logger.info(f"Created CNI network configuration at {self.cni_config_path}")

    def detect_interface(self) -> str:
        """Interface of the default route, else the first non-loopback link."""
        result = self._query(["ip", "route", "show", "default"])
        if result is not None and result.returncode == 0:
            for line in result.stdout.splitlines():
                tokens = line.split()
                if tokens[:1] == ["default"] and "dev" in tokens:
                    idx = tokens.index("dev")
                    if idx + 1 < len(tokens):
                        return tokens[idx + 1]

        result = self._query(["ip", "-o", "link", "show"])
        if result is not None and result.returncode == 0:
            for line in result.stdout.splitlines():
                # "2: eth0@if5: <BROADCAST,...> mtu 1500 ..."
                parts = line.split(":", 2)
                if len(parts) < 2:
                    continue
                name = parts[1].strip().split("@", 1)[0]
                if name and name != "lo":
                    return name

        raise ProvisionWarning("could not detect a network interface for the CNI config")

    # --- Step 5: DHCP daemon ---

    def ensure_dhcp_daemon(self, report: ProvisionReport) -> None:
        if self.is_dhcp_daemon_running():
            logger.info("CNI DHCP daemon already running")
            return

        if not self.dhcp_binary.exists():
            logger.warning("CNI DHCP plugin not found, installing CNI plugins")
            self.install_cni_plugins(report)

        if shutil.which("systemctl"):
            try:
                self.setup_dhcp_systemd(report)
                return
            except ProvisionWarning as e:
                logger.warning(f"systemd setup failed ({e}); starting DHCP daemon directly")

        logger.info("Starting CNI DHCP daemon")
        subprocess.Popen(
            [str(self.dhcp_binary), "daemon"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        time.sleep(self.settle_secs)

        if not self.is_dhcp_daemon_running():
            raise ProvisionWarning("CNI DHCP daemon failed to start")
        report.actions.append("started CNI DHCP daemon")
        logger.info("CNI DHCP daemon started")

    def setup_dhcp_systemd(self, report: ProvisionReport) -> None:
        unit = render_dhcp_unit(self.cni_bin_dir)
        current = self.dhcp_unit_path.read_text() if self.dhcp_unit_path.exists() else None
        if current != unit:
            self.systemd_dir.mkdir(parents=True, exist_ok=True)
            self.dhcp_unit_path.write_text(unit)
            report.actions.append(f"wrote {self.dhcp_unit_path}")
            self._run(["systemctl", "daemon-reload"])

        self._run(["systemctl", "enable", DHCP_UNIT_NAME])
        self._run(["systemctl", "start", DHCP_UNIT_NAME])
        report.actions.append(f"started {DHCP_UNIT_NAME}")
        logger.info("CNI DHCP systemd service enabled and started")

    def is_dhcp_daemon_running(self) -> bool:
        result = self._query(["pgrep", "-f", DHCP_PROCESS_PATTERN])
        return result is not None and result.returncode == 0

    def install_cni_plugins(self, report: ProvisionReport) -> None:
        url = CNI_PLUGINS_URL.format(version=self.cni_plugins_version, arch=host_arch())
        logger.info(f"Installing CNI plugins from {url}")
        self._download_and_extract(url, self.cni_bin_dir)
        report.actions.append(f"installed CNI plugins {self.cni_plugins_version}")

    # --- Helpers ---

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        """Run a command that must succeed."""
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.command_timeout
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ProvisionWarning(f"{' '.join(cmd)} failed: {e}") from e
        if result.returncode != 0:
            raise ProvisionWarning(f"{' '.join(cmd)} failed: {result.stderr.strip()}")
        return result

    def _query(self, cmd: list[str]) -> subprocess.CompletedProcess | None:
        """Run a read-only command whose failure is an answer, not an error."""
        try:
            return subprocess.run(cmd, capture_output=True, text=True, timeout=10)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"{' '.join(cmd)} unavailable: {e}")
            return None

    def _download_and_extract(
        self, url: str, dest: Path, members: list[str] | None = None
    ) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryFile() as tmp:
            with httpx.stream("GET", url, follow_redirects=True, timeout=60.0) as response:
                response.raise_for_status()
                for chunk in response.iter_bytes():
                    tmp.write(chunk)
            tmp.seek(0)
            with tarfile.open(fileobj=tmp, mode="r:gz") as tar:
                selected = None
                if members is not None:
                    selected = [m for m in tar.getmembers() if m.name.lstrip("./") in members]
                    if not selected:
                        raise ProvisionWarning(f"{url} does not contain {', '.join(members)}")
                tar.extractall(dest, members=selected, filter="data")
