"""Agent version and build commit.

The version comes from the VERSION file shipped beside this module, or from
the installed ``fleet-agent`` distribution metadata when the file is absent.
"""

import os
import subprocess
from importlib import metadata
from pathlib import Path

DISTRIBUTION = "fleet-agent"

_PACKAGE_DIR = Path(__file__).parent


def _read_marker(name: str) -> str:
    """Stripped contents of a marker file in the package directory, or ""."""
    try:
        return (_PACKAGE_DIR / name).read_text().strip()
    except OSError:
        return ""


def get_version() -> str:
    version = _read_marker("VERSION")
    if version:
        return version
    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:
        return "0.0.0"


__version__ = get_version()


def get_commit() -> str:
    """Build commit: FLEET_AGENT_GIT_SHA, a GIT_SHA marker, else ``git rev-parse``."""
    commit = os.getenv("FLEET_AGENT_GIT_SHA", "").strip() or _read_marker("GIT_SHA")
    if commit:
        return commit
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short=12", "HEAD"],
            capture_output=True,
            text=True,
            timeout=5,
            cwd=_PACKAGE_DIR,
        )
    except (OSError, subprocess.SubprocessError):
        return "unknown"
    return result.stdout.strip() if result.returncode == 0 else "unknown"
