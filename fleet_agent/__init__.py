"""Per-host container orchestration agent for game-server fleets."""

from fleet_agent.version import __version__

__all__ = ["__version__"]
