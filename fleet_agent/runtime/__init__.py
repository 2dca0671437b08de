"""Container runtime adapter."""

from fleet_agent.runtime.models import ContainerDescriptor, ContainerStats, ContainerSummary
from fleet_agent.runtime.nerdctl import NerdctlRuntime

__all__ = [
    "ContainerDescriptor",
    "ContainerStats",
    "ContainerSummary",
    "NerdctlRuntime",
]
