"""Enforcement point client and gateway."""

from netcurfew.controller.gateway import CommandResult, EnforcementGateway, EnforcementPoint
from netcurfew.controller.unifi import UnifiClient, UnifiConfig

__all__ = [
    "CommandResult",
    "EnforcementGateway",
    "EnforcementPoint",
    "UnifiClient",
    "UnifiConfig",
]
