"""Provisioning, supervision and health checks for the local gateway."""

from tokligence.gateway.health import HealthProbe
from tokligence.gateway.installer import ArchiveInstaller, BinaryProvisioner
from tokligence.gateway.release import ReleaseResolver
from tokligence.gateway.supervisor import ProcessSupervisor

__all__ = [
    "ArchiveInstaller",
    "BinaryProvisioner",
    "HealthProbe",
    "ProcessSupervisor",
    "ReleaseResolver",
]
