"""Provider interfaces for anytlsctl."""
from __future__ import annotations

from .docker import (
    ContainerSpec,
    DockerError,
    DockerProvider,
    DockerUnavailableError,
    ImageAcquisition,
    ImageUnavailableError,
    PortMapping,
    RemovalOutcome,
)

__all__ = [
    "ContainerSpec",
    "DockerError",
    "DockerProvider",
    "DockerUnavailableError",
    "ImageAcquisition",
    "ImageUnavailableError",
    "PortMapping",
    "RemovalOutcome",
]
