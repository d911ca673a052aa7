"""Filesystem contract shared by the deployment stages."""
from __future__ import annotations

import posixpath
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig

CONFIG_FILENAME = "config.json"
CERT_FILENAME = "cert.pem"
KEY_FILENAME = "private.key"
SECRET_FILENAME = "uuid.txt"


@dataclass(frozen=True, slots=True)
class DeploymentPaths:
    """Host-side and container-side locations of every deployment artefact.

    The working directory is mounted read-only at ``container_data_dir`` so the
    container-side paths are the host file names joined onto that mount point.
    """

    workdir: Path
    container_data_dir: str = "/data"

    @classmethod
    def from_config(cls, config: AppConfig) -> DeploymentPaths:
        """Build the path contract for *config*."""
        return cls(workdir=config.workdir, container_data_dir=config.container_data_dir)

    @property
    def config(self) -> Path:
        """Return the host path of the rendered sing-box document."""
        return self.workdir / CONFIG_FILENAME

    @property
    def certificate(self) -> Path:
        """Return the host path of the PEM certificate."""
        return self.workdir / CERT_FILENAME

    @property
    def key(self) -> Path:
        """Return the host path of the PEM private key."""
        return self.workdir / KEY_FILENAME

    @property
    def secret(self) -> Path:
        """Return the host path of the persisted secret."""
        return self.workdir / SECRET_FILENAME

    @property
    def container_config(self) -> str:
        """Return the config path as seen from inside the container."""
        return posixpath.join(self.container_data_dir, CONFIG_FILENAME)

    @property
    def container_certificate(self) -> str:
        """Return the certificate path as seen from inside the container."""
        return posixpath.join(self.container_data_dir, CERT_FILENAME)

    @property
    def container_key(self) -> str:
        """Return the key path as seen from inside the container."""
        return posixpath.join(self.container_data_dir, KEY_FILENAME)

    def ensure_workdir(self) -> None:
        """Create the working directory and restrict it to the owner."""
        self.workdir.mkdir(parents=True, exist_ok=True)
        self.workdir.chmod(0o700)

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "workdir": str(self.workdir),
            "config": str(self.config),
            "certificate": str(self.certificate),
            "key": str(self.key),
            "secret": str(self.secret),
            "container_config": self.container_config,
            "container_certificate": self.container_certificate,
            "container_key": self.container_key,
        }


__all__ = ["DeploymentPaths"]
