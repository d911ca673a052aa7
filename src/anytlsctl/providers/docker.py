"""Docker provider for the sing-box container."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

INSTALL_HINT = "curl -fsSL https://get.docker.com | sh"
START_HINT = "sudo systemctl start docker"


class DockerError(RuntimeError):
    """Raised when docker operations fail."""


class DockerUnavailableError(DockerError):
    """Raised when docker is not installed or its daemon is unreachable."""

    def __init__(self, message: str, *, hint: str) -> None:
        """Store the corrective instruction alongside the message."""
        super().__init__(message)
        self.hint = hint


class ImageUnavailableError(DockerError):
    """Raised when an image can neither be pulled nor found locally."""


@dataclass(frozen=True)
class PortMapping:
    """Host port published to a container port over one transport."""

    host_port: int
    container_port: int
    transport: str = "tcp"

    def to_arg(self) -> str:
        """Return the ``-p`` argument value."""
        return f"{self.host_port}:{self.container_port}/{self.transport}"


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to ``docker run`` the service container."""

    name: str
    image: str
    ports: tuple[PortMapping, ...]
    volume_source: Path
    volume_target: str
    command: tuple[str, ...]
    restart_policy: str = "always"
    read_only_volume: bool = True

    def run_args(self) -> list[str]:
        """Return the arguments following ``docker``."""
        args = ["run", "-d", "--name", self.name, f"--restart={self.restart_policy}"]
        for mapping in self.ports:
            args.extend(["-p", mapping.to_arg()])
        volume = f"{self.volume_source}:{self.volume_target}"
        if self.read_only_volume:
            volume += ":ro"
        args.extend(["-v", volume, self.image, *self.command])
        return args


@dataclass(frozen=True)
class ImageAcquisition:
    """How the image for this run was obtained."""

    image: str
    source: str
    detail: str = ""

    @property
    def pulled(self) -> bool:
        """Return True when a fresh pull succeeded."""
        return self.source == "pulled"


@dataclass(frozen=True)
class RemovalOutcome:
    """Result of the best-effort stale container removal."""

    existed: bool
    removed: bool
    detail: str = ""


@dataclass(slots=True)
class DockerProvider:
    """Drive the docker CLI for the reserved container name."""

    docker_bin: str = "docker"

    def ensure_available(self) -> None:
        """Check that docker is installed and the daemon answers."""
        if shutil.which(self.docker_bin) is None:
            raise DockerUnavailableError(
                "Docker is not installed. Install Docker and retry.",
                hint=INSTALL_HINT,
            )
        try:
            self._docker(["info"])
        except DockerError as exc:
            raise DockerUnavailableError(
                f"Docker daemon is not running: {exc}",
                hint=START_HINT,
            ) from exc

    def container_exists(self, name: str) -> bool:
        """Return True when a container named *name* exists (any state)."""
        result = self._docker(["ps", "-a", "--format", "{{.Names}}"])
        names = {line.strip() for line in (result.stdout or "").splitlines()}
        return name in names

    def remove_stale(self, name: str) -> RemovalOutcome:
        """Force-remove *name* if present; failures are reported, not raised."""
        try:
            exists = self.container_exists(name)
        except DockerError as exc:
            return RemovalOutcome(existed=False, removed=False, detail=str(exc))
        if not exists:
            return RemovalOutcome(existed=False, removed=False)
        result = self._docker(["rm", "-f", name], check=False)
        if result.returncode != 0:
            message = _output_message(result)
            return RemovalOutcome(existed=True, removed=False, detail=message)
        return RemovalOutcome(existed=True, removed=True)

    def remove(self, name: str) -> subprocess.CompletedProcess[str]:
        """Force-remove *name*, raising when docker reports a failure."""
        return self._docker(["rm", "-f", name])

    def pull(self, image: str) -> subprocess.CompletedProcess[str]:
        """Pull *image* from its registry."""
        return self._docker(["pull", image])

    def image_exists(self, image: str) -> bool:
        """Return True when *image* (``repository:tag``) is present locally."""
        result = self._docker(["images", "--format", "{{.Repository}}:{{.Tag}}"])
        references = {line.strip() for line in (result.stdout or "").splitlines()}
        return image in references

    def acquire_image(self, image: str) -> ImageAcquisition:
        """Pull *image*, falling back to an identical local reference."""
        try:
            self.pull(image)
        except DockerError as pull_exc:
            try:
                present = self.image_exists(image)
            except DockerError:
                present = False
            if not present:
                raise ImageUnavailableError(
                    f"Unable to pull {image} and no local copy exists. "
                    f"Check connectivity or run: {self.docker_bin} pull {image}"
                ) from pull_exc
            return ImageAcquisition(image=image, source="local", detail=str(pull_exc))
        return ImageAcquisition(image=image, source="pulled")

    def run(self, spec: ContainerSpec) -> str:
        """Start the container described by *spec* and return its id."""
        result = self._docker(spec.run_args())
        return (result.stdout or "").strip()

    def list_matching(self, name: str) -> subprocess.CompletedProcess[str]:
        """Return ``docker ps`` output filtered on *name*."""
        return self._docker(["ps", "--filter", f"name={name}"], check=False)

    # ------------------------------------------------------------------
    def _docker(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, *args]
        subcommand = args[0] if args else ""
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.docker_bin} {subcommand}".rstrip(),
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise DockerError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            raise DockerError(
                f"{error_prefix} failed (exit {result.returncode}): {_output_message(result)}"
            )
        return result


def _output_message(result: subprocess.CompletedProcess[str]) -> str:
    stdout = getattr(result, "stdout", "") or ""
    stderr = getattr(result, "stderr", "") or ""
    return stderr.strip() or stdout.strip() or "no output"


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
